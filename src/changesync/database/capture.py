"""Mutation interceptor: records every tracked write in the change outbox.

Capture runs in the session's ``before_flush`` hook, so the change records
are flushed and committed in the same transaction as the rows they
describe. If a record cannot be built the flush fails and the business
write rolls back with it.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import event, inspect, select
from sqlalchemy.orm import Session

from .exceptions import CaptureFailure
from .guard import is_guard_enabled
from .models import (
    ChangeLogModel,
    ChangeSyncStatus,
    OperationType,
    TrackedEntity,
    TRACKED_ENTITIES,
    tracked_entity_for,
    utcnow
)
from ..utils.logging import get_logger


logger = get_logger("database.capture")

_VERSION_PINNED = "_changesync_version_pinned"

_TRACKED_TABLES = frozenset(e.model.__tablename__ for e in TRACKED_ENTITIES.values())


def install_change_capture(session_factory) -> None:
    """Register the interceptor on a sessionmaker (or Session class)."""
    if not event.contains(session_factory, "before_flush", _capture_changes):
        event.listen(session_factory, "before_flush", _capture_changes)
        event.listen(session_factory, "do_orm_execute", _refuse_bulk_writes)


def pin_version(obj: Any) -> None:
    """Keep the version the caller assigned instead of auto-incrementing it."""
    setattr(obj, _VERSION_PINNED, True)


def unpin_version(obj: Any) -> None:
    """Drop a pin left on an instance whose flush did not write it."""
    obj.__dict__.pop(_VERSION_PINNED, None)


def _tracked(objects) -> List[Tuple[Any, TrackedEntity]]:
    found = []
    for obj in objects:
        entity = tracked_entity_for(obj)
        if entity is not None:
            found.append((obj, entity))
    return found


def _capture_changes(session: Session, flush_context, instances) -> None:
    inserted = _tracked(session.new)
    deleted = _tracked(session.deleted)
    updated = [
        (obj, entity) for obj, entity in _tracked(session.dirty)
        if obj not in session.deleted and session.is_modified(obj, include_collections=False)
    ]
    if not (inserted or updated or deleted):
        return

    suppressed = is_guard_enabled(session)
    now = utcnow()

    for obj, _ in inserted:
        _fill_insert_defaults(obj, now)
    if not suppressed:
        for obj, _ in updated:
            _stamp_local_update(obj, now)
    for obj, _ in inserted + updated:
        obj.__dict__.pop(_VERSION_PINNED, None)

    if suppressed:
        logger.debug(
            "Change capture suppressed",
            inserted=len(inserted),
            updated=len(updated),
            deleted=len(deleted)
        )
        return

    try:
        with session.no_autoflush:
            for obj, entity in inserted:
                _append_change(session, entity, OperationType.INSERT, obj)
            for obj, entity in updated:
                _append_change(session, entity, OperationType.UPDATE, obj)
            for obj, entity in deleted:
                _append_change(session, entity, OperationType.DELETE, obj)
    except CaptureFailure:
        raise
    except Exception as e:
        raise CaptureFailure(f"Failed to capture change: {e}") from e


def _fill_insert_defaults(obj: Any, now: datetime) -> None:
    if not obj.uuid:
        obj.uuid = str(uuid4())
    for column in obj.__table__.columns:
        default = column.default
        if default is not None and default.is_scalar and getattr(obj, column.key) is None:
            setattr(obj, column.key, default.arg)
    if obj.created_at is None:
        obj.created_at = now
    if obj.updated_at is None:
        obj.updated_at = obj.created_at


def _stamp_local_update(obj: Any, now: datetime) -> None:
    state = inspect(obj)
    if not state.attrs.updated_at.history.has_changes():
        obj.updated_at = now
    pinned = obj.__dict__.get(_VERSION_PINNED, False)
    if not pinned and not state.attrs.version.history.has_changes():
        obj.version = (obj.version or 0) + 1


def _current_image(obj: Any, entity: TrackedEntity) -> Dict[str, Any]:
    return {field: getattr(obj, field) for field in entity.snapshot_fields}


def _stored_image(session: Session, obj: Any, entity: TrackedEntity) -> Dict[str, Any]:
    """Row as it is in the database before this flush (the trigger's OLD)."""
    table = entity.model.__table__
    pk_column = list(table.primary_key.columns)[0]
    identity = inspect(obj).identity
    row = None
    if identity:
        row = session.execute(
            select(table).where(pk_column == identity[0])
        ).mappings().first()
    if row is None:
        # Not in the table yet; fall back to attribute history
        values = {}
        state = inspect(obj)
        for field in entity.snapshot_fields:
            history = state.attrs[field].history
            if history.deleted:
                values[field] = history.deleted[0]
            elif history.unchanged:
                values[field] = history.unchanged[0]
            else:
                values[field] = getattr(obj, field)
        return values
    return {field: row[field] for field in entity.snapshot_fields}


def _append_change(session: Session, entity: TrackedEntity, operation: OperationType, obj: Any) -> None:
    before_data: Optional[Dict[str, Any]] = None

    if operation is OperationType.INSERT:
        change_data = entity.snapshot(_current_image(obj, entity))
    elif operation is OperationType.UPDATE:
        change_data = entity.snapshot(_current_image(obj, entity))
        before_data = entity.snapshot(_stored_image(session, obj, entity))
    else:
        before_data = entity.snapshot(_stored_image(session, obj, entity))
        change_data = {"uuid": before_data["uuid"], "version": before_data["version"]}

    record_uuid = change_data["uuid"]
    change = ChangeLogModel(
        id=str(uuid4()),
        table_name=entity.channel,
        record_uuid=record_uuid,
        operation_type=operation.value,
        change_data=change_data,
        before_data=before_data,
        schema_version=entity.schema_version,
        created_at=utcnow(),
        sync_status=ChangeSyncStatus.PENDING.value,
        retry_count=0
    )
    session.add(change)

    logger.debug(
        "Change captured",
        change_id=change.id,
        channel=entity.channel,
        record_uuid=record_uuid,
        operation=operation.value
    )


def _refuse_bulk_writes(orm_execute_state) -> None:
    """Bulk UPDATE/DELETE statements skip the per-row hook; refuse them on tracked tables."""
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    table_name = getattr(getattr(orm_execute_state.statement, "table", None), "name", None)
    mapper = orm_execute_state.bind_mapper
    if table_name in _TRACKED_TABLES or (mapper is not None and tracked_entity_for(mapper.class_)):
        raise CaptureFailure(
            f"Bulk {'UPDATE' if orm_execute_state.is_update else 'DELETE'} on tracked table "
            f"'{table_name or mapper.local_table.name}' bypasses change capture; "
            f"modify rows through the repository"
        )

"""Apply engine: reconciles inbound remote changes with the local store."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..database import DatabaseManager, get_db_manager
from ..database.exceptions import ChangeSyncError, UnknownChannelError
from ..database.guard import acquire_suppression
from ..database.models import OperationType, RemoteChange, get_tracked_entity
from ..database.operations import VersionedRecordRepository, get_sync_meta_repository
from ..utils.logging import get_logger, log_context, log_execution_time


class ApplyOutcome(str, Enum):
    """How an inbound change ended."""
    APPLIED = "applied"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class ApplyResult:
    """Result of applying one inbound change."""

    change_id: Optional[str]
    channel: str
    record_uuid: str
    operation: Optional[OperationType]
    outcome: ApplyOutcome
    remote_version: Optional[int] = None
    local_version: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def applied(self) -> bool:
        """Whether local state now reflects the change."""
        return self.outcome is ApplyOutcome.APPLIED

    @property
    def is_conflict(self) -> bool:
        """Whether the change was rejected as stale."""
        return self.outcome is ApplyOutcome.CONFLICT


class ApplyEngine:
    """Applies remote changes under the echo guard.

    Versions decide which writer wins: an INSERT/UPDATE must carry a version
    greater than the local row's, and a DELETE is refused when the local row
    has moved past the version the remote deleted.
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        """Initialize apply engine.

        Args:
            db_manager: Store to apply into; the global manager by default
        """
        self.db_manager = db_manager or get_db_manager()
        self.logger = get_logger(self.__class__.__name__)

    @log_execution_time
    def apply_change(self, change: Union[RemoteChange, Dict[str, Any]]) -> ApplyResult:
        """Apply one remote change.

        Conflicts and malformed changes are reported in the result. Store
        outages raise TransientIOFailure.
        """
        if not isinstance(change, RemoteChange):
            try:
                change = RemoteChange.model_validate(change)
            except ValidationError as e:
                raw = change if isinstance(change, dict) else {}
                return self._log(ApplyResult(
                    change_id=raw.get("id"),
                    channel=str(raw.get("table_name", "")),
                    record_uuid=str(raw.get("record_uuid", "")),
                    operation=None,
                    outcome=ApplyOutcome.FAILED,
                    error_message=f"Malformed change: {e}"
                ))

        with log_context(remote_change_id=change.id, channel=change.table_name):
            try:
                with self.db_manager.session_scope() as session:
                    try:
                        with acquire_suppression(session):
                            result = self._apply(session, change)
                    except ApplyConflict as conflict:
                        result = conflict.result

                    if change.sequence_id is not None:
                        get_sync_meta_repository(session).advance_sequence_id(change.sequence_id)
            except ApplyFailure as e:
                result = self._result(change, ApplyOutcome.FAILED, error_message=str(e))

            return self._log(result)

    def apply_changes(self, changes: Iterable[Union[RemoteChange, Dict[str, Any]]]) -> List[ApplyResult]:
        """Apply changes one by one in the order given."""
        return [self.apply_change(change) for change in changes]

    def _apply(self, session: Session, change: RemoteChange) -> ApplyResult:
        try:
            entity = get_tracked_entity(change.table_name)
        except UnknownChannelError as e:
            raise ApplyFailure(str(e)) from e

        repo = VersionedRecordRepository(session, entity)
        local = repo.get_by_uuid(change.record_uuid)
        local_version = local.version if local is not None else None

        if change.operation_type is OperationType.DELETE:
            incoming = self._delete_version(change)
            if local is not None and incoming is not None and local.version > incoming:
                raise ApplyConflict(self._result(
                    change, ApplyOutcome.CONFLICT,
                    remote_version=incoming,
                    local_version=local_version,
                    error_message=f"Local version {local_version} is newer than deleted version {incoming}"
                ))
            repo.delete(change.record_uuid)
            return self._result(change, ApplyOutcome.APPLIED, remote_version=incoming)

        if not change.change_data:
            raise ApplyFailure(f"{change.operation_type.value} change has no change_data")
        # An upsert overwrites every mutable field, so a partial image would erase the rest
        missing = [field for field in entity.mutable_fields if field not in change.change_data]
        if missing:
            raise ApplyFailure(f"Snapshot is missing fields: {', '.join(missing)}")
        try:
            snapshot = entity.snapshot_model.model_validate(change.change_data)
        except ValidationError as e:
            raise ApplyFailure(f"Malformed snapshot: {e}") from e
        if snapshot.uuid != change.record_uuid:
            raise ApplyFailure(
                f"Snapshot uuid {snapshot.uuid!r} does not match record uuid {change.record_uuid!r}"
            )
        if snapshot.version is None:
            raise ApplyFailure("Snapshot has no version")

        if local is not None and snapshot.version <= local.version:
            raise ApplyConflict(self._result(
                change, ApplyOutcome.CONFLICT,
                remote_version=snapshot.version,
                local_version=local_version,
                error_message=f"Incoming version {snapshot.version} does not exceed local version {local_version}"
            ))

        row, _ = repo.upsert(snapshot, version=snapshot.version, keep_timestamps=True)
        return self._result(
            change, ApplyOutcome.APPLIED,
            remote_version=snapshot.version,
            local_version=row.version
        )

    @staticmethod
    def _delete_version(change: RemoteChange) -> Optional[int]:
        for payload in (change.change_data, change.before_data):
            if payload and payload.get("version") is not None:
                version = payload["version"]
                if isinstance(version, bool) or not isinstance(version, int) or version < 1:
                    raise ApplyFailure(f"Invalid version in delete payload: {version!r}")
                return version
        return None

    @staticmethod
    def _result(change: RemoteChange, outcome: ApplyOutcome, **kwargs) -> ApplyResult:
        return ApplyResult(
            change_id=change.id,
            channel=change.table_name,
            record_uuid=change.record_uuid,
            operation=change.operation_type,
            outcome=outcome,
            **kwargs
        )

    def _log(self, result: ApplyResult) -> ApplyResult:
        fields = dict(
            change_id=result.change_id,
            channel=result.channel,
            record_uuid=result.record_uuid,
            operation=result.operation.value if result.operation else None,
            remote_version=result.remote_version,
            local_version=result.local_version
        )
        if result.outcome is ApplyOutcome.APPLIED:
            self.logger.info("Remote change applied", **fields)
        elif result.outcome is ApplyOutcome.CONFLICT:
            self.logger.warning("Remote change rejected as stale", reason=result.error_message, **fields)
        else:
            self.logger.error("Remote change could not be applied", error=result.error_message, **fields)
        return result


class ApplyConflict(ChangeSyncError):
    """Incoming change does not supersede local state."""

    def __init__(self, result: ApplyResult):
        super().__init__(result.error_message)
        self.result = result


class ApplyFailure(ChangeSyncError):
    """Incoming change is malformed and cannot be applied."""

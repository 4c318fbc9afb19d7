"""Database operations and repository classes."""

from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any, Tuple, Iterable
from sqlalchemy.orm import Session
from sqlalchemy import and_, func

from .capture import pin_version, unpin_version
from .exceptions import StaleVersionError
from .models import (
    ChangeLogModel, SyncCursorModel, SyncMetaModel,
    ChangeSyncStatus, TrackedEntity, RecordSnapshot,
    as_naive_utc, get_tracked_entity, utcnow
)
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("database.operations")

LAST_SEQUENCE_ID_KEY = "last_sequence_id"


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class VersionedRecordRepository:
    """Repository for one tracked entity table."""

    def __init__(self, session: Session, entity: TrackedEntity):
        self.session = session
        self.entity = entity
        self.model = entity.model

    @log_execution_time
    def get_by_uuid(self, uuid: str):
        """Get a row by its sync identity."""
        return self.session.query(self.model).filter(self.model.uuid == uuid).first()

    @log_execution_time
    def get_changed_since(self, since: Optional[datetime] = None) -> List[Any]:
        """Rows whose updated_at is later than ``since`` (all rows when None)."""
        query = self.session.query(self.model)
        since = as_naive_utc(since)
        if since is not None:
            query = query.filter(self.model.updated_at > since)
        return query.order_by(self.model.updated_at, self.model.uuid).all()

    @log_execution_time
    def upsert(
        self,
        snapshot: RecordSnapshot,
        version: Optional[int] = None,
        keep_timestamps: bool = False
    ) -> Tuple[Any, bool]:
        """Insert the row if its uuid is unknown, else overwrite every mutable field.

        ``version`` (or ``snapshot.version``) is stored as given. Without one
        the store assigns 1 to a new row and current + 1 to an existing row.
        ``keep_timestamps`` stores the snapshot's created_at/updated_at
        instead of store-assigned ones. Returns (row, created).

        Raises StaleVersionError when ``version`` is lower than the stored one.
        """
        version = version if version is not None else snapshot.version
        record = self.get_by_uuid(snapshot.uuid)
        created = record is None

        if not created and version is not None and version < record.version:
            raise StaleVersionError(
                f"Version {version} is older than stored version {record.version} "
                f"for {self.entity.channel}/{snapshot.uuid}"
            )

        if created:
            record = self.model(uuid=snapshot.uuid)
            self.session.add(record)

        for field in self.entity.mutable_fields:
            setattr(record, field, getattr(snapshot, field))

        if version is not None:
            record.version = version
            pin_version(record)

        if keep_timestamps:
            if created and snapshot.created_at is not None:
                record.created_at = snapshot.created_at
            if snapshot.updated_at is not None:
                record.updated_at = snapshot.updated_at

        self.session.flush()
        unpin_version(record)

        logger.info(
            "Record created" if created else "Record updated",
            channel=self.entity.channel,
            record_uuid=record.uuid,
            version=record.version
        )
        return record, created

    @log_execution_time
    def update_fields(self, uuid: str, changes: Dict[str, Any]) -> Optional[Any]:
        """Apply a partial local edit. The store bumps the version."""
        record = self.get_by_uuid(uuid)
        if record is None:
            return None

        unknown = set(changes) - set(self.entity.mutable_fields)
        if unknown:
            raise ValueError(f"Fields not writable on {self.entity.channel}: {sorted(unknown)}")

        merged = self.entity.snapshot_model.model_validate(record)
        merged = merged.model_copy(update=changes)
        validated = self.entity.snapshot_model.model_validate(merged.model_dump())
        for field in changes:
            setattr(record, field, getattr(validated, field))

        self.session.flush()
        logger.info(
            "Record updated",
            channel=self.entity.channel,
            record_uuid=uuid,
            version=record.version,
            updated_fields=sorted(changes)
        )
        return record

    @log_execution_time
    def delete(self, uuid: str) -> bool:
        """Delete by uuid. Deleting an absent row is a no-op."""
        record = self.get_by_uuid(uuid)
        if record is None:
            return False

        self.session.delete(record)
        self.session.flush()
        logger.info("Record deleted", channel=self.entity.channel, record_uuid=uuid)
        return True

    @log_execution_time
    def bump_version(self, uuid: str, current_version: Optional[int]) -> bool:
        """Advance the version to ``current_version + 1`` and refresh updated_at."""
        if not uuid or not current_version:
            return False

        record = self.get_by_uuid(uuid)
        if record is None:
            return False

        if current_version + 1 < record.version:
            raise StaleVersionError(
                f"Bump to {current_version + 1} is older than stored version {record.version} "
                f"for {self.entity.channel}/{uuid}"
            )

        record.version = current_version + 1
        record.updated_at = utcnow()
        pin_version(record)
        self.session.flush()
        unpin_version(record)

        logger.info(
            "Record version bumped",
            channel=self.entity.channel,
            record_uuid=uuid,
            version=record.version
        )
        return True


class ChangeLogRepository:
    """Repository for the change outbox."""

    def __init__(self, session: Session):
        self.session = session

    def _pending(self):
        return self.session.query(ChangeLogModel).filter(
            ChangeLogModel.sync_status == ChangeSyncStatus.PENDING.value
        )

    @log_execution_time
    def get_pending(self) -> List[ChangeLogModel]:
        """All pending changes in capture order."""
        return self._pending().order_by(ChangeLogModel.created_at, ChangeLogModel.seq).all()

    @log_execution_time
    def get_pending_page(self, table_name: str, limit: int, offset: int) -> List[ChangeLogModel]:
        """A stable slice of one channel's pending changes."""
        if limit <= 0:
            return []
        return self._pending().filter(
            ChangeLogModel.table_name == table_name
        ).order_by(
            ChangeLogModel.created_at, ChangeLogModel.seq
        ).limit(limit).offset(max(offset, 0)).all()

    @log_execution_time
    def count_pending(self, table_name: str) -> int:
        """Number of pending changes in a channel."""
        return self._pending().filter(ChangeLogModel.table_name == table_name).count()

    def _update_status_chunk(self, ids: List[str], values: Dict[str, Any]) -> int:
        return self.session.query(ChangeLogModel).filter(
            and_(
                ChangeLogModel.id.in_(ids),
                ChangeLogModel.sync_status == ChangeSyncStatus.PENDING.value
            )
        ).update(values, synchronize_session=False)

    @log_execution_time
    def transition_pending(
        self,
        ids: List[str],
        status: ChangeSyncStatus,
        error_message: Optional[str] = None,
        batch_size: int = 500
    ) -> int:
        """Move pending changes to a terminal status. Returns rows changed.

        Runs inside the caller's transaction, so the whole id set commits or
        none of it does.
        """
        ids = list(dict.fromkeys(ids))
        if not ids:
            return 0

        values: Dict[str, Any] = {"sync_status": status.value}
        if status is ChangeSyncStatus.FAILED:
            values["error_message"] = error_message

        updated = 0
        for chunk in _chunks(ids, batch_size):
            updated += self._update_status_chunk(chunk, values)
        return updated

    @log_execution_time
    def get_failed(self, table_name: Optional[str] = None) -> List[ChangeLogModel]:
        """Failed changes, oldest first."""
        query = self.session.query(ChangeLogModel).filter(
            ChangeLogModel.sync_status == ChangeSyncStatus.FAILED.value
        )
        if table_name:
            query = query.filter(ChangeLogModel.table_name == table_name)
        return query.order_by(ChangeLogModel.created_at, ChangeLogModel.seq).all()

    @log_execution_time
    def requeue_failed(self, ids: Optional[List[str]] = None) -> int:
        """Return failed changes to pending, counting the retry."""
        query = self.session.query(ChangeLogModel).filter(
            ChangeLogModel.sync_status == ChangeSyncStatus.FAILED.value
        )
        if ids is not None:
            if not ids:
                return 0
            query = query.filter(ChangeLogModel.id.in_(ids))

        return query.update(
            {
                "sync_status": ChangeSyncStatus.PENDING.value,
                "retry_count": ChangeLogModel.retry_count + 1,
                "error_message": None
            },
            synchronize_session=False
        )

    @log_execution_time
    def status_counts(self) -> Dict[str, Dict[str, int]]:
        """Change counts per channel and status."""
        rows = self.session.query(
            ChangeLogModel.table_name,
            ChangeLogModel.sync_status,
            func.count(ChangeLogModel.seq)
        ).group_by(ChangeLogModel.table_name, ChangeLogModel.sync_status).all()

        counts: Dict[str, Dict[str, int]] = {}
        for table_name, status, count in rows:
            counts.setdefault(table_name, {s.value: 0 for s in ChangeSyncStatus})[status] = count
        return counts

    @log_execution_time
    def delete_synced_before(self, cutoff: datetime) -> int:
        """Drop synced changes captured before ``cutoff``."""
        return self.session.query(ChangeLogModel).filter(
            and_(
                ChangeLogModel.sync_status == ChangeSyncStatus.SYNCED.value,
                ChangeLogModel.created_at < cutoff
            )
        ).delete(synchronize_session=False)


class SyncCursorRepository:
    """Repository for per-channel pull cursors."""

    def __init__(self, session: Session):
        self.session = session

    @log_execution_time
    def get_last_sync_time(self, table_name: str) -> Optional[datetime]:
        """Last successful pull time for a channel."""
        cursor = self.session.query(SyncCursorModel).filter(
            SyncCursorModel.table_name == table_name
        ).first()
        return cursor.last_sync_time if cursor else None

    @log_execution_time
    def set_last_sync_time(self, table_name: str, sync_time: datetime) -> None:
        """Upsert a channel's pull cursor."""
        cursor = self.session.query(SyncCursorModel).filter(
            SyncCursorModel.table_name == table_name
        ).first()
        if cursor is None:
            cursor = SyncCursorModel(table_name=table_name)
            self.session.add(cursor)

        cursor.last_sync_time = as_naive_utc(sync_time)
        cursor.updated_at = utcnow()
        self.session.flush()

        logger.info("Sync cursor updated", channel=table_name, last_sync_time=sync_time)


class SyncMetaRepository:
    """Repository for the key/value metadata table."""

    def __init__(self, session: Session):
        self.session = session

    def get_value(self, key: str) -> Optional[str]:
        row = self.session.get(SyncMetaModel, key)
        return row.value if row else None

    def set_value(self, key: str, value: Optional[str]) -> None:
        row = self.session.get(SyncMetaModel, key)
        if row is None:
            self.session.add(SyncMetaModel(key=key, value=value))
        else:
            row.value = value
        self.session.flush()

    @log_execution_time
    def get_last_sequence_id(self) -> int:
        """Remote sequence watermark; 0 when nothing has been applied."""
        value = self.get_value(LAST_SEQUENCE_ID_KEY)
        return int(value) if value else 0

    @log_execution_time
    def set_last_sequence_id(self, sequence_id: int) -> None:
        """Store the remote sequence watermark."""
        self.set_value(LAST_SEQUENCE_ID_KEY, str(int(sequence_id)))
        logger.info("Sequence watermark updated", last_sequence_id=sequence_id)

    @log_execution_time
    def advance_sequence_id(self, sequence_id: int) -> bool:
        """Move the watermark forward only."""
        if sequence_id <= self.get_last_sequence_id():
            return False
        self.set_last_sequence_id(sequence_id)
        return True


# Repository factory functions

def get_record_repository(session: Session, channel: str) -> VersionedRecordRepository:
    """Get the versioned record repository for a channel."""
    return VersionedRecordRepository(session, get_tracked_entity(channel))


def get_change_log_repository(session: Session) -> ChangeLogRepository:
    """Get change log repository instance."""
    return ChangeLogRepository(session)


def get_sync_cursor_repository(session: Session) -> SyncCursorRepository:
    """Get sync cursor repository instance."""
    return SyncCursorRepository(session)


def get_sync_meta_repository(session: Session) -> SyncMetaRepository:
    """Get sync metadata repository instance."""
    return SyncMetaRepository(session)


def retention_cutoff(days: int) -> datetime:
    """Capture time before which synced changes may be purged."""
    return utcnow() - timedelta(days=days)

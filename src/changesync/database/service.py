"""High-level database service: the surface the sync orchestrator talks to."""

from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional, Dict, Any, Union
from uuid import uuid4

from .database import DatabaseManager, get_db_manager
from .guard import is_guard_enabled, set_remote_apply_guard, suppressed_session
from .operations import (
    get_record_repository,
    get_change_log_repository,
    get_sync_cursor_repository,
    get_sync_meta_repository,
    retention_cutoff
)
from .models import (
    ChangeRecord, ChangeSyncStatus, RecordSnapshot,
    AssetSnapshot, AssetChainSnapshot,
    ASSETS_CHANNEL, ASSET_CHAINS_CHANNEL,
    get_tracked_entity
)
from ..config.settings import get_settings
from ..utils.logging import get_logger, log_execution_time


logger = get_logger("database.service")


class DatabaseService:
    """Versioned record store, change outbox and cursor store over one database."""

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or get_db_manager()
        self.outbox_settings = get_settings().outbox

    @contextmanager
    def transaction(self):
        """Context manager for database transactions."""
        with self.db_manager.session_scope() as session:
            yield session

    @contextmanager
    def remote_apply_session(self):
        """Transaction whose writes are not captured (remote-origin batches)."""
        with suppressed_session(self.db_manager) as session:
            yield session

    def _to_snapshot(self, channel: str, record: Any) -> RecordSnapshot:
        return get_tracked_entity(channel).snapshot_model.model_validate(record)

    def _coerce(self, channel: str, record: Union[RecordSnapshot, Dict[str, Any]]) -> RecordSnapshot:
        snapshot_model = get_tracked_entity(channel).snapshot_model
        if isinstance(record, snapshot_model):
            return record
        if isinstance(record, RecordSnapshot):
            record = record.model_dump()
        return snapshot_model.model_validate(record)

    # Versioned record store

    @log_execution_time
    def upsert_record(self, channel: str, record: Union[RecordSnapshot, Dict[str, Any]]) -> RecordSnapshot:
        """Insert or fully overwrite a record; the caller's version wins when given."""
        snapshot = self._coerce(channel, record)
        with self.transaction() as session:
            repo = get_record_repository(session, channel)
            row, _ = repo.upsert(snapshot)
            return self._to_snapshot(channel, row)

    @log_execution_time
    def create_record(self, channel: str, fields: Dict[str, Any]) -> RecordSnapshot:
        """Create a record locally. A uuid is generated when none is given."""
        values = dict(fields)
        values["uuid"] = values.get("uuid") or str(uuid4())
        snapshot = self._coerce(channel, values)
        with self.transaction() as session:
            repo = get_record_repository(session, channel)
            if repo.get_by_uuid(snapshot.uuid) is not None:
                raise ValueError(f"Record {snapshot.uuid} already exists in {channel}")
            row, _ = repo.upsert(snapshot)
            return self._to_snapshot(channel, row)

    @log_execution_time
    def update_record(self, channel: str, uuid: str, changes: Dict[str, Any]) -> Optional[RecordSnapshot]:
        """Edit some fields of a local record. Returns None when the uuid is unknown."""
        with self.transaction() as session:
            repo = get_record_repository(session, channel)
            row = repo.update_fields(uuid, changes)
            return self._to_snapshot(channel, row) if row is not None else None

    @log_execution_time
    def delete_record(self, channel: str, uuid: str) -> bool:
        """Delete a record by uuid; absent records are a no-op."""
        with self.transaction() as session:
            return get_record_repository(session, channel).delete(uuid)

    @log_execution_time
    def get_record(self, channel: str, uuid: str) -> Optional[RecordSnapshot]:
        """Current snapshot of one record."""
        with self.transaction() as session:
            row = get_record_repository(session, channel).get_by_uuid(uuid)
            return self._to_snapshot(channel, row) if row is not None else None

    @log_execution_time
    def get_records_changed_since(self, channel: str, since: Optional[datetime] = None) -> List[RecordSnapshot]:
        """Rows of a channel updated after ``since`` (all rows when None)."""
        with self.transaction() as session:
            rows = get_record_repository(session, channel).get_changed_since(since)
            return [self._to_snapshot(channel, row) for row in rows]

    @log_execution_time
    def bump_version(self, channel: str, uuid: str, current_version: Optional[int]) -> bool:
        """Advance a record to ``current_version + 1`` after its change was confirmed.

        The bump records a state the remote already has, so it is not
        captured as a new change.
        """
        if not uuid or not current_version:
            return False
        with self.remote_apply_session() as session:
            return get_record_repository(session, channel).bump_version(uuid, current_version)

    def get_assets(self, last_sync_time: Optional[datetime] = None) -> List[AssetSnapshot]:
        """Assets changed since the last pull."""
        return self.get_records_changed_since(ASSETS_CHANNEL, last_sync_time)

    def get_asset_chains(self, last_sync_time: Optional[datetime] = None) -> List[AssetChainSnapshot]:
        """Key chains changed since the last pull."""
        return self.get_records_changed_since(ASSET_CHAINS_CHANNEL, last_sync_time)

    def upsert_asset(self, asset: Union[AssetSnapshot, Dict[str, Any]]) -> AssetSnapshot:
        """Insert or overwrite an asset."""
        return self.upsert_record(ASSETS_CHANNEL, asset)

    def upsert_asset_chain(self, chain: Union[AssetChainSnapshot, Dict[str, Any]]) -> AssetChainSnapshot:
        """Insert or overwrite a key chain."""
        return self.upsert_record(ASSET_CHAINS_CHANNEL, chain)

    def delete_asset_by_uuid(self, uuid: str) -> bool:
        """Delete an asset."""
        return self.delete_record(ASSETS_CHANNEL, uuid)

    def delete_asset_chain_by_uuid(self, uuid: str) -> bool:
        """Delete a key chain."""
        return self.delete_record(ASSET_CHAINS_CHANNEL, uuid)

    # Change outbox

    @log_execution_time
    def get_pending_changes(self) -> List[ChangeRecord]:
        """All pending changes in capture order."""
        with self.transaction() as session:
            rows = get_change_log_repository(session).get_pending()
            return [ChangeRecord.model_validate(row) for row in rows]

    @log_execution_time
    def get_pending_changes_page(self, table_name: str, limit: Optional[int] = None, offset: int = 0) -> List[ChangeRecord]:
        """One page of a channel's pending changes."""
        limit = self.outbox_settings.page_size if limit is None else limit
        with self.transaction() as session:
            rows = get_change_log_repository(session).get_pending_page(table_name, limit, offset)
            return [ChangeRecord.model_validate(row) for row in rows]

    @log_execution_time
    def get_total_pending_changes_count(self, table_name: str) -> int:
        """Number of pending changes in a channel."""
        with self.transaction() as session:
            return get_change_log_repository(session).count_pending(table_name)

    @log_execution_time
    def mark_changes_synced(self, ids: List[str]) -> int:
        """Mark pending changes synced, all or nothing."""
        if not ids:
            return 0
        with self.transaction() as session:
            updated = get_change_log_repository(session).transition_pending(
                ids,
                ChangeSyncStatus.SYNCED,
                batch_size=self.outbox_settings.status_batch_size
            )
        logger.info("Changes marked synced", requested=len(ids), updated=updated)
        return updated

    @log_execution_time
    def mark_changes_conflict(self, ids: List[str], reason: str) -> int:
        """Mark pending changes failed with a reason, all or nothing."""
        if not ids:
            return 0
        reason = (reason or "")[: self.outbox_settings.max_error_length]
        with self.transaction() as session:
            updated = get_change_log_repository(session).transition_pending(
                ids,
                ChangeSyncStatus.FAILED,
                error_message=reason,
                batch_size=self.outbox_settings.status_batch_size
            )
        logger.warning("Changes marked failed", requested=len(ids), updated=updated, reason=reason)
        return updated

    @log_execution_time
    def get_failed_changes(self, table_name: Optional[str] = None) -> List[ChangeRecord]:
        """Failed changes awaiting an operator decision."""
        with self.transaction() as session:
            rows = get_change_log_repository(session).get_failed(table_name)
            return [ChangeRecord.model_validate(row) for row in rows]

    @log_execution_time
    def requeue_failed_changes(self, ids: Optional[List[str]] = None) -> int:
        """Explicit retry: failed changes (all, or the given ids) become pending again."""
        with self.transaction() as session:
            requeued = get_change_log_repository(session).requeue_failed(ids)
        logger.info("Failed changes requeued", requeued=requeued)
        return requeued

    @log_execution_time
    def get_outbox_stats(self) -> Dict[str, Dict[str, int]]:
        """Change counts per channel and status."""
        with self.transaction() as session:
            return get_change_log_repository(session).status_counts()

    @log_execution_time
    def cleanup_synced_changes(self, days: Optional[int] = None) -> int:
        """Purge synced changes older than the retention window."""
        if days is None:
            days = self.outbox_settings.retention_days
        cutoff = retention_cutoff(days)
        with self.transaction() as session:
            deleted = get_change_log_repository(session).delete_synced_before(cutoff)
        logger.info("Synced changes purged", deleted=deleted, cutoff=cutoff)
        return deleted

    # Cursor store

    @log_execution_time
    def get_last_sync_time(self, table_name: str) -> Optional[datetime]:
        """Last successful pull time of a channel."""
        with self.transaction() as session:
            return get_sync_cursor_repository(session).get_last_sync_time(table_name)

    @log_execution_time
    def set_last_sync_time(self, table_name: str, sync_time: datetime) -> None:
        """Record a successful pull; call only after the batch is applied."""
        with self.transaction() as session:
            get_sync_cursor_repository(session).set_last_sync_time(table_name, sync_time)

    @log_execution_time
    def get_last_sequence_id(self) -> int:
        """Remote sequence watermark."""
        with self.transaction() as session:
            return get_sync_meta_repository(session).get_last_sequence_id()

    @log_execution_time
    def set_last_sequence_id(self, sequence_id: int) -> None:
        """Store the remote sequence watermark."""
        with self.transaction() as session:
            get_sync_meta_repository(session).set_last_sequence_id(sequence_id)

    # Echo guard

    @log_execution_time
    def set_remote_apply_guard(self, enabled: bool) -> None:
        """Persistently suppress (or resume) change capture for bulk remote applies.

        Prefer :meth:`remote_apply_session`, which cannot leave capture off.
        """
        with self.transaction() as session:
            set_remote_apply_guard(session, enabled)
        logger.info("Remote apply guard changed", enabled=enabled)

    def is_remote_apply_guard_enabled(self) -> bool:
        """Whether change capture is currently suppressed."""
        with self.transaction() as session:
            return is_guard_enabled(session)


# Global service instance
_db_service: Optional[DatabaseService] = None


def get_database_service() -> DatabaseService:
    """Get the global database service instance."""
    global _db_service
    if _db_service is None:
        _db_service = DatabaseService()
    return _db_service

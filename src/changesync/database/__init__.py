"""Database package: versioned record store, change capture and outbox."""

from .database import (
    DatabaseManager,
    get_db_manager,
    init_database,
    close_database
)

from .exceptions import (
    ChangeSyncError,
    CaptureFailure,
    TransientIOFailure,
    UnknownChannelError,
    StaleVersionError
)

from .models import (
    AssetModel,
    AssetChainModel,
    ChangeLogModel,
    SyncCursorModel,
    SyncMetaModel,
    RecordSnapshot,
    AssetSnapshot,
    AssetChainSnapshot,
    ChangeRecord,
    RemoteChange,
    TrackedEntity,
    OperationType,
    ChangeSyncStatus,
    TRACKED_ENTITIES,
    ASSETS_CHANNEL,
    ASSET_CHAINS_CHANNEL,
    get_tracked_entity
)

from .guard import (
    SuppressionHandle,
    acquire_suppression,
    suppressed_session,
    is_guard_enabled,
    REMOTE_APPLY_GUARD_KEY
)

from .operations import (
    VersionedRecordRepository,
    ChangeLogRepository,
    SyncCursorRepository,
    SyncMetaRepository,
    get_record_repository,
    get_change_log_repository,
    get_sync_cursor_repository,
    get_sync_meta_repository
)

from .service import (
    DatabaseService,
    get_database_service
)

__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "init_database",
    "close_database",

    # Errors
    "ChangeSyncError",
    "CaptureFailure",
    "TransientIOFailure",
    "UnknownChannelError",
    "StaleVersionError",

    # Models
    "AssetModel",
    "AssetChainModel",
    "ChangeLogModel",
    "SyncCursorModel",
    "SyncMetaModel",
    "RecordSnapshot",
    "AssetSnapshot",
    "AssetChainSnapshot",
    "ChangeRecord",
    "RemoteChange",
    "TrackedEntity",
    "OperationType",
    "ChangeSyncStatus",
    "TRACKED_ENTITIES",
    "ASSETS_CHANNEL",
    "ASSET_CHAINS_CHANNEL",
    "get_tracked_entity",

    # Echo guard
    "SuppressionHandle",
    "acquire_suppression",
    "suppressed_session",
    "is_guard_enabled",
    "REMOTE_APPLY_GUARD_KEY",

    # Repositories
    "VersionedRecordRepository",
    "ChangeLogRepository",
    "SyncCursorRepository",
    "SyncMetaRepository",
    "get_record_repository",
    "get_change_log_repository",
    "get_sync_cursor_repository",
    "get_sync_meta_repository",

    # Service
    "DatabaseService",
    "get_database_service"
]

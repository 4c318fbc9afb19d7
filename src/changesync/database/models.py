"""Database models for the change-tracking store."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Type, Tuple
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Text, Index
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import UnknownChannelError


Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite DateTime columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC already."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class OperationType(str, Enum):
    """Kinds of captured mutation."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeSyncStatus(str, Enum):
    """Outbox status of a change record."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


# SQLAlchemy Models (Database Tables)

class AssetModel(Base):
    """Tracked table: remote host assets."""

    __tablename__ = "t_assets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(64), unique=True, nullable=False, index=True)
    label = Column(Text, nullable=True)
    asset_ip = Column(Text, nullable=True)
    group_name = Column(Text, nullable=True)
    auth_type = Column(Text, nullable=True)
    port = Column(Integer, nullable=True)
    username = Column(Text, nullable=True)
    password = Column(Text, nullable=True)
    key_chain_uuid = Column(String(64), nullable=True)  # refers to t_asset_chains.uuid
    favorite = Column(Boolean, default=False, nullable=False)
    asset_type = Column(Text, nullable=True)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AssetModel(id={self.id}, uuid='{self.uuid}', version={self.version})>"


class AssetChainModel(Base):
    """Tracked table: key chains used to authenticate against assets."""

    __tablename__ = "t_asset_chains"

    key_chain_id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(64), unique=True, nullable=False, index=True)
    chain_name = Column(Text, nullable=True)
    chain_type = Column(Text, nullable=True)
    chain_private_key = Column(Text, nullable=True)
    chain_public_key = Column(Text, nullable=True)
    passphrase = Column(Text, nullable=True)
    version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AssetChainModel(key_chain_id={self.key_chain_id}, uuid='{self.uuid}', version={self.version})>"


class ChangeLogModel(Base):
    """Outbox of captured mutations.

    ``seq`` is the capture order; it breaks ties between records that share
    a ``created_at`` value.
    """

    __tablename__ = "change_log"
    __table_args__ = (
        Index("ix_change_log_status_channel", "sync_status", "table_name", "created_at"),
        {"sqlite_autoincrement": True},
    )

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False)
    table_name = Column(String(100), nullable=False)
    record_uuid = Column(String(64), nullable=False, index=True)
    operation_type = Column(String(10), nullable=False)
    change_data = Column(JSON, nullable=True)
    before_data = Column(JSON, nullable=True)
    schema_version = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    sync_status = Column(String(20), default=ChangeSyncStatus.PENDING.value, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    def __repr__(self):
        return (
            f"<ChangeLogModel(id='{self.id}', table_name='{self.table_name}', "
            f"operation='{self.operation_type}', status='{self.sync_status}')>"
        )


class SyncCursorModel(Base):
    """Last successful pull time per channel."""

    __tablename__ = "sync_status"

    id = Column(Integer, primary_key=True, autoincrement=True)
    table_name = Column(String(100), unique=True, nullable=False)
    last_sync_time = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class SyncMetaModel(Base):
    """Small key/value table: echo guard flag and sequence watermark."""

    __tablename__ = "sync_meta"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)


# Pydantic Models (snapshots and transfer objects)

class RecordSnapshot(BaseModel):
    """Full, sync-visible image of a tracked row. Never carries the local id."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    uuid: str = Field(..., min_length=1)
    version: Optional[int] = Field(default=None, ge=1)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)


class AssetSnapshot(RecordSnapshot):
    """Snapshot schema for ``t_assets``."""

    label: Optional[str] = None
    asset_ip: Optional[str] = None
    group_name: Optional[str] = None
    auth_type: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    key_chain_uuid: Optional[str] = None
    favorite: bool = False
    asset_type: Optional[str] = None


class AssetChainSnapshot(RecordSnapshot):
    """Snapshot schema for ``t_asset_chains``."""

    chain_name: Optional[str] = None
    chain_type: Optional[str] = None
    chain_private_key: Optional[str] = None
    chain_public_key: Optional[str] = None
    passphrase: Optional[str] = None


class ChangeRecord(BaseModel):
    """An outbox entry as handed to the orchestrator."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    table_name: str
    record_uuid: str
    operation_type: OperationType
    change_data: Optional[Dict[str, Any]] = None
    before_data: Optional[Dict[str, Any]] = None
    schema_version: int = 1
    created_at: datetime
    sync_status: ChangeSyncStatus
    retry_count: int = 0
    error_message: Optional[str] = None


class RemoteChange(BaseModel):
    """An inbound change received from the remote side."""

    id: Optional[str] = None
    table_name: str
    record_uuid: str
    operation_type: OperationType
    change_data: Optional[Dict[str, Any]] = None
    before_data: Optional[Dict[str, Any]] = None
    sequence_id: Optional[int] = Field(default=None, ge=0)


# Tracked entity registry

SYSTEM_FIELDS = ("uuid", "version", "created_at", "updated_at")


@dataclass(frozen=True)
class TrackedEntity:
    """Binds a sync channel to its table and snapshot schema."""

    channel: str
    model: Type[Base]
    snapshot_model: Type[RecordSnapshot]
    schema_version: int = 1

    @property
    def snapshot_fields(self) -> Tuple[str, ...]:
        return tuple(self.snapshot_model.model_fields)

    @property
    def mutable_fields(self) -> Tuple[str, ...]:
        return tuple(f for f in self.snapshot_fields if f not in SYSTEM_FIELDS)

    def snapshot(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Validate a field mapping and serialize it for the outbox."""
        return self.snapshot_model.model_validate(values).model_dump(mode="json")


ASSETS_CHANNEL = "t_assets_sync"
ASSET_CHAINS_CHANNEL = "t_asset_chains_sync"

TRACKED_ENTITIES: Dict[str, TrackedEntity] = {
    ASSETS_CHANNEL: TrackedEntity(ASSETS_CHANNEL, AssetModel, AssetSnapshot),
    ASSET_CHAINS_CHANNEL: TrackedEntity(ASSET_CHAINS_CHANNEL, AssetChainModel, AssetChainSnapshot),
}

_ENTITIES_BY_MODEL: Dict[type, TrackedEntity] = {e.model: e for e in TRACKED_ENTITIES.values()}


def get_tracked_entity(channel: str) -> TrackedEntity:
    """Look up the tracked entity for a channel name."""
    try:
        return TRACKED_ENTITIES[channel]
    except KeyError:
        raise UnknownChannelError(channel) from None


def tracked_entity_for(obj_or_class: Any) -> Optional[TrackedEntity]:
    """Return the tracked entity for an ORM instance or class, if any."""
    cls = obj_or_class if isinstance(obj_or_class, type) else type(obj_or_class)
    return _ENTITIES_BY_MODEL.get(cls)

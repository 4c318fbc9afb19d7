"""Tests for the store manager and the versioned record store."""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from changesync.database import (
    DatabaseManager,
    DatabaseService,
    AssetSnapshot,
    AssetChainSnapshot,
    StaleVersionError,
    TransientIOFailure,
    UnknownChannelError,
    ASSETS_CHANNEL,
    ASSET_CHAINS_CHANNEL,
    init_database,
    close_database,
    get_db_manager,
    get_record_repository,
    get_tracked_entity
)
from changesync.database.models import utcnow
from changesync.utils.logging import setup_logging, get_logger


class TestDatabaseManager:
    """Connection, schema and transaction handling."""

    def setup_method(self):
        """Set up an in-memory store."""
        self.db = DatabaseManager("sqlite://")
        self.db.create_tables()

    def teardown_method(self):
        """Release the engine."""
        self.db.dispose()

    def test_tables_created(self):
        tables = self.db.get_table_info()

        for name in ("t_assets", "t_asset_chains", "change_log", "sync_status", "sync_meta"):
            assert name in tables
        assert "uuid" in tables["t_assets"]["columns"]
        assert tables["t_asset_chains"]["primary_keys"] == ["key_chain_id"]
        assert tables["sync_meta"]["primary_keys"] == ["key"]

    def test_connection(self):
        assert self.db.test_connection() is True

    def test_session_scope_rolls_back_on_error(self):
        service = DatabaseService(self.db)

        with pytest.raises(ValueError):
            with self.db.session_scope() as session:
                session.add(get_tracked_entity(ASSETS_CHANNEL).model(uuid="u1"))
                session.flush()
                raise ValueError("abort")

        assert service.get_record(ASSETS_CHANNEL, "u1") is None
        assert service.get_pending_changes() == []

    def test_unreachable_store_is_transient_failure(self, tmp_path):
        missing = tmp_path / "no" / "such" / "dir" / "store.db"
        db = DatabaseManager(f"sqlite:///{missing}")

        with pytest.raises(TransientIOFailure):
            with db.session_scope() as session:
                session.execute(get_tracked_entity(ASSETS_CHANNEL).model.__table__.select())

        assert db.test_connection() is False
        db.dispose()

    def test_file_store_uses_wal(self, tmp_path):
        db = DatabaseManager(f"sqlite:///{tmp_path / 'data' / 'store.db'}")
        db.create_tables()

        with db.engine.connect() as connection:
            mode = connection.exec_driver_sql("PRAGMA journal_mode").scalar()

        assert mode.lower() == "wal"
        db.dispose()


class TestGlobalDatabase:
    """Process-wide manager lifecycle."""

    def teardown_method(self):
        """Drop the global manager."""
        close_database()

    def test_init_and_close(self, tmp_path):
        setup_logging(log_level="DEBUG")
        logger = get_logger("test_database")
        logger.info("Initializing test store", path=str(tmp_path))

        manager = init_database(f"sqlite:///{tmp_path / 'store.db'}")

        assert get_db_manager() is manager
        close_database()
        assert get_db_manager() is not manager

    def test_init_clears_stale_guard(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'store.db'}"
        first = init_database(url)
        DatabaseService(first).set_remote_apply_guard(True)

        second = init_database(url)

        assert not DatabaseService(second).is_remote_apply_guard_enabled()


class TestVersionedRecordStore:
    """Upsert, delete, version bumps and change queries."""

    def setup_method(self):
        """Set up an in-memory store."""
        self.db = DatabaseManager("sqlite://")
        self.db.create_tables()
        self.service = DatabaseService(self.db)

    def teardown_method(self):
        """Release the engine."""
        self.db.dispose()

    def test_upsert_new_record_starts_at_version_one(self):
        record = self.service.upsert_asset({"uuid": "u1", "label": "web"})

        assert record.version == 1
        assert record.created_at is not None
        assert record.updated_at == record.created_at

    def test_upsert_existing_record_increments_version(self):
        self.service.upsert_asset({"uuid": "u1", "label": "web"})
        record = self.service.upsert_asset({"uuid": "u1", "label": "db"})

        assert record.version == 2
        assert record.label == "db"

    def test_upsert_keeps_caller_version(self):
        record = self.service.upsert_asset(AssetSnapshot(uuid="u1", label="web", version=7))
        assert record.version == 7

        record = self.service.upsert_asset(AssetSnapshot(uuid="u1", label="web2", version=9))
        assert record.version == 9

    def test_upsert_overwrites_every_mutable_field(self):
        self.service.upsert_asset({"uuid": "u1", "label": "web", "port": 22, "favorite": True})
        record = self.service.upsert_asset({"uuid": "u1", "label": "web"})

        assert record.port is None
        assert record.favorite is False

    def test_upsert_asset_chain(self):
        record = self.service.upsert_asset_chain(AssetChainSnapshot(uuid="k1", chain_name="ops"))

        assert record.chain_name == "ops"
        assert isinstance(record, AssetChainSnapshot)

    def test_create_rejects_duplicate_uuid(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1"})

        with pytest.raises(ValueError):
            self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1"})

        assert len(self.service.get_pending_changes()) == 1

    def test_update_unknown_record_returns_none(self):
        assert self.service.update_record(ASSETS_CHANNEL, "missing", {"label": "x"}) is None

    def test_update_rejects_system_fields(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1"})

        with pytest.raises(ValueError):
            self.service.update_record(ASSETS_CHANNEL, "u1", {"uuid": "u2"})
        with pytest.raises(ValueError):
            self.service.update_record(ASSETS_CHANNEL, "u1", {"version": 10})

    def test_delete_is_idempotent(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1"})

        assert self.service.delete_asset_by_uuid("u1") is True
        assert self.service.delete_asset_by_uuid("u1") is False
        assert self.service.delete_asset_chain_by_uuid("never-existed") is False

    def test_bump_version(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1"})
        before = self.service.get_record(ASSETS_CHANNEL, "u1")

        assert self.service.bump_version(ASSETS_CHANNEL, "u1", 1) is True

        after = self.service.get_record(ASSETS_CHANNEL, "u1")
        assert after.version == 2
        assert after.updated_at >= before.updated_at
        # confirmation of a synced state, not a new local change
        assert len(self.service.get_pending_changes()) == 1

    def test_bump_version_noop_inputs(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1"})

        assert self.service.bump_version(ASSETS_CHANNEL, "", 1) is False
        assert self.service.bump_version(ASSETS_CHANNEL, "u1", 0) is False
        assert self.service.bump_version(ASSETS_CHANNEL, "u1", None) is False
        assert self.service.bump_version(ASSETS_CHANNEL, "missing", 1) is False
        assert self.service.get_record(ASSETS_CHANNEL, "u1").version == 1

    def test_get_assets_since(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "old"})
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "new"})

        with self.db.session_scope() as session:
            model = get_tracked_entity(ASSETS_CHANNEL).model
            row = session.query(model).filter(model.uuid == "old").one()
            row.updated_at = utcnow() - timedelta(days=2)

        since = utcnow() - timedelta(days=1)
        assert [a.uuid for a in self.service.get_assets(since)] == ["new"]
        assert [a.uuid for a in self.service.get_assets()] == ["old", "new"]
        assert self.service.get_asset_chains() == []

    def test_snapshot_has_no_local_id(self):
        record = self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1", "key_chain_uuid": "k1"})

        dumped = record.model_dump()
        assert "id" not in dumped
        assert dumped["key_chain_uuid"] == "k1"

    def test_unknown_channel(self):
        with pytest.raises(UnknownChannelError):
            self.service.get_record("t_unknown_sync", "u1")

        with pytest.raises(KeyError):
            get_tracked_entity("t_unknown_sync")

    def test_get_assets_since_aware_time(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1"})
        plus_five = timezone(timedelta(hours=5))

        an_hour_ago = datetime.now(timezone.utc).astimezone(plus_five) - timedelta(hours=1)
        in_an_hour = datetime.now(timezone.utc).astimezone(plus_five) + timedelta(hours=1)

        assert [a.uuid for a in self.service.get_assets(an_hour_ago)] == ["u1"]
        assert self.service.get_assets(in_an_hour) == []

    def test_upsert_refuses_older_version(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1", "label": "a"})
        for label in ("b", "c", "d"):
            self.service.update_record(ASSETS_CHANNEL, "u1", {"label": label})

        with pytest.raises(StaleVersionError):
            self.service.upsert_record(ASSETS_CHANNEL, {"uuid": "u1", "version": 1})

        record = self.service.get_record(ASSETS_CHANNEL, "u1")
        assert record.version == 4
        assert record.label == "d"
        assert len(self.service.get_pending_changes()) == 4

    def test_upsert_accepts_same_version(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1", "label": "a"})

        record = self.service.upsert_record(ASSETS_CHANNEL, {"uuid": "u1", "label": "b", "version": 1})

        assert record.version == 1
        assert record.label == "b"

    def test_bump_version_refuses_to_go_backwards(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1", "label": "a"})
        self.service.update_record(ASSETS_CHANNEL, "u1", {"label": "b"})
        self.service.update_record(ASSETS_CHANNEL, "u1", {"label": "c"})

        with pytest.raises(StaleVersionError):
            self.service.bump_version(ASSETS_CHANNEL, "u1", 1)

        assert self.service.get_record(ASSETS_CHANNEL, "u1").version == 3

    def test_pinned_version_does_not_outlive_upsert(self):
        """A later local edit in the same session is still versioned."""
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1", "label": "a"})

        with self.db.session_scope() as session:
            repo = get_record_repository(session, ASSETS_CHANNEL)
            row, created = repo.upsert(AssetSnapshot(uuid="u1", label="a", version=1))
            assert not created
            assert row.version == 1

            row.label = "edited"
            session.flush()
            assert row.version == 2

        update = self.service.get_pending_changes()[-1]
        assert update.change_data["label"] == "edited"
        assert update.change_data["version"] == 2

    def test_pinned_version_does_not_outlive_bump(self):
        self.service.create_record(ASSETS_CHANNEL, {"uuid": "u1", "label": "a"})

        with self.db.session_scope() as session:
            repo = get_record_repository(session, ASSETS_CHANNEL)
            repo.bump_version("u1", 1)
            row = repo.get_by_uuid("u1")
            row.label = "edited"
            session.flush()
            assert row.version == 3

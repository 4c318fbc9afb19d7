"""Database connection and session management."""

import os
from typing import Generator, Optional
from contextlib import contextmanager

from sqlalchemy import create_engine, event, MetaData, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .capture import install_change_capture
from .exceptions import TransientIOFailure
from .guard import clear_stale_guard
from .models import Base
from ..config.settings import get_settings
from ..utils.logging import get_logger


logger = get_logger("database")


class DatabaseManager:
    """Database connection and session manager."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database manager."""
        self.settings = get_settings()
        self.database_url = database_url or self.settings.database.url
        url = make_url(self.database_url)
        self.is_sqlite = url.get_backend_name() == "sqlite"
        self.is_memory = self.is_sqlite and url.database in (None, "", ":memory:")

        if self.is_memory:
            # One shared connection, otherwise every checkout sees an empty database
            self.engine = create_engine(
                self.database_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=self.settings.database.echo
            )
        elif self.is_sqlite:
            self.engine = create_engine(
                self.database_url,
                connect_args={
                    "check_same_thread": False,
                    "timeout": self.settings.database.busy_timeout_seconds
                },
                echo=self.settings.database.echo
            )
            if self.settings.database.journal_wal:
                event.listen(self.engine, "connect", _set_sqlite_pragmas)
        else:
            self.engine = create_engine(
                self.database_url,
                pool_pre_ping=True,
                pool_recycle=300,
                echo=self.settings.database.echo
            )

        self.SessionLocal = sessionmaker(
            autoflush=False,
            bind=self.engine
        )
        install_change_capture(self.SessionLocal)

        logger.info("Database manager initialized", database_url=self._safe_url())

    def _safe_url(self) -> str:
        return make_url(self.database_url).render_as_string(hide_password=True)

    def create_tables(self):
        """Create all database tables."""
        try:
            if self.is_sqlite and not self.is_memory:
                db_dir = os.path.dirname(make_url(self.database_url).database)
                if db_dir:
                    os.makedirs(db_dir, exist_ok=True)

            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created successfully")
        except Exception as e:
            logger.error("Failed to create database tables", error=str(e))
            raise

    def drop_tables(self):
        """Drop all database tables."""
        try:
            Base.metadata.drop_all(bind=self.engine)
            logger.info("Database tables dropped successfully")
        except Exception as e:
            logger.error("Failed to drop database tables", error=str(e))
            raise

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations.

        Store outages surface as TransientIOFailure; everything else is
        re-raised unchanged after the rollback.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            logger.error("Database unavailable, transaction rolled back", error=str(e))
            raise TransientIOFailure(str(e)) from e
        except BaseException as e:
            session.rollback()
            logger.error("Database transaction rolled back", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            session.close()

    def recover(self) -> bool:
        """Clear state an interrupted process may have left behind."""
        with self.session_scope() as session:
            return clear_stale_guard(session)

    def test_connection(self) -> bool:
        """Test database connection."""
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            logger.info("Database connection test successful")
            return True
        except Exception as e:
            logger.error("Database connection test failed", error=str(e))
            return False

    def get_table_info(self) -> dict:
        """Get information about database tables."""
        metadata = MetaData()
        metadata.reflect(bind=self.engine)

        table_info = {}
        for table_name, table in metadata.tables.items():
            table_info[table_name] = {
                "columns": [col.name for col in table.columns],
                "primary_keys": [col.name for col in table.primary_key],
            }

        logger.debug("Retrieved table information", tables=list(table_info.keys()))
        return table_info

    def dispose(self):
        """Close pooled connections."""
        self.engine.dispose()


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get the global database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> DatabaseManager:
    """Initialize the database and make it the global instance."""
    global _db_manager
    if _db_manager is not None:
        _db_manager.dispose()
    _db_manager = DatabaseManager(database_url)

    if create_tables:
        _db_manager.create_tables()

    if not _db_manager.test_connection():
        raise TransientIOFailure("Failed to establish database connection")

    if create_tables:
        _db_manager.recover()

    return _db_manager


def close_database():
    """Close database connections."""
    global _db_manager
    if _db_manager:
        _db_manager.dispose()
        _db_manager = None
        logger.info("Database connections closed")

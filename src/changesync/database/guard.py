"""Echo guard: suppresses change capture while remote changes are applied.

The flag lives in ``sync_meta`` and is written inside the same transaction
as the writes it guards, so a rollback or a crash takes it away with them.
A process-wide lock makes enable -> apply -> disable one critical section.
"""

import threading
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import SyncMetaModel
from ..utils.logging import get_logger


logger = get_logger("database.guard")

REMOTE_APPLY_GUARD_KEY = "apply_remote_guard"

_apply_lock = threading.RLock()


def is_guard_enabled(session: Session) -> bool:
    """Whether capture is suppressed, as seen from this session's transaction."""
    with session.no_autoflush:
        value = session.execute(
            select(SyncMetaModel.value).where(SyncMetaModel.key == REMOTE_APPLY_GUARD_KEY)
        ).scalar_one_or_none()
    return value is not None


def set_remote_apply_guard(session: Session, enabled: bool) -> None:
    """Set or clear the guard flag within the session's transaction."""
    row = session.get(SyncMetaModel, REMOTE_APPLY_GUARD_KEY)
    if enabled:
        if row is None:
            session.add(SyncMetaModel(key=REMOTE_APPLY_GUARD_KEY, value="1"))
        else:
            row.value = "1"
    elif row is not None:
        session.delete(row)
    session.flush()
    logger.debug("Remote apply guard set", enabled=enabled)


def clear_stale_guard(session: Session) -> bool:
    """Remove a guard flag left behind by an interrupted bulk apply."""
    if not is_guard_enabled(session):
        return False
    set_remote_apply_guard(session, False)
    logger.warning("Cleared stale remote apply guard; change capture re-enabled")
    return True


class SuppressionHandle:
    """Release handle returned by :func:`acquire_suppression`."""

    def __init__(self, session: Session):
        self._session = session
        self.released = False

    def release(self) -> None:
        """Clear the guard. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        if not self._session.is_active:
            # Failed flush: the pending rollback discards the flag row
            logger.debug("Remote apply guard discarded with rolled back transaction")
            return
        set_remote_apply_guard(self._session, False)


@contextmanager
def acquire_suppression(session: Session) -> Generator[SuppressionHandle, None, None]:
    """Suppress change capture for writes made through ``session``.

    The guard is released when the block exits, whatever the outcome.
    """
    with _apply_lock:
        was_enabled = is_guard_enabled(session)
        if not was_enabled:
            set_remote_apply_guard(session, True)
        handle = SuppressionHandle(session)
        if was_enabled:
            # Nested inside an outer suppression; the outer owner clears it
            handle.released = True
        try:
            yield handle
        finally:
            handle.release()


@contextmanager
def suppressed_session(db_manager) -> Generator[Session, None, None]:
    """Transactional session whose writes are never captured."""
    with db_manager.session_scope() as session:
        with acquire_suppression(session):
            yield session

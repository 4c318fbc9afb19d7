"""Store-level exceptions."""


class ChangeSyncError(Exception):
    """Base exception for changesync errors."""


class CaptureFailure(ChangeSyncError):
    """A tracked write could not be recorded in the change outbox.

    Raised from inside the flush so the business write rolls back with it.
    """


class TransientIOFailure(ChangeSyncError):
    """The local store is unavailable. Callers decide whether to retry."""


class UnknownChannelError(ChangeSyncError, KeyError):
    """No tracked entity is registered for the channel name."""

    def __str__(self) -> str:
        return f"Unknown sync channel: {self.args[0]!r}" if self.args else "Unknown sync channel"


class StaleVersionError(ChangeSyncError, ValueError):
    """A write would move a record's version backwards."""

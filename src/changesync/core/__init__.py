"""Core sync logic package."""

from .apply_engine import ApplyEngine, ApplyResult, ApplyOutcome, ApplyConflict, ApplyFailure

__all__ = [
    "ApplyEngine",
    "ApplyResult",
    "ApplyOutcome",
    "ApplyConflict",
    "ApplyFailure"
]

"""Local-first change capture, outbox and remote apply engine."""

__version__ = "1.0.0"

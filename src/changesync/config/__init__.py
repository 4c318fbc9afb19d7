"""Configuration package for changesync."""

from .settings import (
    DatabaseSettings,
    OutboxSettings,
    LoggingSettings,
    AppSettings,
    get_settings,
    reload_settings
)

from .loader import (
    ConfigLoader,
    ConfigurationError
)

__all__ = [
    "DatabaseSettings",
    "OutboxSettings",
    "LoggingSettings",
    "AppSettings",
    "get_settings",
    "reload_settings",

    "ConfigLoader",
    "ConfigurationError"
]

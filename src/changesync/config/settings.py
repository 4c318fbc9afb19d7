"""Application configuration settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Local store configuration."""

    model_config = SettingsConfigDict(env_prefix="CHANGESYNC_DB_")

    url: str = Field(default="sqlite:///./data/changesync.db")
    echo: bool = Field(default=False, description="Log every SQL statement")
    journal_wal: bool = Field(default=True, description="Use WAL journaling for file databases")
    busy_timeout_seconds: int = Field(default=20, ge=0)


class OutboxSettings(BaseSettings):
    """Change outbox configuration."""

    model_config = SettingsConfigDict(env_prefix="CHANGESYNC_OUTBOX_")

    page_size: int = Field(default=100, ge=1)
    status_batch_size: int = Field(default=500, ge=1, description="Ids per UPDATE inside one status transaction")
    max_error_length: int = Field(default=500, ge=1)
    retention_days: int = Field(default=90, ge=1)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="CHANGESYNC_LOG_")

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file_path: Optional[str] = Field(default=None)


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHANGESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    name: str = Field(default="changesync")
    environment: str = Field(default="development")

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    outbox: OutboxSettings = Field(default_factory=OutboxSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Global settings instance
settings = AppSettings()


def get_settings() -> AppSettings:
    """Get application settings."""
    return settings


def reload_settings(new_settings: Optional[AppSettings] = None) -> AppSettings:
    """Replace the process settings, re-reading the environment when none are given."""
    global settings
    settings = new_settings or AppSettings()
    return settings

import logging
import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BotSettings(BaseSettings):
    """Configuration for the Telegram bot."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="BOT_", extra="ignore"
    )

    token: str = Field(..., description="Telegram Bot Token from @BotFather")
    admin_id: Optional[int] = Field(None, description="Admin's Telegram User ID for special commands")


class DatabaseSettings(BaseSettings):
    """Configuration for the database and its reliability features."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="DATABASE_", extra="ignore"
    )

    path: str = Field("data/modelbot.db", description="Path to the SQLite database file")
    enable_wal: bool = Field(True, description="Use write-ahead logging")
    enable_foreign_keys: bool = Field(True, description="Enforce foreign key constraints")
    connection_timeout_ms: int = Field(
        5000, gt=0, lt=100000, description="Busy-wait cap while the database is locked"
    )
    retry_attempts: int = Field(5, ge=1, lt=20, description="Attempts for retries and reconnection")
    health_check_interval_ms: int = Field(30000, gt=0, description="Interval between health checks")
    backup_interval_ms: int = Field(3600000, gt=0, description="Interval between automatic backups")
    max_backups: int = Field(10, gt=0, description="Number of backup files to keep")
    backup_directory: str = Field("data/backups", description="Directory for backup files")
    enable_health_monitoring: bool = Field(False, description="Run periodic health checks")
    enable_auto_backup: bool = Field(False, description="Create backups on a schedule")

    @field_validator("path")
    def path_must_not_be_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Database path must not be empty")
        return v

    @model_validator(mode="after")
    def in_memory_store_has_no_backups(self) -> "DatabaseSettings":
        if self.enable_auto_backup and self.is_memory:
            raise ValueError("Automatic backups require a file-backed database")
        return self

    @property
    def is_memory(self) -> bool:
        """Return True when the store lives only in memory."""
        return self.path == ":memory:" or "mode=memory" in self.path


class SchedulerSettings(BaseSettings):
    """Configuration for the scheduler."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="SCHEDULER_", extra="ignore"
    )

    timezone: str = Field("UTC", description="Timezone for scheduler operations")


class AppSettings(BaseSettings):
    """General application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    debug: bool = Field(False, description="Enable debug mode for development")
    log_level: str = Field("INFO", description="Logging level")

    bot: BotSettings = Field(default_factory=BotSettings)
    db: DatabaseSettings = Field(default_factory=DatabaseSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    @property
    def log_level_value(self) -> int:
        """Return the numeric value of the log level."""
        return logging.getLevelName(self.log_level.upper())


@lru_cache
def get_settings() -> AppSettings:
    """
    Get application settings.
    If the TEST_MODE environment variable is set, it returns a mock configuration
    suitable for testing, otherwise loads the configuration from the .env file.
    """
    if os.getenv("TEST_MODE"):
        return AppSettings(
            debug=True,
            log_level="DEBUG",
            bot=BotSettings(token="test_token", admin_id=123),
            db=DatabaseSettings(path=":memory:", enable_wal=False),
            scheduler=SchedulerSettings(timezone="UTC"),
        )
    return AppSettings()

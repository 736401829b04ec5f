# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Core configuration - centralized config for the parley package.

All environment-based configuration should flow through this module.

Usage:
    from parley.core.config import get_config
    config = get_config()

    window = config.edit_window
    log_level = config.log_level
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    """Core configuration settings for Parley.

    Settings are read from PARLEY_* environment variables (or a .env file).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==========================================================================
    # STORAGE SETTINGS
    # ==========================================================================

    storage_backend: str = Field(
        default="memory",
        description="Repository implementation: 'memory' or 'postgres'",
        validation_alias="PARLEY_STORAGE_BACKEND",
    )
    db_host: str = Field(
        default="localhost",
        description="Database host",
        validation_alias="PARLEY_DB_HOST",
    )
    db_port: int = Field(
        default=5432,
        description="Database port",
        validation_alias="PARLEY_DB_PORT",
    )
    db_name: str = Field(
        default="parley",
        description="Database name",
        validation_alias="PARLEY_DB_NAME",
    )
    db_user: str = Field(
        default="parley",
        description="Database user",
        validation_alias="PARLEY_DB_USER",
    )
    db_password: str = Field(
        default="",
        description="Database password",
        validation_alias="PARLEY_DB_PASSWORD",
    )

    # Connection pool settings
    db_pool_min: int = Field(
        default=2,
        description="Minimum pool connections",
        validation_alias="PARLEY_DB_POOL_MIN",
    )
    db_pool_max: int = Field(
        default=20,
        description="Maximum pool connections",
        validation_alias="PARLEY_DB_POOL_MAX",
    )
    db_pool_timeout: int = Field(
        default=10,
        description="Seconds to wait for a pooled connection",
        validation_alias="PARLEY_DB_POOL_TIMEOUT",
    )
    db_statement_timeout_ms: int = Field(
        default=5000,
        description="Server-side statement timeout applied to every connection",
        validation_alias="PARLEY_DB_STATEMENT_TIMEOUT_MS",
    )

    # ==========================================================================
    # CRYPTO SETTINGS
    # ==========================================================================

    encryption_key: str = Field(
        default="",
        description="Process-wide secret the message encryption key is derived from",
        validation_alias="PARLEY_ENCRYPTION_KEY",
    )

    # ==========================================================================
    # MEMBERSHIP & MESSAGE RULES
    # ==========================================================================

    edit_window_minutes: int = Field(
        default=15,
        description="Minutes after the original send during which a message may be edited",
        validation_alias="PARLEY_EDIT_WINDOW_MINUTES",
    )
    rejoin_cooldown_hours: int = Field(
        default=48,
        description="Hours a user must wait after leaving a private group before rejoining",
        validation_alias="PARLEY_REJOIN_COOLDOWN_HOURS",
    )
    search_scan_limit: int = Field(
        default=500,
        description="Most recent non-deleted messages scanned by a search",
        validation_alias="PARLEY_SEARCH_SCAN_LIMIT",
    )
    default_page_size: int = Field(
        default=50,
        description="Default number of messages returned by a listing",
        validation_alias="PARLEY_DEFAULT_PAGE_SIZE",
    )
    max_page_size: int = Field(
        default=200,
        description="Largest listing or search limit a caller may request",
        validation_alias="PARLEY_MAX_PAGE_SIZE",
    )
    default_search_limit: int = Field(
        default=20,
        description="Default number of search results",
        validation_alias="PARLEY_DEFAULT_SEARCH_LIMIT",
    )

    # ==========================================================================
    # CONCURRENCY SETTINGS
    # ==========================================================================

    lock_timeout_seconds: float = Field(
        default=5.0,
        description="Upper bound on waiting for an aggregate lock",
        validation_alias="PARLEY_LOCK_TIMEOUT_SECONDS",
    )
    subscriber_queue_size: int = Field(
        default=256,
        description="Events buffered per live subscriber before it is dropped",
        validation_alias="PARLEY_SUBSCRIBER_QUEUE_SIZE",
    )

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
        validation_alias="PARLEY_LOG_LEVEL",
    )
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
        validation_alias="PARLEY_LOG_FORMAT",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (optional)",
        validation_alias="PARLEY_LOG_FILE",
    )

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def edit_window(self) -> timedelta:
        return timedelta(minutes=self.edit_window_minutes)

    @property
    def rejoin_cooldown(self) -> timedelta:
        return timedelta(hours=self.rejoin_cooldown_hours)

    @property
    def database_url(self) -> str:
        """Construct database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def connection_params(self) -> dict:
        """Get database connection parameters dict."""
        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "options": f"-c statement_timeout={self.db_statement_timeout_ms}",
        }

    @property
    def pool_config(self) -> dict:
        """Get connection pool configuration."""
        return {
            "minconn": self.db_pool_min,
            "maxconn": self.db_pool_max,
        }


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: CoreSettings | None = None


def get_config() -> CoreSettings:
    """Get the global configuration instance.

    Returns:
        The singleton CoreSettings instance.
    """
    global _config
    if _config is None:
        _config = CoreSettings()
    return _config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None

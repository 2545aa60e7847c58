"""Environment-driven settings for the inventory engine.

Each group reads its own prefix (``DATABASE_*``, ``INVENTORY_*``) through
pydantic-settings. Per-tenant behaviour lives in the tenant's workflow
settings instead; see ``src.services.workflow_settings_service``.
"""

import logging

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseSettings):
    """Engine timeouts. The connection target itself comes from ``db_config``."""

    url: str | None = Field(default=None, description="Database connection URL")
    query_timeout: int = Field(default=30, description="Statement timeout in seconds")
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    pool_timeout: int = Field(default=30, description="Seconds to wait for a pooled connection")

    model_config = SettingsConfigDict(env_prefix="DATABASE_", case_sensitive=False)


class InventoryConfig(BaseSettings):
    """Reservation and reconciliation tuning."""

    lock_timeout_ms: int = Field(default=2000, description="Bounded wait for a counter row lock")
    busy_retry_attempts: int = Field(default=3, description="Attempts before Busy is surfaced")
    busy_retry_delay_seconds: float = Field(default=0.05, description="Initial backoff between Busy retries")
    default_reservation_ttl_hours: int = Field(default=72, description="Hold TTL when tenant settings omit it")
    reconciliation_interval_seconds: int = Field(default=300, description="Seconds between reconciliation sweeps")
    settings_cache_seconds: int = Field(default=60, description="Per-tenant workflow settings cache TTL")
    degrade_conflicts_to_alerts: bool = Field(
        default=False, description="Platform-wide default for filing overbooking alerts instead of failing a step"
    )

    model_config = SettingsConfigDict(env_prefix="INVENTORY_", case_sensitive=False)

    @field_validator("busy_retry_attempts")
    @classmethod
    def validate_busy_retry_attempts(cls, v):
        if v < 1:
            raise ValueError("INVENTORY_BUSY_RETRY_ATTEMPTS must be at least 1")
        return v

    @field_validator("default_reservation_ttl_hours", "reconciliation_interval_seconds", "lock_timeout_ms")
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"INVENTORY_{info.field_name.upper()} must be positive")
        return v


class ServerConfig(BaseSettings):
    """HTTP server and background job switches."""

    api_port: int = Field(default=8001, description="HTTP API port")
    run_reconciliation: bool = Field(default=True, description="Start the reconciliation scheduler with the API")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)


class AppConfig(BaseSettings):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    inventory: InventoryConfig = Field(default_factory=InventoryConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Settings are read from the environment once and cached."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next call re-reads the environment."""
    global _config
    _config = None


def get_inventory_config() -> InventoryConfig:
    return get_config().inventory


def validate_configuration() -> None:
    """Load every settings group, turning pydantic errors into one startup error.

    Raises:
        RuntimeError: If any environment value is invalid
    """
    try:
        config = get_config()
    except ValidationError as e:
        raise RuntimeError(f"Configuration validation failed: {e}") from e

    logger.info(
        f"Configuration validated: database={'DATABASE_URL' if config.database.url else 'DB_* defaults'}, "
        f"lock_timeout_ms={config.inventory.lock_timeout_ms}, "
        f"sweep_interval={config.inventory.reconciliation_interval_seconds}s"
    )

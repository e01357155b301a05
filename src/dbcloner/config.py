"""
Server configuration.

Settings are read from ``DBCLONER_*`` environment variables and an optional
``.env`` file. List values are given as JSON, e.g.
``DBCLONER_TABLE_ORDER='["users", "orders"]'``.

Example:
    >>> settings = ClonerSettings(max_concurrent_operations=1)
    >>> settings.is_protected("production")
    True
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class ClonerSettings(BaseSettings):
    """
    Configuration of the cloner service.

    Attributes:
        production_protection: Refuse to clone into protected environments.
        protected_name_patterns: Case-insensitive substrings marking an
            environment name as protected.
        max_concurrent_operations: Pending or running clones allowed at once
            (0 means unlimited).
        stall_timeout_seconds: Fail an operation without progress for this
            long (0 disables the watchdog).
        operation_retention_seconds: Drop finished operations after this long
            (0 keeps them until restart).
        validation_timeout_seconds: Upper bound for one connection validation.
        max_log_entries: Log lines kept per operation.
        table_order: Server-wide table order, applied before foreign-key order.
        schemas: Additional schemas reflected by the SQL backend.
        superuser_tokens: Bearer tokens granting the superuser role.
    """

    model_config = SettingsConfigDict(
        env_prefix="DBCLONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    production_protection: bool = True
    protected_name_patterns: list[str] = Field(default_factory=lambda: ["prod"])
    max_concurrent_operations: int = Field(default=0, ge=0)
    stall_timeout_seconds: float = Field(default=1800.0, ge=0)
    operation_retention_seconds: float = Field(default=3600.0, ge=0)
    validation_timeout_seconds: float = Field(default=15.0, gt=0)
    max_log_entries: int = Field(default=500, ge=1)
    table_order: list[str] = Field(default_factory=list)
    schemas: list[str] = Field(default_factory=list)

    enable_tracing: bool = True
    enable_metrics: bool = True
    log_level: str = "INFO"

    api_prefix: str = "/api/database-cloner"
    superuser_tokens: list[SecretStr] = Field(default_factory=list)
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("api_prefix")
    @classmethod
    def _validate_api_prefix(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("api_prefix must start with '/'")
        return value.rstrip("/")

    def is_protected(self, environment_name: str) -> bool:
        """
        Whether cloning into ``environment_name`` must be refused.

        Always False when production protection is disabled.
        """
        if not self.production_protection:
            return False
        lowered = environment_name.lower()
        return any(pattern.lower() in lowered for pattern in self.protected_name_patterns)


@lru_cache
def get_settings() -> ClonerSettings:
    """Process-wide settings, read once."""
    return ClonerSettings()


def configure_logging(level: str | int = "INFO") -> None:
    """
    Configure root logging for the server process.

    Args:
        level: Level name or number.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    # Keep driver chatter out of INFO logs; SQL echo may contain row values
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


__all__ = ["ClonerSettings", "get_settings", "configure_logging", "LOG_FORMAT"]

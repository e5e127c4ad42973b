"""Unified configuration schema for branch_sync.

Defines Pydantic models for the config structure with dedicated sections
for the local database, remote connections, sync behaviour, credential
security and logging.

Usage:
    from branch_sync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator

from .sync.models import SyncType

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """Local (primary) database settings."""

    url: str = Field(
        default="postgresql+psycopg2://postgres@localhost:5432/zkteco_db",
        description="SQLAlchemy URL of the local database",
    )
    connect_timeout: int = Field(
        default=30,
        ge=1,
        le=600,
        description="Seconds to wait when opening a local connection",
    )

    model_config = {"frozen": True}


class RemoteConfig(BaseModel):
    """Settings applied to every remote location connection.

    Attributes:
        driver: SQLAlchemy dialect+driver used to build remote URLs.
        connect_timeout: Seconds before a remote connect attempt fails.
        default_port: Port offered when a location is added without one.
    """

    driver: str = Field(default="postgresql+psycopg2")
    connect_timeout: int = Field(default=15, ge=1, le=300)
    default_port: int = Field(default=5432, ge=1, le=65535)

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    default_type: SyncType = Field(
        default=SyncType.INCREMENTAL,
        description="Sync type used when the CLI does not pass --full",
    )
    audit_log_dir: str = Field(
        default="SyncLogs", description="Directory of daily sync log files"
    )
    operator: str = Field(
        default="system", description="Operator name recorded in history"
    )

    model_config = {"frozen": True}


class SecurityConfig(BaseModel):
    """Credential encryption settings.

    ``secret_key`` wins over ``key_file``; when neither holds a key the
    key file is created on first use.
    """

    secret_key: str | None = Field(
        default=None, description="Fernet key for stored location passwords"
    )
    key_file: str = Field(
        default=".branch_sync/secret.key",
        description="File holding the Fernet key",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", description="text or json")

    model_config = {"frozen": True}

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{value}': must be one of {', '.join(_LOG_LEVELS)}"
            )
        return level

    @field_validator("format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if value not in ("text", "json"):
            raise ValueError(f"Invalid log format '{value}': must be text or json")
        return value


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict | None) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults; unknown top-level keys are logged and
    ignored.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    known = set(UnifiedConfig.model_fields)
    unknown = sorted(k for k in raw_data if k not in known)
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", ", ".join(unknown))

    sections = {k: v for k, v in raw_data.items() if k in known and v is not None}
    return UnifiedConfig(**sections)

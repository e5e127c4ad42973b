"""Configuration resolution for the branch-sync CLI.

Combines YAML config files, environment variables, .env files and CLI
arguments into one validated ``UnifiedConfig``.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    BRANCH_SYNC_DATABASE_URL: SQLAlchemy URL of the local database
    BRANCH_SYNC_REMOTE_DRIVER: Dialect+driver for remote locations
    BRANCH_SYNC_CONNECT_TIMEOUT: Remote connect timeout in seconds (1-300)
    BRANCH_SYNC_AUDIT_LOG_DIR: Directory of the daily sync logs
    BRANCH_SYNC_OPERATOR: Operator name recorded in history
    BRANCH_SYNC_SECRET_KEY: Fernet key for stored location passwords
    BRANCH_SYNC_KEY_FILE: File holding the Fernet key
"""

import logging
import os
from typing import Any

import pydantic
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from .config_loader import load_hierarchical_config
from .config_schema import UnifiedConfig, build_config

logger = logging.getLogger(__name__)

# (env var, section, field)
_ENV_FIELDS = (
    ("BRANCH_SYNC_DATABASE_URL", "database", "url"),
    ("BRANCH_SYNC_REMOTE_DRIVER", "remote", "driver"),
    ("BRANCH_SYNC_CONNECT_TIMEOUT", "remote", "connect_timeout"),
    ("BRANCH_SYNC_AUDIT_LOG_DIR", "sync", "audit_log_dir"),
    ("BRANCH_SYNC_OPERATOR", "sync", "operator"),
    ("BRANCH_SYNC_SECRET_KEY", "security", "secret_key"),
    ("BRANCH_SYNC_KEY_FILE", "security", "key_file"),
)

# CLI override key -> (section, field)
_CLI_FIELDS = {
    "database_url": ("database", "url"),
    "connect_timeout": ("remote", "connect_timeout"),
    "audit_log_dir": ("sync", "audit_log_dir"),
    "operator": ("sync", "operator"),
    "key_file": ("security", "key_file"),
    "log_level": ("logging", "level"),
    "log_file": ("logging", "file"),
    "log_format": ("logging", "format"),
}


def _overlay(raw: dict[str, Any], section: str, field: str, value: Any) -> None:
    current = raw.get(section)
    merged = dict(current) if isinstance(current, dict) else {}
    merged[field] = value
    raw[section] = merged


def validate_config(config: UnifiedConfig) -> None:
    """Validate cross-field values that Pydantic cannot check alone.

    Raises:
        ValueError: If the database URL or remote driver is malformed.
    """
    try:
        make_url(config.database.url)
    except ArgumentError:
        raise ValueError(
            f"Invalid database URL '{config.database.url}'. "
            "Set BRANCH_SYNC_DATABASE_URL or 'database.url' in config.yml."
        ) from None

    try:
        make_url(f"{config.remote.driver}://")
    except ArgumentError:
        raise ValueError(
            f"Invalid remote driver '{config.remote.driver}': "
            "expected dialect+driver, e.g. postgresql+psycopg2"
        ) from None

    if config.security.secret_key is None and not config.security.key_file:
        raise ValueError(
            "No credential key configured. Set BRANCH_SYNC_SECRET_KEY "
            "or 'security.key_file'."
        )


def load_config(
    cli_overrides: dict[str, Any] | None = None,
    raw_data: dict[str, Any] | None = None,
) -> UnifiedConfig:
    """Load configuration with unified precedence.

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        cli_overrides: CLI argument values keyed by ``database_url``,
            ``connect_timeout``, ``audit_log_dir``, ``operator``,
            ``key_file``, ``log_level``, ``log_file`` or ``log_format``.
            ``None`` values are ignored.
        raw_data: Already-loaded YAML data.  Defaults to
            ``load_hierarchical_config()``.

    Returns:
        Validated ``UnifiedConfig`` instance.

    Raises:
        ValueError: If any value is invalid after checking all sources.
    """
    raw = dict(raw_data if raw_data is not None else load_hierarchical_config())

    for env_var, section, field in _ENV_FIELDS:
        value = os.getenv(env_var)
        if value:
            _overlay(raw, section, field, value)

    for key, value in (cli_overrides or {}).items():
        if value is None:
            continue
        if key not in _CLI_FIELDS:
            raise ValueError(f"Unknown CLI override '{key}'")
        section, field = _CLI_FIELDS[key]
        _overlay(raw, section, field, value)

    try:
        config = build_config(raw)
    except pydantic.ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValueError(f"Invalid configuration: {details}") from None

    validate_config(config)
    logger.debug(
        "Resolved config for database %s",
        make_url(config.database.url).render_as_string(hide_password=True),
    )
    return config

"""Wiring of the sync services from a ``UnifiedConfig``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import Engine

from .config_schema import UnifiedConfig
from .credentials import CredentialCipher, load_or_create_key
from .database import EngineFactory, RemoteEngineFactory, create_db_engine
from .registry import LocationRegistry
from .sync.applier import ChangeApplier
from .sync.audit_log import SyncAuditLog
from .sync.detector import ChangeDetector
from .sync.engine import StateListener, SyncEngine
from .sync.history import SyncHistoryRecorder
from .sync.probe import ConnectionProbe
from .sync.watermarks import WatermarkStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Container:
    config: UnifiedConfig
    local_engine: Engine
    cipher: CredentialCipher

    registry: LocationRegistry
    probe: ConnectionProbe
    watermarks: WatermarkStore
    history: SyncHistoryRecorder
    audit_log: SyncAuditLog

    engine: SyncEngine

    def dispose(self) -> None:
        self.local_engine.dispose()


def _load_cipher(config: UnifiedConfig) -> CredentialCipher:
    key = config.security.secret_key
    if key is None:
        key = load_or_create_key(Path(config.security.key_file).expanduser())
    return CredentialCipher(key)


def build_container(
    config: UnifiedConfig,
    *,
    local_engine: Engine | None = None,
    engine_factory: EngineFactory | None = None,
    on_state_change: StateListener | None = None,
) -> Container:
    """Create every service the CLI needs.

    Args:
        config: Resolved configuration.
        local_engine: Engine to use instead of one built from
            ``database.url``.
        engine_factory: Remote engine factory to use instead of a
            ``RemoteEngineFactory`` built from the ``remote`` section.
        on_state_change: Listener passed to the ``SyncEngine``.
    """
    local_engine = local_engine or create_db_engine(
        config.database.url,
        connect_timeout=config.database.connect_timeout,
        pool_pre_ping=True,
    )
    cipher = _load_cipher(config)

    registry = LocationRegistry(local_engine, cipher)
    probe = ConnectionProbe(
        engine_factory
        or RemoteEngineFactory(
            driver=config.remote.driver,
            connect_timeout=config.remote.connect_timeout,
        )
    )
    watermarks = WatermarkStore(local_engine)
    history = SyncHistoryRecorder(local_engine)
    audit_log = SyncAuditLog(Path(config.sync.audit_log_dir))

    engine = SyncEngine(
        registry=registry,
        probe=probe,
        detector=ChangeDetector(local_engine, watermarks),
        applier=ChangeApplier(local_engine, watermarks),
        history=history,
        audit_log=audit_log,
        on_state_change=on_state_change,
    )
    logger.debug(
        "Services wired for %s",
        local_engine.url.render_as_string(hide_password=True),
    )

    return Container(
        config=config,
        local_engine=local_engine,
        cipher=cipher,
        registry=registry,
        probe=probe,
        watermarks=watermarks,
        history=history,
        audit_log=audit_log,
        engine=engine,
    )

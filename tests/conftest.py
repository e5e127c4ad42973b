"""Shared pytest fixtures for branch-sync tests.

Local and remote databases are separate SQLite files under ``tmp_path``
created from the same metadata, so detection and apply run against real
SQL without a PostgreSQL server.
"""

from datetime import datetime

import pytest
from pydantic import SecretStr
from sqlalchemy import insert

from branch_sync.credentials import CredentialCipher, generate_key
from branch_sync.database import create_db_engine
from branch_sync.registry import LocationRegistry
from branch_sync.schema import ensure_schema
from branch_sync.sync.audit_log import SyncAuditLog
from branch_sync.sync.engine import SyncEngine
from branch_sync.sync.models import RemoteLocation, SyncContext
from branch_sync.sync.probe import ConnectionProbe
from branch_sync.sync.watermarks import WatermarkStore

FIXED_NOW = datetime(2024, 3, 1, 14, 5, 31)


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live PostgreSQL server",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live PostgreSQL server"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Databases
# ---------------------------------------------------------------------------


def _sqlite_engine(path):
    engine = create_db_engine(f"sqlite:///{path}")
    ensure_schema(engine)
    return engine


@pytest.fixture
def local_engine(tmp_path):
    engine = _sqlite_engine(tmp_path / "local.db")
    yield engine
    engine.dispose()


@pytest.fixture
def remote_engine(tmp_path):
    engine = _sqlite_engine(tmp_path / "remote.db")
    yield engine
    engine.dispose()


@pytest.fixture
def seed():
    """Factory fixture inserting rows into a table of an engine."""

    def _seed(engine, table, *rows):
        with engine.begin() as conn:
            conn.execute(insert(table), [dict(row) for row in rows])

    return _seed


# ---------------------------------------------------------------------------
# Registry and context
# ---------------------------------------------------------------------------


@pytest.fixture
def cipher():
    return CredentialCipher(generate_key())


@pytest.fixture
def registry(local_engine, cipher):
    return LocationRegistry(local_engine, cipher)


@pytest.fixture
def make_location():
    """Factory fixture building an unsaved ``RemoteLocation``."""

    def _make(**overrides) -> RemoteLocation:
        defaults = {
            "location_name": "Branch A",
            "host": "10.0.0.5",
            "port": 5432,
            "database_name": "zkteco_db",
            "username": "sync",
            "password": SecretStr("s3cret"),
        }
        defaults.update(overrides)
        return RemoteLocation(**defaults)

    return _make


@pytest.fixture
def location(registry, make_location):
    return registry.add(make_location())


@pytest.fixture
def context(location):
    return SyncContext(location=location, operator_name="admin")


@pytest.fixture
def watermarks(local_engine):
    return WatermarkStore(local_engine)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@pytest.fixture
def engine_factory(remote_engine):
    """Engine factory that maps every location to the remote SQLite file."""
    return lambda location: remote_engine


@pytest.fixture
def audit_log(tmp_path):
    return SyncAuditLog(tmp_path / "SyncLogs", clock=lambda: FIXED_NOW)


@pytest.fixture
def sync_engine(local_engine, registry, engine_factory, audit_log):
    return SyncEngine.create(
        local_engine, registry, ConnectionProbe(engine_factory), audit_log
    )

"""Engine construction for the local store and remote locations.

- ``create_db_engine`` builds an Engine from a URL, with SQLite tuned so
  nested transactions (SAVEPOINTs) behave like they do on PostgreSQL.
- ``RemoteEngineFactory`` turns a ``RemoteLocation`` into an Engine with a
  bounded connect timeout.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.pool import NullPool

if TYPE_CHECKING:
    from branch_sync.sync.models import RemoteLocation

logger = logging.getLogger(__name__)

EngineFactory = Callable[["RemoteLocation"], Engine]


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def create_db_engine(
    url: str | URL,
    connect_timeout: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create an Engine for *url*.

    Args:
        url: SQLAlchemy database URL.
        connect_timeout: Seconds to wait for a connection. Mapped to the
            driver's own option (``connect_timeout`` for PostgreSQL,
            ``timeout`` for SQLite).
        **kwargs: Passed through to ``create_engine``.

    Returns:
        A configured Engine.
    """
    url = make_url(url)
    connect_args: dict[str, Any] = dict(kwargs.pop("connect_args", {}))
    is_sqlite = url.get_backend_name() == "sqlite"

    if connect_timeout is not None:
        if is_sqlite:
            connect_args.setdefault("timeout", connect_timeout)
        else:
            connect_args.setdefault("connect_timeout", connect_timeout)

    engine = create_engine(url, connect_args=connect_args, **kwargs)
    if is_sqlite:
        _enable_sqlite_savepoints(engine)
    return engine


class RemoteEngineFactory:
    """Build Engines for remote locations.

    Args:
        driver: SQLAlchemy driver name, e.g. ``postgresql+psycopg2``.
        connect_timeout: Connect timeout in seconds applied to every engine.
    """

    def __init__(
        self, driver: str = "postgresql+psycopg2", connect_timeout: int = 15
    ) -> None:
        self.driver = driver
        self.connect_timeout = connect_timeout

    def url_for(self, location: RemoteLocation) -> URL:
        return URL.create(
            drivername=self.driver,
            username=location.username,
            password=location.password.get_secret_value(),
            host=location.host,
            port=location.port,
            database=location.database_name,
        )

    def __call__(self, location: RemoteLocation) -> Engine:
        url = self.url_for(location)
        logger.debug(
            "Creating engine for location '%s' (%s)",
            location.location_name,
            url.render_as_string(hide_password=True),
        )
        # No pooling: a remote engine lives for a single run.
        return create_db_engine(
            url,
            connect_timeout=self.connect_timeout,
            poolclass=NullPool,
        )

"""Connection probe for remote locations.

A probe opens a real connection and runs ``SELECT 1``; nothing is read or
written beyond that.  The connect timeout comes from the engine factory,
so an unreachable host fails within a bounded time.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from branch_sync.database import EngineFactory
from branch_sync.errors import ConnectivityError
from branch_sync.sync.models import ProbeResult, RemoteLocation

logger = logging.getLogger(__name__)


def _reason(exc: SQLAlchemyError) -> str:
    # The driver message is more useful than SQLAlchemy's wrapper text.
    orig = getattr(exc, "orig", None)
    message = str(orig if orig is not None else exc).strip()
    return message.splitlines()[0] if message else type(exc).__name__


class ConnectionProbe:
    """Check that a location's database answers.

    Args:
        engine_factory: Callable building an Engine for a location.
    """

    def __init__(self, engine_factory: EngineFactory) -> None:
        self.engine_factory = engine_factory

    def check(self, location: RemoteLocation) -> Engine:
        """Probe *location* and return a ready Engine for it.

        The caller owns the returned Engine and should ``dispose()`` it.

        Raises:
            ConnectivityError: If the handshake fails.
        """
        try:
            engine = self.engine_factory(location)
        except SQLAlchemyError as exc:
            raise ConnectivityError(location.location_name, _reason(exc)) from exc
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            engine.dispose()
            raise ConnectivityError(location.location_name, _reason(exc)) from exc
        logger.debug("Probe succeeded for '%s'", location.location_name)
        return engine

    def test(self, location: RemoteLocation) -> ProbeResult:
        """Probe *location* and report the outcome without raising."""
        started = time.monotonic()
        try:
            engine = self.check(location)
        except ConnectivityError as exc:
            logger.info("Connection test failed for '%s': %s", location.location_name, exc.reason)
            return ProbeResult(
                location_name=location.location_name,
                success=False,
                message=exc.reason,
                elapsed_seconds=round(time.monotonic() - started, 3),
            )
        engine.dispose()
        return ProbeResult(
            location_name=location.location_name,
            success=True,
            message="Connection successful",
            elapsed_seconds=round(time.monotonic() - started, 3),
        )

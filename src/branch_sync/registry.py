"""Registry of remote locations.

Stores connection details for each branch database in the local
``remote_locations`` table.  Passwords are encrypted with the configured
``CredentialCipher`` before they are written and decrypted on read.

A location that is currently being synchronised cannot be updated or
deleted; the run holds its per-location lock until it finishes.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Engine, RowMapping

from branch_sync.credentials import CredentialCipher
from branch_sync.errors import LocationNotFoundError, SyncInProgressError
from branch_sync.schema import remote_locations, sync_applied_rows, sync_table_tracking
from branch_sync.sync.locks import LocationLocks
from branch_sync.sync.models import RemoteLocation

logger = logging.getLogger(__name__)

_STATUS_MAX = 50


class LocationRegistry:
    """CRUD access to remote locations.

    Args:
        engine: Engine of the local database.
        cipher: Cipher used for stored passwords.
        locks: Run locks shared with the sync engine.
    """

    def __init__(
        self,
        engine: Engine,
        cipher: CredentialCipher,
        locks: LocationLocks | None = None,
    ) -> None:
        self._engine = engine
        self._cipher = cipher
        self.locks = locks or LocationLocks()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_locations(self, active_only: bool = False) -> list[RemoteLocation]:
        """Return locations ordered by name."""
        t = remote_locations
        stmt = select(t).order_by(t.c.location_name)
        if active_only:
            stmt = stmt.where(t.c.is_active.is_(True))
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._from_row(row) for row in rows]

    def get(self, location_id: int) -> RemoteLocation:
        """Return one location.

        Raises:
            LocationNotFoundError: If the id is unknown.
        """
        t = remote_locations
        with self._engine.connect() as conn:
            row = conn.execute(
                select(t).where(t.c.location_id == location_id)
            ).mappings().first()
        if row is None:
            raise LocationNotFoundError(location_id)
        return self._from_row(row)

    # ------------------------------------------------------------------
    # Changes
    # ------------------------------------------------------------------

    def add(self, location: RemoteLocation) -> RemoteLocation:
        """Insert a new location and return it with its id."""
        values = self._to_values(location)
        with self._engine.begin() as conn:
            location_id = conn.execute(
                insert(remote_locations).values(**values)
            ).inserted_primary_key[0]
        logger.info("Added location '%s' (#%s)", location.location_name, location_id)
        return location.model_copy(update={"location_id": location_id})

    def update(self, location: RemoteLocation) -> RemoteLocation:
        """Save changed connection details of an existing location.

        Raises:
            LocationNotFoundError: If the id is unknown.
            SyncInProgressError: If a run currently holds the location.
        """
        if location.location_id is None:
            raise LocationNotFoundError(-1)
        self._check_not_syncing(location.location_id, location.location_name)

        t = remote_locations
        values = self._to_values(location)
        values["updated_at"] = datetime.now()
        with self._engine.begin() as conn:
            result = conn.execute(
                update(t).where(t.c.location_id == location.location_id).values(**values)
            )
        if result.rowcount == 0:
            raise LocationNotFoundError(location.location_id)
        logger.info("Updated location '%s'", location.location_name)
        return location

    def delete(self, location_id: int) -> None:
        """Delete a location and its watermarks.

        Sync history is kept; entries carry the location name.

        Raises:
            LocationNotFoundError: If the id is unknown.
            SyncInProgressError: If a run currently holds the location.
        """
        location = self.get(location_id)
        self._check_not_syncing(location_id, location.location_name)
        with self._engine.begin() as conn:
            conn.execute(
                delete(sync_table_tracking).where(
                    sync_table_tracking.c.location_id == location_id
                )
            )
            conn.execute(
                delete(sync_applied_rows).where(
                    sync_applied_rows.c.location_id == location_id
                )
            )
            conn.execute(
                delete(remote_locations).where(
                    remote_locations.c.location_id == location_id
                )
            )
        logger.info("Deleted location '%s'", location.location_name)

    def update_sync_status(
        self, location_id: int, status: str, synced_at: datetime | None = None
    ) -> None:
        """Record the outcome of the latest run (status truncated to 50 chars)."""
        t = remote_locations
        with self._engine.begin() as conn:
            conn.execute(
                update(t)
                .where(t.c.location_id == location_id)
                .values(
                    last_sync_time=synced_at or datetime.now(),
                    last_sync_status=status[:_STATUS_MAX],
                )
            )

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _check_not_syncing(self, location_id: int, name: str) -> None:
        if self.locks.is_locked(location_id):
            raise SyncInProgressError(name)

    def _to_values(self, location: RemoteLocation) -> dict:
        return {
            "location_name": location.location_name.strip(),
            "host": location.host.strip(),
            "port": location.port,
            "database_name": location.database_name.strip(),
            "username": location.username.strip(),
            "password": self._cipher.encrypt(location.password.get_secret_value()),
            "is_active": location.is_active,
        }

    def _from_row(self, row: RowMapping) -> RemoteLocation:
        return RemoteLocation(
            location_id=row["location_id"],
            location_name=row["location_name"],
            host=row["host"],
            port=row["port"] or 5432,
            database_name=row["database_name"],
            username=row["username"],
            password=self._cipher.decrypt(row["password"]),
            is_active=bool(row["is_active"]),
            last_sync_time=row["last_sync_time"],
            last_sync_status=row["last_sync_status"],
        )

"""Per-location, per-table sync watermarks.

A watermark is the detection start time of the last run whose changes for
that table were all approved and applied.  Incremental detection reads
only remote rows changed after it; conflict detection asks whether the
local row also changed after it.

Watermarks live in the local ``sync_table_tracking`` table together with a
per-table enabled flag, so an operator can exclude a table from a
location's runs.

Key design choices:

* **Advance inside the apply transaction** -- ``advance()`` takes the
  caller's connection so a watermark never moves unless the rows it covers
  are committed.
* **Never move backwards** -- an older timestamp is ignored.
* **Applied-row stamps** -- the remote change time copied into each
  applied row is remembered until the table's watermark passes it, so the
  detector can tell an applied row from a local edit.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine

from branch_sync.schema import sync_applied_rows, sync_table_tracking
from branch_sync.sync.models import TableId

logger = logging.getLogger(__name__)


class WatermarkStore:
    """Read and advance sync watermarks.

    Args:
        engine: Engine of the local database.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, location_id: int, table: TableId) -> datetime | None:
        """Return the watermark for one table, ``None`` before the first sync."""
        return self.get_all(location_id).get(table)

    def get_all(self, location_id: int) -> dict[TableId, datetime | None]:
        """Return every recorded watermark of a location."""
        t = sync_table_tracking
        stmt = select(t.c.table_name, t.c.last_sync_time).where(
            t.c.location_id == location_id
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        result: dict[TableId, datetime | None] = {}
        for table_name, last_sync_time in rows:
            try:
                result[TableId(table_name)] = last_sync_time
            except ValueError:
                logger.warning(
                    "Ignoring tracking row for unknown table %r", table_name
                )
        return result

    def disabled_tables(self, location_id: int) -> set[TableId]:
        """Tables excluded from synchronisation for a location."""
        t = sync_table_tracking
        stmt = select(t.c.table_name).where(
            t.c.location_id == location_id, t.c.is_enabled.is_(False)
        )
        with self._engine.connect() as conn:
            names = conn.execute(stmt).scalars().all()
        return {TableId(name) for name in names if name in _TABLE_NAMES}

    def applied_stamps(self, location_id: int) -> dict[TableId, dict[str, datetime]]:
        """Remote change times of rows applied since each table's watermark.

        Returns:
            ``{table: {record_key: remote_changed_at}}``.
        """
        t = sync_applied_rows
        stmt = select(t.c.table_name, t.c.record_key, t.c.remote_changed_at).where(
            t.c.location_id == location_id
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        result: dict[TableId, dict[str, datetime]] = {}
        for table_name, record_key, changed_at in rows:
            if table_name in _TABLE_NAMES:
                result.setdefault(TableId(table_name), {})[record_key] = changed_at
        return result

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def set_enabled(self, location_id: int, table: TableId, enabled: bool) -> None:
        """Include or exclude *table* from a location's runs."""
        with self._engine.begin() as conn:
            self._upsert(conn, location_id, table, {"is_enabled": enabled})
        logger.info(
            "%s table %s for location %s",
            "Enabled" if enabled else "Disabled",
            table.value,
            location_id,
        )

    def advance(
        self,
        conn: Connection,
        location_id: int,
        table: TableId,
        synced_at: datetime,
        record_count: int = 0,
    ) -> bool:
        """Move a watermark forward within the caller's transaction.

        Args:
            conn: Connection with an open transaction.
            location_id: Location the watermark belongs to.
            table: Table whose watermark moves.
            synced_at: New watermark value.
            record_count: Rows applied for the table in this run.

        Returns:
            ``True`` if the watermark moved, ``False`` if *synced_at* is not
            newer than the stored value.
        """
        t = sync_table_tracking
        current = conn.execute(
            select(t.c.last_sync_time).where(
                t.c.location_id == location_id, t.c.table_name == table.value
            )
        ).first()
        if current is not None and current[0] is not None and current[0] >= synced_at:
            return False
        self._upsert(
            conn,
            location_id,
            table,
            {"last_sync_time": synced_at, "last_record_count": record_count},
        )
        # Rows stamped at or before the watermark no longer look locally edited.
        conn.execute(
            delete(sync_applied_rows).where(
                sync_applied_rows.c.location_id == location_id,
                sync_applied_rows.c.table_name == table.value,
                sync_applied_rows.c.remote_changed_at <= synced_at,
            )
        )
        logger.debug(
            "Watermark for %s/%s advanced to %s", location_id, table.value, synced_at
        )
        return True

    def record_applied(
        self,
        conn: Connection,
        location_id: int,
        table: TableId,
        record_key: str,
        changed_at: datetime,
    ) -> None:
        """Remember the remote change time written into an applied row."""
        t = sync_applied_rows
        where = (
            t.c.location_id == location_id,
            t.c.table_name == table.value,
            t.c.record_key == record_key,
        )
        result = conn.execute(update(t).where(*where).values(remote_changed_at=changed_at))
        if result.rowcount == 0:
            conn.execute(
                insert(t).values(
                    location_id=location_id,
                    table_name=table.value,
                    record_key=record_key,
                    remote_changed_at=changed_at,
                )
            )

    def _upsert(
        self, conn: Connection, location_id: int, table: TableId, values: dict
    ) -> None:
        t = sync_table_tracking
        result = conn.execute(
            update(t)
            .where(t.c.location_id == location_id, t.c.table_name == table.value)
            .values(**values)
        )
        if result.rowcount == 0:
            conn.execute(
                insert(t).values(
                    location_id=location_id, table_name=table.value, **values
                )
            )


_TABLE_NAMES = {table.value for table in TableId}

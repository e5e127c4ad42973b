"""Append-only sync history.

One ``sync_history`` row is written per sync attempt, including attempts
that failed before anything was applied.  Rows are never updated; the
recorder exposes no update or delete operation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine

from branch_sync.schema import sync_history
from branch_sync.sync.models import (
    SyncContext,
    SyncHistoryEntry,
    SyncResult,
    SyncStatistics,
    SyncStatus,
    SyncType,
    TableId,
)

logger = logging.getLogger(__name__)

# error_message keeps the first lines only; the audit log has the rest.
_MAX_ERROR_LINES = 20


class SyncHistoryRecorder:
    """Persist and query sync history.

    Args:
        engine: Engine of the local database.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(
        self,
        context: SyncContext,
        sync_type: SyncType,
        result: SyncResult,
        started_at: datetime,
        completed_at: datetime,
        tables: Iterable[TableId] = (),
    ) -> SyncHistoryEntry:
        """Persist the outcome of an apply pass."""
        problems = [*result.errors, *result.warnings]
        error_message = None
        if problems:
            lines = problems[:_MAX_ERROR_LINES]
            if len(problems) > _MAX_ERROR_LINES:
                lines.append(f"... and {len(problems) - _MAX_ERROR_LINES} more")
            error_message = "\n".join(lines)

        entry = SyncHistoryEntry(
            location_id=context.location.location_id,
            location_name=context.location.location_name,
            sync_type=sync_type,
            records_added=result.records_added,
            records_updated=result.records_updated,
            records_skipped=result.records_skipped,
            status=result.status,
            error_message=error_message,
            operator=context.operator_name,
            tables_synced=[t.value for t in tables],
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=round((completed_at - started_at).total_seconds(), 3),
        )
        return self._insert(entry)

    def record_failure(
        self,
        context: SyncContext,
        sync_type: SyncType,
        reason: str,
        started_at: datetime,
        completed_at: datetime | None = None,
    ) -> SyncHistoryEntry:
        """Persist an attempt that failed before any change was applied."""
        completed_at = completed_at or datetime.now()
        entry = SyncHistoryEntry(
            location_id=context.location.location_id,
            location_name=context.location.location_name,
            sync_type=sync_type,
            status=SyncStatus.FAILED,
            error_message=reason,
            operator=context.operator_name,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=round((completed_at - started_at).total_seconds(), 3),
        )
        return self._insert(entry)

    def _insert(self, entry: SyncHistoryEntry) -> SyncHistoryEntry:
        values = entry.model_dump(exclude={"sync_id"})
        values["sync_type"] = entry.sync_type.value
        values["status"] = entry.status.value
        values["tables_synced"] = ",".join(entry.tables_synced) or None
        with self._engine.begin() as conn:
            sync_id = conn.execute(insert(sync_history).values(**values)).inserted_primary_key[0]
        logger.info(
            "Recorded %s %s sync #%s for '%s'",
            entry.status.value,
            entry.sync_type.value,
            sync_id,
            entry.location_name,
        )
        return entry.model_copy(update={"sync_id": sync_id})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recent(self, limit: int = 20, location_id: int | None = None) -> list[SyncHistoryEntry]:
        """Return the newest entries first.

        Args:
            limit: Maximum number of entries.
            location_id: Restrict to one location.
        """
        t = sync_history
        stmt = select(t).order_by(t.c.started_at.desc(), t.c.sync_id.desc()).limit(limit)
        if location_id is not None:
            stmt = stmt.where(t.c.location_id == location_id)
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_entry_from_row(row) for row in rows]

    def statistics(
        self, location_id: int | None = None, since: datetime | None = None
    ) -> SyncStatistics:
        """Aggregate run counts and record totals."""
        t = sync_history
        stmt = select(
            t.c.status,
            func.count().label("runs"),
            func.coalesce(func.sum(t.c.records_added), 0).label("added"),
            func.coalesce(func.sum(t.c.records_updated), 0).label("updated"),
            func.coalesce(func.sum(t.c.records_skipped), 0).label("skipped"),
            func.max(t.c.completed_at).label("last_at"),
        ).group_by(t.c.status)
        if location_id is not None:
            stmt = stmt.where(t.c.location_id == location_id)
        if since is not None:
            stmt = stmt.where(t.c.started_at >= since)

        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        runs = {status: 0 for status in SyncStatus}
        totals = {"added": 0, "updated": 0, "skipped": 0}
        last_success_at = None
        for row in rows:
            status = SyncStatus(row["status"])
            runs[status] = row["runs"]
            for key in totals:
                totals[key] += row[key]
            if status == SyncStatus.SUCCESS:
                last_success_at = row["last_at"]

        return SyncStatistics(
            total_runs=sum(runs.values()),
            successful_runs=runs[SyncStatus.SUCCESS],
            partial_runs=runs[SyncStatus.PARTIAL],
            failed_runs=runs[SyncStatus.FAILED],
            records_added=totals["added"],
            records_updated=totals["updated"],
            records_skipped=totals["skipped"],
            last_success_at=last_success_at,
        )


def _entry_from_row(row) -> SyncHistoryEntry:
    data = dict(row)
    tables = data.pop("tables_synced", None)
    data["tables_synced"] = tables.split(",") if tables else []
    return SyncHistoryEntry(**data)

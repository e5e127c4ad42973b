"""Apply an approved batch of changes to the local database.

The whole batch runs in one local transaction.  Each change runs inside its
own SAVEPOINT so a failing row is rolled back alone: its error is recorded,
it counts as skipped and the remaining rows still apply (skip-and-continue).
The outer transaction commits once at the end.
The remote change time written into each row is stamped alongside it, so
the next detection pass does not read the applied row as a local edit.

If the transaction itself is lost (commit failure or a dropped connection)
nothing is applied, the result reports ``success=False`` and every item
counts as skipped.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from branch_sync.errors import AlreadyAppliedError, ApplyError, FatalTransactionError
from branch_sync.sync.models import ChangeType, PendingChange, SyncContext, SyncResult, TableId
from branch_sync.sync.queue import ApprovedBatch
from branch_sync.sync.tables import TABLES, TableDescriptor
from branch_sync.sync.watermarks import WatermarkStore

logger = logging.getLogger(__name__)


def _error_line(change: PendingChange, exc: Exception) -> str:
    reason = getattr(exc, "orig", None) or exc
    return f"{change.table.value}/{change.record_key}: {reason}"


def summarize(added: int, updated: int, skipped: int) -> str:
    """One-line result message, e.g. ``Synced 3 records (2 new, 1 updated)``."""
    message = f"Synced {added + updated} records ({added} new, {updated} updated)"
    if skipped:
        message += f", {skipped} skipped"
    return message


class ChangeApplier:
    """Write approved changes to the local database.

    Args:
        local_engine: Engine of the local database.
        watermarks: Store whose watermarks advance on clean tables.
        tables: Descriptor registry used to dispatch writes.
    """

    def __init__(
        self,
        local_engine: Engine,
        watermarks: WatermarkStore,
        tables: dict[TableId, TableDescriptor] | None = None,
    ) -> None:
        self.local_engine = local_engine
        self.watermarks = watermarks
        self.tables = tables if tables is not None else TABLES

    def apply(
        self,
        context: SyncContext,
        batch: ApprovedBatch,
        scanned_tables: Iterable[TableId] = (),
        watermark_at: datetime | None = None,
    ) -> SyncResult:
        """Apply *batch* and return the outcome.

        Args:
            context: Location and operator of the run.
            batch: Approved changes, consumed by this call.
            scanned_tables: Tables detection read successfully.  Their
                watermarks advance to *watermark_at* when every change of
                the table was approved and applied.
            watermark_at: Detection start time of the run.

        Returns:
            A ``SyncResult``.  ``records_added + records_updated +
            records_skipped`` equals ``len(batch)``.

        Raises:
            AlreadyAppliedError: If the batch was applied before.
        """
        if batch.consumed:
            raise AlreadyAppliedError("This batch has already been applied")
        batch.consumed = True

        started = time.monotonic()
        try:
            result = self._apply_batch(context, batch, scanned_tables, watermark_at)
        except FatalTransactionError as exc:
            logger.error(
                "Apply for '%s' rolled back: %s", context.location.location_name, exc
            )
            result = SyncResult(
                success=False,
                records_skipped=len(batch),
                errors=[str(exc)],
                message=f"Sync failed, no changes applied: {exc}",
            )
        return result.model_copy(
            update={"duration_seconds": round(time.monotonic() - started, 3)}
        )

    def _apply_batch(
        self,
        context: SyncContext,
        batch: ApprovedBatch,
        scanned_tables: Iterable[TableId],
        watermark_at: datetime | None,
    ) -> SyncResult:
        added = updated = skipped = 0
        errors: list[str] = []
        applied: list[PendingChange] = []
        failed_tables: set[TableId] = set()

        try:
            with self.local_engine.connect() as conn:
                with conn.begin():
                    for change in batch.changes:
                        descriptor = self.tables[change.table]
                        try:
                            with conn.begin_nested():
                                descriptor.apply(conn, change)
                                self._stamp(conn, context, descriptor, change)
                        except DBAPIError as exc:
                            if exc.connection_invalidated:
                                raise FatalTransactionError(
                                    f"Connection lost while applying {change.change_id}"
                                ) from exc
                            errors.append(_error_line(change, exc))
                            failed_tables.add(change.table)
                            skipped += 1
                            continue
                        except (ApplyError, SQLAlchemyError) as exc:
                            errors.append(_error_line(change, exc))
                            failed_tables.add(change.table)
                            skipped += 1
                            continue

                        applied.append(change)
                        if change.change_type == ChangeType.NEW:
                            added += 1
                        else:
                            updated += 1

                    if watermark_at is not None:
                        self._advance_watermarks(
                            conn,
                            context,
                            applied,
                            clean=set(scanned_tables)
                            - set(batch.held_back_tables)
                            - failed_tables,
                            watermark_at=watermark_at,
                        )
        except SQLAlchemyError as exc:
            raise FatalTransactionError(f"Transaction failed: {exc}") from exc

        for line in errors:
            logger.warning("Skipped %s", line)

        return SyncResult(
            success=True,
            records_added=added,
            records_updated=updated,
            records_skipped=skipped,
            errors=errors,
            message=summarize(added, updated, skipped),
            applied_changes=applied,
        )

    def _stamp(
        self,
        conn: Connection,
        context: SyncContext,
        descriptor: TableDescriptor,
        change: PendingChange,
    ) -> None:
        # Insert-only tables are never Updated, so they need no stamp.
        changed_at = descriptor.changed_at(change.remote_snapshot)
        if not descriptor.compare_columns or changed_at is None:
            return
        self.watermarks.record_applied(
            conn, context.location_id, change.table, change.record_key, changed_at
        )

    def _advance_watermarks(
        self,
        conn: Connection,
        context: SyncContext,
        applied: Sequence[PendingChange],
        clean: set[TableId],
        watermark_at: datetime,
    ) -> None:
        per_table = Counter(change.table for change in applied)
        for table in sorted(clean, key=list(TableId).index):
            self.watermarks.advance(
                conn,
                context.location_id,
                table,
                watermark_at,
                record_count=per_table.get(table, 0),
            )

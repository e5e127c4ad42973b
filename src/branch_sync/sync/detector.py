"""Change detection between a remote location and the local store.

For every synchronised table, in priority order, the detector:

1. Reads remote rows (since the table's watermark for incremental runs;
   tables without a change timestamp are always read in full).
2. Reads the local rows that may match them.
3. Collapses duplicate natural keys on both sides.
4. Classifies each remote row as New, Updated or Conflict, or drops it
   when both sides already agree.

Detection never writes.  Running it twice against unchanged databases
yields identical change lists.

Error handling is per-table: a table that cannot be read is reported as a
warning and the remaining tables are still compared.  Failing to read the
local sync state or to open either connection raises ``DetectionError``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from branch_sync.errors import DetectionError
from branch_sync.sync.models import (
    ChangeType,
    DetectionReport,
    PendingChange,
    SyncContext,
    SyncType,
    TableId,
)
from branch_sync.sync.tables import Row, TableDescriptor, sync_order
from branch_sync.sync.watermarks import WatermarkStore

logger = logging.getLogger(__name__)


def _fmt(value: Any) -> str:
    if value is None or value == "":
        return "(empty)"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def classify(
    descriptor: TableDescriptor,
    local: Row | None,
    remote: Row,
    watermark: datetime | None,
    applied_at: datetime | None = None,
) -> tuple[ChangeType | None, list[str]]:
    """Classify one remote row against its local counterpart.

    The local side counts as changed when its timestamp is after the
    watermark and differs from the remote change time last applied to it;
    an applied row carries that remote time and is not a local edit.

    Args:
        descriptor: Table the rows belong to.
        local: Matching local row, or ``None``.
        remote: Remote row.
        watermark: The table's last sync time, ``None`` before first sync.
        applied_at: Remote change time last applied to this row, if any.

    Returns:
        ``(change_type, changed_fields)``; *change_type* is ``None`` when
        the rows agree.
    """
    if local is None:
        return ChangeType.NEW, []

    changed = descriptor.diff(local, remote)
    if not changed:
        return None, []

    if watermark is not None:
        local_at = descriptor.changed_at(local)
        remote_at = descriptor.changed_at(remote)
        if (
            local_at is not None
            and remote_at is not None
            and local_at > watermark
            and local_at != applied_at
            and remote_at > watermark
        ):
            return ChangeType.CONFLICT, changed

    return ChangeType.UPDATED, changed


def describe_change(
    descriptor: TableDescriptor,
    change_type: ChangeType,
    local: Row | None,
    remote: Row,
    changed: Sequence[str],
) -> str:
    """Build the review text for a change.

    Updated and Conflict descriptions list every changed field with its
    old and new value, e.g. ``Ali (1001): name 'Ali' -> 'Ali Hassan'``.
    """
    subject = descriptor.describe(remote)
    if change_type == ChangeType.NEW or local is None:
        return f"{descriptor.label}: {subject}"

    fields = "; ".join(
        f"{name} '{_fmt(local.get(name))}' -> '{_fmt(remote.get(name))}'"
        for name in changed
    )
    prefix = "both sides changed, " if change_type == ChangeType.CONFLICT else ""
    return f"{descriptor.label}: {subject}: {prefix}{fields}"


class ChangeDetector:
    """Compare a remote location against the local database.

    Args:
        local_engine: Engine of the local database.
        watermarks: Watermark store used for incremental runs.
        tables: Descriptors to compare, in priority order.
    """

    def __init__(
        self,
        local_engine: Engine,
        watermarks: WatermarkStore,
        tables: Sequence[TableDescriptor] | None = None,
    ) -> None:
        self.local_engine = local_engine
        self.watermarks = watermarks
        self.tables = list(tables) if tables is not None else sync_order()

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def detect(
        self,
        context: SyncContext,
        remote_engine: Engine,
        sync_type: SyncType = SyncType.INCREMENTAL,
    ) -> DetectionReport:
        """Run one detection pass.

        Args:
            context: Location and operator of the run.
            remote_engine: Engine connected to the location's database.
            sync_type: Full compares every row; incremental only rows
                changed since each table's watermark.

        Returns:
            A ``DetectionReport`` with changes ordered by table priority
            then natural key.

        Raises:
            DetectionError: If no table could be read at all, or the local
                sync state or either connection is unavailable.
        """
        started_at = datetime.now()
        location_id = context.location_id
        name = context.location.location_name

        changes: list[PendingChange] = []
        warnings: list[str] = []
        scanned: list[TableId] = []
        failed: list[TableId] = []

        try:
            watermarks = self.watermarks.get_all(location_id)
            disabled = self.watermarks.disabled_tables(location_id)
            stamps = self.watermarks.applied_stamps(location_id)

            with remote_engine.connect() as remote_conn, self.local_engine.connect() as local_conn:
                for descriptor in self.tables:
                    if descriptor.table_id in disabled:
                        logger.debug("Skipping disabled table %s", descriptor.table_id.value)
                        continue

                    watermark = watermarks.get(descriptor.table_id)
                    # Tables without a change timestamp cannot be filtered.
                    incremental = (
                        sync_type == SyncType.INCREMENTAL
                        and descriptor.changed_at_column is not None
                    )
                    try:
                        table_changes = self._detect_table(
                            descriptor,
                            remote_conn,
                            local_conn,
                            watermark if incremental else None,
                            watermark,
                            stamps.get(descriptor.table_id, {}),
                            warnings,
                        )
                    except SQLAlchemyError as exc:
                        logger.error(
                            "Detection failed for %s at '%s': %s",
                            descriptor.table_id.value,
                            name,
                            exc,
                        )
                        warnings.append(f"{descriptor.table_id.value}: {exc}")
                        failed.append(descriptor.table_id)
                        # A failed statement aborts the transaction on PostgreSQL.
                        remote_conn.rollback()
                        local_conn.rollback()
                        continue

                    scanned.append(descriptor.table_id)
                    changes.extend(table_changes)
        except SQLAlchemyError as exc:
            logger.error("Detection at '%s' aborted: %s", name, exc)
            raise DetectionError(f"Detection failed for '{name}': {exc}") from exc

        if failed and not scanned:
            raise DetectionError(
                f"No table could be read from '{name}': " + "; ".join(warnings)
            )

        report = DetectionReport(
            changes=changes,
            warnings=warnings,
            scanned_tables=scanned,
            failed_tables=failed,
            started_at=started_at,
            sync_type=sync_type,
        )
        logger.info(
            "Detected %d changes at '%s' (%d new, %d updated, %d conflicts)",
            len(changes),
            name,
            report.count(ChangeType.NEW),
            report.count(ChangeType.UPDATED),
            report.count(ChangeType.CONFLICT),
        )
        return report

    # ------------------------------------------------------------------
    # Per-table comparison
    # ------------------------------------------------------------------

    def _detect_table(
        self,
        descriptor: TableDescriptor,
        remote_conn: Connection,
        local_conn: Connection,
        since: datetime | None,
        watermark: datetime | None,
        stamps: dict[str, datetime],
        warnings: list[str],
    ) -> list[PendingChange]:
        remote_rows = [
            descriptor.normalize(row)
            for row in descriptor.fetch_remote(remote_conn, since)
        ]
        if not remote_rows:
            return []

        remote_index = self._index(descriptor, remote_rows, "remote", warnings)
        local_rows = [
            descriptor.normalize(row)
            for row in descriptor.fetch_local(local_conn, remote_rows)
        ]
        local_index = self._index(descriptor, local_rows, "local", warnings)

        changes: list[PendingChange] = []
        for key in sorted(remote_index, key=lambda k: descriptor.sort_key(remote_index[k])):
            remote = remote_index[key]
            local = local_index.get(key)
            record_key = descriptor.record_key(remote)
            change_type, changed = classify(
                descriptor, local, remote, watermark, stamps.get(record_key)
            )
            if change_type is None:
                continue
            changes.append(
                PendingChange(
                    change_id=f"{descriptor.table_id.value}:{record_key}",
                    table=descriptor.table_id,
                    record_key=record_key,
                    change_type=change_type,
                    local_snapshot=local,
                    remote_snapshot=remote,
                    record_description=describe_change(
                        descriptor, change_type, local, remote, changed
                    ),
                    changed_fields=changed,
                )
            )
        logger.debug(
            "%s: %d remote rows, %d changes",
            descriptor.table_id.value,
            len(remote_rows),
            len(changes),
        )
        return changes

    def _index(
        self,
        descriptor: TableDescriptor,
        rows: list[Row],
        side: str,
        warnings: list[str],
    ) -> dict[tuple, Row]:
        """Index rows by natural key, collapsing duplicates.

        Exact duplicates are dropped silently.  Duplicates whose values
        differ keep the most recently changed row and add a warning.
        """
        index: dict[tuple, Row] = {}
        for row in rows:
            key = descriptor.key_of(row)
            existing = index.get(key)
            if existing is None:
                index[key] = row
                continue
            if existing == row:
                continue

            warnings.append(
                f"{descriptor.table_id.value}/{descriptor.record_key(row)}: "
                f"duplicate {side} rows with different values, keeping the latest"
            )
            logger.warning(
                "Duplicate %s key %s in %s", side, key, descriptor.table_id.value
            )
            if _is_newer(descriptor.changed_at(row), descriptor.changed_at(existing)):
                index[key] = row
        return index


def _is_newer(candidate: datetime | None, current: datetime | None) -> bool:
    if candidate is None:
        return False
    return current is None or candidate > current

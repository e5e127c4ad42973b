"""Report formatting for sync operations.

Provides human-readable and machine-readable output:

- ``format_pending_changes`` -- review list grouped by table.
- ``format_sync_result`` -- post-apply summary.
- ``format_history`` -- tabular history listing.
- ``format_statistics`` -- aggregate history figures.
- ``format_locations`` -- registered locations.
- ``result_to_json`` / ``changes_to_json`` -- structured data for JSON output.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from .models import ChangeType, TableId
from .tables import TABLES

if TYPE_CHECKING:
    from .models import (
        PendingChange,
        RemoteLocation,
        SyncHistoryEntry,
        SyncResult,
        SyncStatistics,
    )

_MARKS = {
    ChangeType.NEW: "+",
    ChangeType.UPDATED: "~",
    ChangeType.CONFLICT: "!",
}

# ------------------------------------------------------------------
# Review list
# ------------------------------------------------------------------


def format_pending_changes(
    changes: Sequence[PendingChange], warnings: Iterable[str] = ()
) -> str:
    """Format detected changes for operator review.

    Changes are grouped by table in priority order.  Each line shows the
    approval box, a change mark (``+`` new, ``~`` updated, ``!``
    conflict), the change id and its description.

    Args:
        changes: Changes in detection order.
        warnings: Detection warnings appended at the end.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    counts = defaultdict(int)
    for change in changes:
        counts[change.change_type] += 1

    lines.append(
        f"{len(changes)} pending changes: "
        f"{counts[ChangeType.NEW]} new, "
        f"{counts[ChangeType.UPDATED]} updated, "
        f"{counts[ChangeType.CONFLICT]} conflicts"
    )

    by_table: dict[TableId, list[PendingChange]] = defaultdict(list)
    for change in changes:
        by_table[change.table].append(change)

    for table in TableId:
        group = by_table.get(table)
        if not group:
            continue
        lines.append("")
        lines.append(f"{TABLES[table].label} ({len(group)}):")
        for change in group:
            box = "[x]" if change.is_approved else "[ ]"
            lines.append(
                f"  {box} {_MARKS[change.change_type]} {change.change_id}  "
                f"{change.record_description}"
            )

    warnings = list(warnings)
    if warnings:
        lines.append("")
        lines.append("Warnings:")
        for warning in warnings:
            lines.append(f"  {warning}")

    return "\n".join(lines)


# ------------------------------------------------------------------
# Apply result
# ------------------------------------------------------------------


def format_sync_result(result: SyncResult, location_name: str) -> str:
    """Format the outcome of an apply pass.

    Args:
        result: The apply outcome.
        location_name: Location the run targeted.

    Returns:
        Multi-line formatted string.
    """
    lines = [
        f"Sync with '{location_name}': {result.status.value.upper()}",
        result.message,
        f"  Added:   {result.records_added}",
        f"  Updated: {result.records_updated}",
        f"  Skipped: {result.records_skipped}",
        f"  Duration: {result.duration_seconds:.2f}s",
    ]
    if result.errors:
        lines.append("")
        lines.append("Errors:")
        for error in result.errors:
            lines.append(f"  {error}")
    if result.warnings:
        lines.append("")
        lines.append("Warnings:")
        for warning in result.warnings:
            lines.append(f"  {warning}")
    return "\n".join(lines)


def result_to_json(result: SyncResult) -> dict[str, Any]:
    """Convert a ``SyncResult`` to a JSON-serialisable dict."""
    return {
        "success": result.success,
        "status": result.status.value,
        "message": result.message,
        "records_added": result.records_added,
        "records_updated": result.records_updated,
        "records_skipped": result.records_skipped,
        "errors": list(result.errors),
        "warnings": list(result.warnings),
        "applied": [
            {
                "change_id": c.change_id,
                "table": c.table.value,
                "change_type": c.change_type.value,
                "description": c.record_description,
            }
            for c in result.applied_changes
        ],
        "duration_seconds": result.duration_seconds,
    }


# ------------------------------------------------------------------
# History
# ------------------------------------------------------------------


def format_history(entries: Sequence[SyncHistoryEntry]) -> str:
    """Format history entries as an aligned table, newest first."""
    if not entries:
        return "No sync history."

    header = f"{'#':>5}  {'Started':<19}  {'Location':<20}  {'Type':<11}  {'Status':<7}  {'+':>5} {'~':>5} {'skip':>5}"
    lines = [header, "-" * len(header)]
    for entry in entries:
        lines.append(
            f"{entry.sync_id or '':>5}  "
            f"{entry.started_at:%Y-%m-%d %H:%M:%S}  "
            f"{entry.location_name[:20]:<20}  "
            f"{entry.sync_type.value:<11}  "
            f"{entry.status.value:<7}  "
            f"{entry.records_added:>5} {entry.records_updated:>5} {entry.records_skipped:>5}"
        )
        if entry.error_message:
            first = entry.error_message.splitlines()[0]
            lines.append(f"{'':>7}{first}")
    return "\n".join(lines)


def format_statistics(stats: SyncStatistics) -> str:
    last = (
        f"{stats.last_success_at:%Y-%m-%d %H:%M:%S}"
        if stats.last_success_at
        else "never"
    )
    return "\n".join(
        [
            f"Runs: {stats.total_runs} "
            f"({stats.successful_runs} ok, {stats.partial_runs} partial, "
            f"{stats.failed_runs} failed, {stats.success_rate:.0%} success)",
            f"Records: {stats.records_added} added, {stats.records_updated} updated, "
            f"{stats.records_skipped} skipped",
            f"Last successful sync: {last}",
        ]
    )


def changes_to_json(changes: Sequence[PendingChange]) -> list[dict[str, Any]]:
    """Convert pending changes to JSON-serialisable dicts."""
    return [
        {
            "change_id": c.change_id,
            "table": c.table.value,
            "change_type": c.change_type.value,
            "description": c.record_description,
            "changed_fields": list(c.changed_fields),
            "approved": c.is_approved,
        }
        for c in changes
    ]


# ------------------------------------------------------------------
# Locations
# ------------------------------------------------------------------


def format_locations(locations: Sequence[RemoteLocation]) -> str:
    if not locations:
        return "No locations registered."

    lines = []
    for loc in locations:
        state = "" if loc.is_active else " (inactive)"
        last = (
            f"{loc.last_sync_time:%Y-%m-%d %H:%M} {loc.last_sync_status or ''}".rstrip()
            if loc.last_sync_time
            else "never synced"
        )
        lines.append(
            f"{loc.location_id:>4}  {loc.location_name}{state}  "
            f"{loc.username}@{loc.host}:{loc.port}/{loc.database_name}  [{last}]"
        )
    return "\n".join(lines)

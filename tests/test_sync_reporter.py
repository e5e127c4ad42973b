"""Tests for sync reporter formatting functions.

Covers:
- format_pending_changes grouping, marks and warnings
- format_sync_result with and without errors
- result_to_json / changes_to_json structure
- format_history and format_statistics
- format_locations
"""

from __future__ import annotations

import json
from datetime import datetime

from pydantic import SecretStr

from branch_sync.sync.models import (
    ChangeType,
    PendingChange,
    RemoteLocation,
    SyncHistoryEntry,
    SyncResult,
    SyncStatistics,
    SyncStatus,
    SyncType,
    TableId,
)
from branch_sync.sync.reporter import (
    changes_to_json,
    format_history,
    format_locations,
    format_pending_changes,
    format_statistics,
    format_sync_result,
    result_to_json,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _change(
    table: TableId,
    key: str,
    change_type: ChangeType = ChangeType.NEW,
    description: str = "",
    approved: bool = False,
) -> PendingChange:
    return PendingChange(
        change_id=f"{table.value}:{key}",
        table=table,
        record_key=key,
        change_type=change_type,
        remote_snapshot={},
        record_description=description or f"row {key}",
        changed_fields=["name"] if change_type != ChangeType.NEW else [],
        is_approved=approved,
    )


def _entry(**overrides) -> SyncHistoryEntry:
    data = {
        "sync_id": 7,
        "location_id": 1,
        "location_name": "Branch A",
        "sync_type": SyncType.INCREMENTAL,
        "records_added": 1,
        "records_updated": 2,
        "status": SyncStatus.SUCCESS,
        "started_at": datetime(2024, 2, 1, 9, 0, 0),
        "completed_at": datetime(2024, 2, 1, 9, 0, 3),
    }
    data.update(overrides)
    return SyncHistoryEntry(**data)


# ---------------------------------------------------------------------------
# Pending changes
# ---------------------------------------------------------------------------


class TestFormatPendingChanges:
    def test_groups_by_table_in_priority_order(self):
        text = format_pending_changes(
            [
                _change(TableId.USERS, "2002", description="Employees: Sara (2002)"),
                _change(TableId.DEPARTMENTS, "1", ChangeType.UPDATED, approved=True),
            ]
        )
        lines = text.splitlines()

        assert lines[0] == "2 pending changes: 1 new, 1 updated, 0 conflicts"
        assert text.index("Departments (1):") < text.index("Employees (1):")
        assert "  [x] ~ departments:1  row 1" in lines
        assert "  [ ] + users:2002  Employees: Sara (2002)" in lines

    def test_conflict_mark(self):
        text = format_pending_changes([_change(TableId.USERS, "1", ChangeType.CONFLICT)])
        assert "! users:1" in text
        assert "1 conflicts" in text

    def test_warnings_appended(self):
        text = format_pending_changes([], warnings=["shifts: no such table"])
        assert text.endswith("Warnings:\n  shifts: no such table")

    def test_empty(self):
        assert format_pending_changes([]) == "0 pending changes: 0 new, 0 updated, 0 conflicts"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TestFormatSyncResult:
    def test_success(self):
        result = SyncResult(
            success=True,
            records_added=1,
            records_updated=1,
            message="Synced 2 records (1 new, 1 updated)",
            duration_seconds=0.5,
        )
        text = format_sync_result(result, "Branch A")

        assert text.splitlines()[0] == "Sync with 'Branch A': SUCCESS"
        assert "Synced 2 records (1 new, 1 updated)" in text
        assert "Duration: 0.50s" in text
        assert "Errors:" not in text

    def test_partial_lists_errors(self):
        result = SyncResult(
            success=True,
            records_skipped=1,
            errors=["users/9: bad"],
            warnings=["shifts: gone"],
        )
        text = format_sync_result(result, "Branch A")

        assert "PARTIAL" in text
        assert "Errors:\n  users/9: bad" in text
        assert "Warnings:\n  shifts: gone" in text


class TestJson:
    def test_result_to_json(self):
        applied = _change(TableId.USERS, "2002", approved=True)
        result = SyncResult(success=True, records_added=1, applied_changes=[applied])

        data = result_to_json(result)

        assert data["status"] == "success"
        assert data["applied"] == [
            {
                "change_id": "users:2002",
                "table": "users",
                "change_type": "new",
                "description": "row 2002",
            }
        ]
        json.dumps(data)

    def test_changes_to_json(self):
        data = changes_to_json([_change(TableId.USERS, "1001", ChangeType.UPDATED)])
        assert data[0]["changed_fields"] == ["name"]
        assert data[0]["approved"] is False
        json.dumps(data)


# ---------------------------------------------------------------------------
# History and locations
# ---------------------------------------------------------------------------


class TestFormatHistory:
    def test_empty(self):
        assert format_history([]) == "No sync history."

    def test_rows(self):
        text = format_history(
            [
                _entry(),
                _entry(
                    sync_id=6,
                    status=SyncStatus.FAILED,
                    records_added=0,
                    records_updated=0,
                    error_message="Cannot connect\nmore detail",
                ),
            ]
        )
        lines = text.splitlines()

        assert len(lines) == 5
        assert "2024-02-01 09:00:00" in lines[2]
        assert "Branch A" in lines[2]
        assert lines[4].strip() == "Cannot connect"


class TestFormatStatistics:
    def test_figures(self):
        stats = SyncStatistics(
            total_runs=4,
            successful_runs=3,
            failed_runs=1,
            records_added=10,
            last_success_at=datetime(2024, 2, 1, 9, 0, 3),
        )
        text = format_statistics(stats)

        assert "Runs: 4 (3 ok, 0 partial, 1 failed, 75% success)" in text
        assert "Records: 10 added, 0 updated, 0 skipped" in text
        assert text.endswith("Last successful sync: 2024-02-01 09:00:03")

    def test_never_synced(self):
        assert format_statistics(SyncStatistics()).endswith("never")


class TestFormatLocations:
    def test_empty(self):
        assert format_locations([]) == "No locations registered."

    def test_lines(self):
        active = RemoteLocation(
            location_id=1,
            location_name="Branch A",
            host="10.0.0.5",
            database_name="zkteco_db",
            username="sync",
            password=SecretStr("x"),
            last_sync_time=datetime(2024, 2, 1, 9, 0),
            last_sync_status="Success",
        )
        inactive = active.model_copy(
            update={"location_id": 2, "location_name": "Old", "is_active": False, "last_sync_time": None}
        )

        lines = format_locations([active, inactive]).splitlines()

        assert lines[0] == "   1  Branch A  sync@10.0.0.5:5432/zkteco_db  [2024-02-01 09:00 Success]"
        assert lines[1] == "   2  Old (inactive)  sync@10.0.0.5:5432/zkteco_db  [never synced]"

"""Tests for branch_sync.sync.history -- append-only sync history."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from branch_sync.sync.history import SyncHistoryRecorder
from branch_sync.sync.models import SyncContext, SyncResult, SyncStatus, SyncType, TableId

T0 = datetime(2024, 2, 1, 9, 0, 0)


def _make_result(added=0, updated=0, skipped=0, errors=(), success=True, warnings=()):
    return SyncResult(
        success=success,
        records_added=added,
        records_updated=updated,
        records_skipped=skipped,
        errors=list(errors),
        warnings=list(warnings),
    )


@pytest.fixture
def history(local_engine):
    return SyncHistoryRecorder(local_engine)


@pytest.fixture
def record(history, context):
    """Factory fixture writing one history entry starting at *started_at*."""

    def _record(result, started_at=T0, ctx=None):
        return history.record(
            ctx or context,
            SyncType.INCREMENTAL,
            result,
            started_at,
            started_at + timedelta(seconds=2),
            tables=[TableId.USERS, TableId.SHIFTS],
        )

    return _record


class TestRecord:
    def test_entry_is_persisted(self, history, record):
        written = record(_make_result(added=1, updated=2))

        (entry,) = history.recent()
        assert entry.sync_id == written.sync_id
        assert entry.location_name == "Branch A"
        assert entry.operator == "admin"
        assert entry.status == SyncStatus.SUCCESS
        assert (entry.records_added, entry.records_updated) == (1, 2)
        assert entry.tables_synced == ["users", "shifts"]
        assert entry.duration_seconds == 2.0
        assert entry.error_message is None

    def test_partial_keeps_errors_and_warnings(self, history, record):
        record(_make_result(added=1, skipped=1, errors=["users/9: boom"], warnings=["shifts: gone"]))

        (entry,) = history.recent()
        assert entry.status == SyncStatus.PARTIAL
        assert entry.error_message == "users/9: boom\nshifts: gone"

    def test_error_message_is_capped(self, history, record):
        errors = [f"users/{i}: bad" for i in range(25)]
        record(_make_result(skipped=25, errors=errors))

        lines = history.recent()[0].error_message.splitlines()
        assert len(lines) == 21
        assert lines[-1] == "... and 5 more"

    def test_failure_before_apply(self, history, context):
        history.record_failure(context, SyncType.FULL, "Cannot connect to 'Branch A': refused", T0)

        (entry,) = history.recent()
        assert entry.status == SyncStatus.FAILED
        assert entry.sync_type == SyncType.FULL
        assert entry.records_added == entry.records_updated == entry.records_skipped == 0
        assert entry.error_message.startswith("Cannot connect")

    def test_entries_survive_location_deletion(self, history, record, registry, context):
        record(_make_result(added=1))
        registry.delete(context.location_id)

        (entry,) = history.recent()
        assert entry.location_name == "Branch A"


class TestRecent:
    def test_newest_first_with_limit(self, history, record):
        for day in range(3):
            record(_make_result(added=day), started_at=T0 + timedelta(days=day))

        entries = history.recent(limit=2)

        assert [e.records_added for e in entries] == [2, 1]

    def test_filter_by_location(self, history, record, registry, make_location):
        other = registry.add(make_location(location_name="Branch B"))
        record(_make_result(added=1))
        record(_make_result(added=5), ctx=SyncContext(location=other))

        entries = history.recent(location_id=other.location_id)

        assert [e.location_name for e in entries] == ["Branch B"]
        assert entries[0].operator == "system"


class TestStatistics:
    def test_empty(self, history):
        stats = history.statistics()
        assert stats.total_runs == 0
        assert stats.success_rate == 0.0
        assert stats.last_success_at is None

    def test_aggregates(self, history, record, context):
        record(_make_result(added=2, updated=1), started_at=T0)
        record(_make_result(added=1, skipped=1, errors=["x"]), started_at=T0 + timedelta(days=1))
        history.record_failure(context, SyncType.INCREMENTAL, "down", T0 + timedelta(days=2))

        stats = history.statistics()

        assert (stats.total_runs, stats.successful_runs, stats.partial_runs, stats.failed_runs) == (
            3,
            1,
            1,
            1,
        )
        assert (stats.records_added, stats.records_updated, stats.records_skipped) == (3, 1, 1)
        assert stats.last_success_at == T0 + timedelta(seconds=2)

    def test_since(self, history, record):
        record(_make_result(added=2), started_at=T0)
        record(_make_result(added=7), started_at=T0 + timedelta(days=10))

        stats = history.statistics(since=T0 + timedelta(days=5))

        assert stats.total_runs == 1
        assert stats.records_added == 7

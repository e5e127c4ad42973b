"""Tests for branch_sync.sync.queue -- review queue and approved batches."""

from __future__ import annotations

import pytest

from branch_sync.errors import AlreadyAppliedError, ValidationError
from branch_sync.sync.models import ChangeType, PendingChange, TableId
from branch_sync.sync.queue import ReconciliationQueue


def _make_change(table: TableId, key: str, change_type: ChangeType = ChangeType.NEW) -> PendingChange:
    return PendingChange(
        change_id=f"{table.value}:{key}",
        table=table,
        record_key=key,
        change_type=change_type,
        remote_snapshot={"key": key},
        record_description=f"row {key}",
    )


@pytest.fixture
def queue():
    return ReconciliationQueue(
        [
            _make_change(TableId.DEPARTMENTS, "1", ChangeType.UPDATED),
            _make_change(TableId.USERS, "1001", ChangeType.UPDATED),
            _make_change(TableId.USERS, "2002"),
            _make_change(TableId.ATTENDANCE_LOGS, "2002_20240110080000_1"),
        ]
    )


class TestQueueBasics:
    def test_everything_starts_unapproved(self, queue):
        assert queue.approved == []

    def test_preserves_order(self, queue):
        assert [c.change_id for c in queue] == [
            "departments:1",
            "users:1001",
            "users:2002",
            "attendance_logs:2002_20240110080000_1",
        ]

    def test_contains_and_get(self, queue):
        assert "users:2002" in queue
        assert queue.get("users:2002").record_key == "2002"

    def test_unknown_id(self, queue):
        with pytest.raises(ValidationError, match="Unknown change id"):
            queue.get("users:9999")

    def test_duplicate_ids_rejected(self):
        change = _make_change(TableId.USERS, "1")
        with pytest.raises(ValidationError, match="Duplicate"):
            ReconciliationQueue([change, change.model_copy()])

    def test_counts(self, queue):
        assert queue.counts() == {
            ChangeType.NEW: 2,
            ChangeType.UPDATED: 2,
            ChangeType.CONFLICT: 0,
        }


class TestApproval:
    def test_toggle(self, queue):
        assert queue.toggle("users:2002") is True
        assert queue.toggle("users:2002") is False

    def test_select_and_deselect_all(self, queue):
        queue.select_all()
        assert len(queue.approved) == 4
        queue.deselect_all()
        assert queue.approved == []

    def test_approve_by_type(self, queue):
        assert queue.approve_where(change_type=ChangeType.NEW) == 2
        assert {c.change_id for c in queue.approved} == {
            "users:2002",
            "attendance_logs:2002_20240110080000_1",
        }

    def test_approve_by_table_and_type(self, queue):
        assert queue.approve_where(table=TableId.USERS, change_type=ChangeType.UPDATED) == 1
        assert [c.change_id for c in queue.approved] == ["users:1001"]


class TestTakeApproved:
    def test_default_takes_approved_in_order(self, queue):
        queue.set_approved("users:2002", True)
        queue.set_approved("departments:1", True)

        batch = queue.take_approved()

        assert [c.change_id for c in batch.changes] == ["departments:1", "users:2002"]
        assert batch.held_back_tables == frozenset({TableId.USERS, TableId.ATTENDANCE_LOGS})
        assert queue.consumed

    def test_explicit_subset(self, queue):
        queue.select_all()
        batch = queue.take_approved([queue.get("users:1001")])
        assert [c.change_id for c in batch.changes] == ["users:1001"]
        assert TableId.DEPARTMENTS in batch.held_back_tables

    def test_unapproved_subset_rejected_and_queue_stays_open(self, queue):
        with pytest.raises(ValidationError, match="has not been approved"):
            queue.take_approved([queue.get("users:1001")])
        assert not queue.consumed
        queue.set_approved("users:1001", True)
        assert len(queue.take_approved()) == 1

    def test_foreign_change_rejected(self, queue):
        stranger = _make_change(TableId.SHIFTS, "9")
        stranger.is_approved = True
        with pytest.raises(ValidationError):
            queue.take_approved([stranger])

    def test_empty_approval_gives_empty_batch(self, queue):
        batch = queue.take_approved()
        assert len(batch) == 0
        assert not batch.consumed

    def test_queue_is_consumed_once(self, queue):
        queue.take_approved()
        with pytest.raises(AlreadyAppliedError):
            queue.take_approved()
        with pytest.raises(AlreadyAppliedError):
            queue.toggle("users:2002")

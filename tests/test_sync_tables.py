"""Tests for branch_sync.sync.tables -- descriptors, keys and writers."""

from __future__ import annotations

from datetime import date, datetime, time

import pytest
from sqlalchemy import select

from branch_sync import schema
from branch_sync.errors import ApplyError
from branch_sync.sync.models import ChangeType, PendingChange, TableId
from branch_sync.sync.tables import (
    TABLES,
    format_key_part,
    get_descriptor,
    normalize_badge,
    sync_order,
    values_equal,
)

T0 = datetime(2024, 1, 10, 8, 0, 0)


def _make_change(table: TableId, remote: dict, change_type=ChangeType.NEW) -> PendingChange:
    descriptor = TABLES[table]
    key = descriptor.record_key(remote)
    return PendingChange(
        change_id=f"{table.value}:{key}",
        table=table,
        record_key=key,
        change_type=change_type,
        remote_snapshot=remote,
        record_description=descriptor.describe(remote),
    )


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


class TestValuesEqual:
    def test_null_and_empty_string_are_equal(self):
        assert values_equal(None, "")
        assert values_equal("", None)

    def test_different_strings(self):
        assert not values_equal("Ali", "Ali Hassan")

    def test_zero_is_not_null(self):
        assert not values_equal(0, None)

    def test_equal_datetimes(self):
        assert values_equal(T0, datetime(2024, 1, 10, 8, 0, 0))


class TestFormatKeyPart:
    def test_datetime(self):
        assert format_key_part(T0) == "20240110080000"

    def test_date(self):
        assert format_key_part(date(2024, 1, 10)) == "20240110"

    def test_time(self):
        assert format_key_part(time(7, 30)) == "073000"

    def test_none_is_empty(self):
        assert format_key_part(None) == ""

    def test_plain_value(self):
        assert format_key_part(42) == "42"


class TestNormalizeBadge:
    @pytest.mark.parametrize(
        "badge,expected",
        [("007", "7"), ("1001", "1001"), ("0", "0"), ("000", "0"), ("", ""), (None, "")],
    )
    def test_strips_leading_zeros(self, badge, expected):
        assert normalize_badge(badge) == expected


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_sync_order_follows_table_ids(self):
        assert [d.table_id for d in sync_order()] == list(TableId)

    def test_parents_before_children(self):
        order = [d.table_id for d in sync_order()]
        assert order.index(TableId.DEPARTMENTS) < order.index(TableId.USERS)
        assert order.index(TableId.USERS) < order.index(TableId.EMPLOYEE_EXCEPTIONS)
        assert order.index(TableId.EXCEPTION_TYPES) < order.index(TableId.EMPLOYEE_EXCEPTIONS)

    def test_get_descriptor_by_name(self):
        assert get_descriptor("users") is TABLES[TableId.USERS]

    def test_get_descriptor_unknown(self):
        with pytest.raises(ValueError):
            get_descriptor("payroll")


class TestDescriptor:
    def test_attendance_record_key(self):
        descriptor = TABLES[TableId.ATTENDANCE_LOGS]
        row = {"user_badge_number": "1001", "log_time": T0, "machine_id": 3}
        assert descriptor.record_key(row) == "1001_20240110080000_3"

    def test_exception_record_key(self):
        descriptor = TABLES[TableId.EMPLOYEE_EXCEPTIONS]
        row = {"badge_number": "1001", "exception_date": date(2024, 1, 10)}
        assert descriptor.record_key(row) == "1001_20240110"

    def test_diff_reports_changed_columns(self):
        descriptor = TABLES[TableId.USERS]
        local = {"badge_number": "1001", "name": "Ali", "default_dept_id": 1}
        remote = {"badge_number": "1001", "name": "Ali Hassan", "default_dept_id": 1}
        assert descriptor.diff(local, remote) == ["name"]

    def test_diff_ignores_timestamps(self):
        descriptor = TABLES[TableId.USERS]
        local = {"badge_number": "1001", "name": "Ali", "updated_at": T0}
        remote = {"badge_number": "1001", "name": "Ali", "updated_at": datetime(2024, 2, 1)}
        assert descriptor.diff(local, remote) == []

    def test_sort_key_puts_nulls_last(self):
        descriptor = TABLES[TableId.ATTENDANCE_LOGS]
        rows = [
            {"user_badge_number": "5", "log_time": T0, "machine_id": None},
            {"user_badge_number": "5", "log_time": T0, "machine_id": 2},
        ]
        ordered = sorted(rows, key=descriptor.sort_key)
        assert [r["machine_id"] for r in ordered] == [2, None]

    def test_attendance_normalizes_badge(self):
        descriptor = TABLES[TableId.ATTENDANCE_LOGS]
        row = descriptor.normalize({"user_badge_number": "0042", "log_time": T0})
        assert row["user_badge_number"] == "42"

    def test_describe_shift(self):
        descriptor = TABLES[TableId.SHIFTS]
        row = {"shift_name": "Morning", "start_time": time(8, 0), "end_time": time(16, 0)}
        assert descriptor.describe(row) == "Morning (08:00-16:00)"


# ---------------------------------------------------------------------------
# Readers and writers
# ---------------------------------------------------------------------------


class TestFetchers:
    def test_fetch_remote_since_watermark(self, local_engine, seed):
        seed(
            local_engine,
            schema.users,
            {"badge_number": "1", "name": "Old", "updated_at": datetime(2024, 1, 1)},
            {"badge_number": "2", "name": "New", "updated_at": datetime(2024, 3, 1)},
        )
        descriptor = TABLES[TableId.USERS]
        with local_engine.connect() as conn:
            rows = descriptor.fetch_remote(conn, datetime(2024, 2, 1))
            everything = descriptor.fetch_remote(conn, None)
        assert [r["badge_number"] for r in rows] == ["2"]
        assert len(everything) == 2

    def test_fetch_local_matches_keys(self, local_engine, seed):
        seed(
            local_engine,
            schema.users,
            {"badge_number": "1", "name": "A"},
            {"badge_number": "2", "name": "B"},
        )
        descriptor = TABLES[TableId.USERS]
        with local_engine.connect() as conn:
            rows = descriptor.fetch_local(conn, [{"badge_number": "2"}, {"badge_number": "9"}])
        assert [r["badge_number"] for r in rows] == ["2"]

    def test_fetch_exceptions_joins_badge(self, local_engine, seed):
        seed(local_engine, schema.users, {"user_id": 7, "badge_number": "1001", "name": "Ali"})
        seed(local_engine, schema.exception_types, {"exception_type_id": 1, "exception_name": "Sick"})
        seed(
            local_engine,
            schema.employee_exceptions,
            {"user_id_fk": 7, "exception_type_id_fk": 1, "exception_date": date(2024, 1, 10)},
        )
        descriptor = TABLES[TableId.EMPLOYEE_EXCEPTIONS]
        with local_engine.connect() as conn:
            (row,) = descriptor.fetch_remote(conn, None)
        assert row["badge_number"] == "1001"
        assert row["exception_type_id"] == 1
        assert descriptor.describe(row) == "Ali (1001) on 2024-01-10: Sick"


class TestWriters:
    def test_insert_new_user(self, local_engine):
        change = _make_change(
            TableId.USERS,
            {"badge_number": "2002", "name": "Sara", "default_dept_id": None, "updated_at": T0},
        )
        with local_engine.begin() as conn:
            TABLES[TableId.USERS].apply(conn, change)
        with local_engine.connect() as conn:
            row = conn.execute(select(schema.users)).mappings().one()
        assert row["name"] == "Sara"
        assert row["updated_at"] == T0

    def test_update_copies_remote_timestamp(self, local_engine, seed):
        seed(local_engine, schema.users, {"badge_number": "1001", "name": "Ali", "updated_at": T0})
        later = datetime(2024, 2, 1)
        change = _make_change(
            TableId.USERS,
            {"badge_number": "1001", "name": "Ali Hassan", "default_dept_id": None, "updated_at": later},
            ChangeType.UPDATED,
        )
        with local_engine.begin() as conn:
            TABLES[TableId.USERS].apply(conn, change)
        with local_engine.connect() as conn:
            row = conn.execute(select(schema.users)).mappings().one()
        assert row["name"] == "Ali Hassan"
        assert row["updated_at"] == later

    def test_update_of_missing_row_raises(self, local_engine):
        change = _make_change(
            TableId.USERS,
            {"badge_number": "404", "name": "Ghost", "updated_at": T0},
            ChangeType.UPDATED,
        )
        with local_engine.begin() as conn:
            with pytest.raises(ApplyError, match="no longer exists"):
                TABLES[TableId.USERS].apply(conn, change)

    def test_exception_requires_local_user(self, local_engine):
        change = _make_change(
            TableId.EMPLOYEE_EXCEPTIONS,
            {"badge_number": "9", "exception_date": date(2024, 1, 10), "employee_name": "X"},
        )
        with local_engine.begin() as conn:
            with pytest.raises(ApplyError, match="User with badge 9 not found"):
                TABLES[TableId.EMPLOYEE_EXCEPTIONS].apply(conn, change)

    def test_exception_resolves_local_user_id(self, local_engine, seed):
        seed(local_engine, schema.users, {"user_id": 55, "badge_number": "1001", "name": "Ali"})
        change = _make_change(
            TableId.EMPLOYEE_EXCEPTIONS,
            {
                "badge_number": "1001",
                "exception_date": date(2024, 1, 10),
                "exception_type_id": None,
                "notes": "doctor",
                "employee_name": "Ali",
            },
        )
        with local_engine.begin() as conn:
            TABLES[TableId.EMPLOYEE_EXCEPTIONS].apply(conn, change)
        with local_engine.connect() as conn:
            row = conn.execute(select(schema.employee_exceptions)).mappings().one()
        assert row["user_id_fk"] == 55
        assert row["notes"] == "doctor"

"""Per-table descriptors: how each synchronised table is read, compared
and written.

Each ``TableDescriptor`` bundles the operations the detector and applier
need for one table:

- ``fetch_remote(conn, since)`` -- rows changed after *since* (all rows
  when *since* is ``None``).
- ``fetch_local(conn, remote_rows)`` -- local rows that may match.
- ``diff(local, remote)`` -- names of compared columns that differ.
- ``apply(conn, change)`` -- write one approved change locally.

Rows are plain dicts keyed by column name.  Natural keys identify a row
across databases whose surrogate ids differ: badge numbers for users,
badge/time/device for attendance punches, badge/date for exceptions, and
the shared id for master data.

Usage:
    from branch_sync.sync.tables import TABLES, sync_order

    for descriptor in sync_order():
        rows = descriptor.fetch_remote(conn, None)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Callable, Sequence

from sqlalchemy import Table, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.sql import Select

from branch_sync import schema
from branch_sync.errors import ApplyError
from branch_sync.sync.models import ChangeType, PendingChange, TableId

logger = logging.getLogger(__name__)

Row = dict[str, Any]

# Bound parameters per IN (...) clause.
_IN_CHUNK = 500

# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def values_equal(a: Any, b: Any) -> bool:
    """Compare two column values, treating NULL and empty string as equal."""
    if (a is None or a == "") and (b is None or b == ""):
        return True
    return a == b


def format_key_part(value: Any) -> str:
    """Render one natural-key component for ``record_key``."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y%m%d%H%M%S")
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    if isinstance(value, time):
        return value.strftime("%H%M%S")
    return str(value)


def normalize_badge(badge: Any) -> str:
    """Strip leading zeros from a device badge number (``"007"`` -> ``"7"``)."""
    text = str(badge or "").strip()
    return text.lstrip("0") or text[-1:] or ""


def _sort_token(value: Any) -> tuple[bool, Any]:
    # NULLs sort last and never get compared with real values.
    return (value is None, value if value is not None else 0)


def _identity(row: Row) -> Row:
    return row


def _hhmm(value: time | None) -> str:
    return value.strftime("%H:%M") if value is not None else "--:--"


# ---------------------------------------------------------------------------
# Descriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TableDescriptor:
    """Everything the engine needs to reconcile one table.

    Attributes:
        table_id: Table identifier.
        label: Human readable table name for reports.
        key_columns: Natural key columns, in sort order.
        compare_columns: Columns whose divergence is reported.
        changed_at_column: Last-change timestamp used for watermarks and
            conflict detection, ``None`` if the table has none.
        fetch_remote: Reads remote rows, optionally since a watermark.
        fetch_local: Reads local rows matching a batch of remote rows.
        apply: Writes one approved change to the local store.
        describe: Renders a row for review screens.
        normalize: Canonicalises a fetched row before keying.
    """

    table_id: TableId
    label: str
    key_columns: tuple[str, ...]
    compare_columns: tuple[str, ...]
    changed_at_column: str | None
    fetch_remote: Callable[[Connection, datetime | None], list[Row]]
    fetch_local: Callable[[Connection, Sequence[Row]], list[Row]]
    apply: Callable[[Connection, PendingChange], None]
    describe: Callable[[Row], str]
    normalize: Callable[[Row], Row] = _identity

    def key_of(self, row: Row) -> tuple:
        return tuple(row.get(c) for c in self.key_columns)

    def sort_key(self, row: Row) -> tuple:
        return tuple(_sort_token(v) for v in self.key_of(row))

    def record_key(self, row: Row) -> str:
        return "_".join(format_key_part(v) for v in self.key_of(row))

    def changed_at(self, row: Row | None) -> datetime | None:
        if row is None or self.changed_at_column is None:
            return None
        return row.get(self.changed_at_column)

    def diff(self, local: Row, remote: Row) -> list[str]:
        """Return the compared columns whose values differ."""
        return [
            column
            for column in self.compare_columns
            if not values_equal(local.get(column), remote.get(column))
        ]


# ---------------------------------------------------------------------------
# Generic readers and writers
# ---------------------------------------------------------------------------


def _rows(conn: Connection, stmt: Select) -> list[Row]:
    return [dict(row._mapping) for row in conn.execute(stmt)]


def _rows_in(
    conn: Connection, stmt: Select, column: Any, values: Sequence[Any]
) -> list[Row]:
    """Run *stmt* filtered by ``column IN values``, chunking the values."""
    unique = sorted({v for v in values if v is not None}, key=str)
    rows: list[Row] = []
    for start in range(0, len(unique), _IN_CHUNK):
        chunk = unique[start : start + _IN_CHUNK]
        rows.extend(_rows(conn, stmt.where(column.in_(chunk))))
    return rows


def _keyed_fetchers(
    table: Table,
    key_column: str,
    columns: Sequence[str],
    changed_at: str | None,
) -> tuple[
    Callable[[Connection, datetime | None], list[Row]],
    Callable[[Connection, Sequence[Row]], list[Row]],
]:
    """Build readers for a table matched on a single shared key column."""
    selected = [table.c[name] for name in columns]

    def fetch_remote(conn: Connection, since: datetime | None) -> list[Row]:
        stmt = select(*selected)
        if since is not None and changed_at is not None:
            stmt = stmt.where(table.c[changed_at] > since)
        return _rows(conn, stmt.order_by(table.c[key_column]))

    def fetch_local(conn: Connection, remote_rows: Sequence[Row]) -> list[Row]:
        keys = [row[key_column] for row in remote_rows]
        if not keys:
            return []
        return _rows_in(conn, select(*selected), table.c[key_column], keys)

    return fetch_remote, fetch_local


def _keyed_writer(
    table: Table,
    key_columns: Sequence[str],
    write_columns: Sequence[str],
) -> Callable[[Connection, PendingChange], None]:
    """Build an insert-or-update writer matched on *key_columns*.

    The remote change timestamp is copied verbatim so both sides compare
    equal on the next pass.
    """

    def apply(conn: Connection, change: PendingChange) -> None:
        remote = change.remote_snapshot
        if change.change_type == ChangeType.NEW:
            values = {c: remote.get(c) for c in (*key_columns, *write_columns)}
            conn.execute(insert(table).values(**values))
            return

        stmt = update(table).values(**{c: remote.get(c) for c in write_columns})
        for column in key_columns:
            stmt = stmt.where(table.c[column] == remote.get(column))
        if conn.execute(stmt).rowcount == 0:
            raise ApplyError("record no longer exists locally")

    return apply


# ---------------------------------------------------------------------------
# Departments, shifts, machines, exception types
# ---------------------------------------------------------------------------

_DEPT_COLUMNS = ("dept_id", "dept_name", "updated_at")
_fetch_remote_departments, _fetch_local_departments = _keyed_fetchers(
    schema.departments, "dept_id", _DEPT_COLUMNS, "updated_at"
)

_SHIFT_COLUMNS = ("shift_id", "shift_name", "start_time", "end_time", "updated_at")
_fetch_remote_shifts, _fetch_local_shifts = _keyed_fetchers(
    schema.shifts, "shift_id", _SHIFT_COLUMNS, "updated_at"
)

_MACHINE_COLUMNS = (
    "id",
    "machine_alias",
    "ip_address",
    "port",
    "serial_number",
    "location",
    "updated_at",
)
_fetch_remote_machines, _fetch_local_machines = _keyed_fetchers(
    schema.machines, "id", _MACHINE_COLUMNS, "updated_at"
)

_EXCEPTION_TYPE_COLUMNS = (
    "exception_type_id",
    "exception_name",
    "description",
    "is_active",
    "created_at",
)
_fetch_remote_exception_types, _fetch_local_exception_types = _keyed_fetchers(
    schema.exception_types,
    "exception_type_id",
    _EXCEPTION_TYPE_COLUMNS,
    None,
)


def _describe_shift(row: Row) -> str:
    return (
        f"{row.get('shift_name')} "
        f"({_hhmm(row.get('start_time'))}-{_hhmm(row.get('end_time'))})"
    )


def _describe_machine(row: Row) -> str:
    ip = row.get("ip_address")
    return f"{row.get('machine_alias')} ({ip})" if ip else str(row.get("machine_alias"))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

_USER_COLUMNS = ("badge_number", "name", "default_dept_id", "updated_at")
_fetch_remote_users, _fetch_local_users = _keyed_fetchers(
    schema.users, "badge_number", _USER_COLUMNS, "updated_at"
)


def _describe_user(row: Row) -> str:
    return f"{row.get('name')} ({row.get('badge_number')})"


# ---------------------------------------------------------------------------
# Attendance logs
# ---------------------------------------------------------------------------

_ATTENDANCE_SELECT = (
    schema.attendance_logs.c.user_badge_number,
    schema.attendance_logs.c.log_time,
    schema.attendance_logs.c.machine_id,
    schema.attendance_logs.c.verify_type,
    schema.attendance_logs.c.created_at,
)


def _fetch_remote_attendance(conn: Connection, since: datetime | None) -> list[Row]:
    t = schema.attendance_logs
    stmt = select(*_ATTENDANCE_SELECT)
    if since is not None:
        stmt = stmt.where(t.c.created_at > since)
    return _rows(conn, stmt.order_by(t.c.log_time))


def _fetch_local_attendance(conn: Connection, remote_rows: Sequence[Row]) -> list[Row]:
    # Punches are matched inside the time window covered by the remote batch.
    if not remote_rows:
        return []
    t = schema.attendance_logs
    times = [row["log_time"] for row in remote_rows]
    stmt = select(*_ATTENDANCE_SELECT).where(
        t.c.log_time >= min(times), t.c.log_time <= max(times)
    )
    return _rows(conn, stmt)


def _normalize_attendance(row: Row) -> Row:
    return {**row, "user_badge_number": normalize_badge(row.get("user_badge_number"))}


def _describe_attendance(row: Row) -> str:
    log_time = row.get("log_time")
    stamp = log_time.strftime("%Y-%m-%d %H:%M:%S") if log_time else "?"
    return f"Badge {row.get('user_badge_number')} at {stamp} (device {row.get('machine_id')})"


# ---------------------------------------------------------------------------
# Employee exceptions
# ---------------------------------------------------------------------------


def _exceptions_select() -> Select:
    ee = schema.employee_exceptions
    u = schema.users
    et = schema.exception_types
    return select(
        u.c.badge_number,
        ee.c.exception_date,
        ee.c.exception_type_id_fk.label("exception_type_id"),
        ee.c.notes,
        ee.c.clock_in_override,
        ee.c.clock_out_override,
        ee.c.updated_at,
        u.c.name.label("employee_name"),
        et.c.exception_name,
    ).select_from(
        ee.join(u, ee.c.user_id_fk == u.c.user_id).outerjoin(
            et, ee.c.exception_type_id_fk == et.c.exception_type_id
        )
    )


def _fetch_remote_exceptions(conn: Connection, since: datetime | None) -> list[Row]:
    ee = schema.employee_exceptions
    stmt = _exceptions_select()
    if since is not None:
        stmt = stmt.where(ee.c.updated_at > since)
    return _rows(conn, stmt.order_by(ee.c.exception_date))


def _fetch_local_exceptions(conn: Connection, remote_rows: Sequence[Row]) -> list[Row]:
    if not remote_rows:
        return []
    ee = schema.employee_exceptions
    dates = [row["exception_date"] for row in remote_rows]
    stmt = _exceptions_select().where(
        ee.c.exception_date >= min(dates), ee.c.exception_date <= max(dates)
    )
    return _rows(conn, stmt)


def _apply_exception(conn: Connection, change: PendingChange) -> None:
    remote = change.remote_snapshot
    u = schema.users
    ee = schema.employee_exceptions

    badge = remote.get("badge_number")
    user_id = conn.execute(
        select(u.c.user_id).where(u.c.badge_number == badge)
    ).scalar()
    if user_id is None:
        raise ApplyError(f"User with badge {badge} not found")

    values = {
        "exception_type_id_fk": remote.get("exception_type_id"),
        "notes": remote.get("notes"),
        "clock_in_override": remote.get("clock_in_override"),
        "clock_out_override": remote.get("clock_out_override"),
        "updated_at": remote.get("updated_at"),
    }
    if change.change_type == ChangeType.NEW:
        conn.execute(
            insert(ee).values(
                user_id_fk=user_id,
                exception_date=remote.get("exception_date"),
                **values,
            )
        )
        return

    result = conn.execute(
        update(ee)
        .where(
            ee.c.user_id_fk == user_id,
            ee.c.exception_date == remote.get("exception_date"),
        )
        .values(**values)
    )
    if result.rowcount == 0:
        raise ApplyError("record no longer exists locally")


def _describe_exception(row: Row) -> str:
    when = row.get("exception_date")
    day = when.strftime("%Y-%m-%d") if when else "?"
    kind = row.get("exception_name") or "exception"
    return f"{row.get('employee_name')} ({row.get('badge_number')}) on {day}: {kind}"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_DESCRIPTORS = (
    TableDescriptor(
        table_id=TableId.DEPARTMENTS,
        label="Departments",
        key_columns=("dept_id",),
        compare_columns=("dept_name",),
        changed_at_column="updated_at",
        fetch_remote=_fetch_remote_departments,
        fetch_local=_fetch_local_departments,
        apply=_keyed_writer(
            schema.departments, ("dept_id",), ("dept_name", "updated_at")
        ),
        describe=lambda row: str(row.get("dept_name")),
    ),
    TableDescriptor(
        table_id=TableId.SHIFTS,
        label="Shifts",
        key_columns=("shift_id",),
        compare_columns=("shift_name", "start_time", "end_time"),
        changed_at_column="updated_at",
        fetch_remote=_fetch_remote_shifts,
        fetch_local=_fetch_local_shifts,
        apply=_keyed_writer(schema.shifts, ("shift_id",), _SHIFT_COLUMNS[1:]),
        describe=_describe_shift,
    ),
    TableDescriptor(
        table_id=TableId.MACHINES,
        label="Devices",
        key_columns=("id",),
        compare_columns=(
            "machine_alias",
            "ip_address",
            "port",
            "serial_number",
            "location",
        ),
        changed_at_column="updated_at",
        fetch_remote=_fetch_remote_machines,
        fetch_local=_fetch_local_machines,
        apply=_keyed_writer(schema.machines, ("id",), _MACHINE_COLUMNS[1:]),
        describe=_describe_machine,
    ),
    TableDescriptor(
        table_id=TableId.USERS,
        label="Employees",
        key_columns=("badge_number",),
        compare_columns=("name", "default_dept_id"),
        changed_at_column="updated_at",
        fetch_remote=_fetch_remote_users,
        fetch_local=_fetch_local_users,
        apply=_keyed_writer(schema.users, ("badge_number",), _USER_COLUMNS[1:]),
        describe=_describe_user,
    ),
    TableDescriptor(
        table_id=TableId.ATTENDANCE_LOGS,
        label="Attendance",
        key_columns=("user_badge_number", "log_time", "machine_id"),
        compare_columns=(),
        changed_at_column="created_at",
        fetch_remote=_fetch_remote_attendance,
        fetch_local=_fetch_local_attendance,
        apply=_keyed_writer(
            schema.attendance_logs,
            ("user_badge_number", "log_time", "machine_id"),
            ("verify_type", "created_at"),
        ),
        describe=_describe_attendance,
        normalize=_normalize_attendance,
    ),
    TableDescriptor(
        table_id=TableId.EXCEPTION_TYPES,
        label="Exception types",
        key_columns=("exception_type_id",),
        compare_columns=("exception_name", "description", "is_active"),
        # No update timestamp: read in full on every run.
        changed_at_column=None,
        fetch_remote=_fetch_remote_exception_types,
        fetch_local=_fetch_local_exception_types,
        apply=_keyed_writer(
            schema.exception_types,
            ("exception_type_id",),
            _EXCEPTION_TYPE_COLUMNS[1:],
        ),
        describe=lambda row: str(row.get("exception_name")),
    ),
    TableDescriptor(
        table_id=TableId.EMPLOYEE_EXCEPTIONS,
        label="Employee exceptions",
        key_columns=("badge_number", "exception_date"),
        compare_columns=(
            "exception_type_id",
            "notes",
            "clock_in_override",
            "clock_out_override",
        ),
        changed_at_column="updated_at",
        fetch_remote=_fetch_remote_exceptions,
        fetch_local=_fetch_local_exceptions,
        apply=_apply_exception,
        describe=_describe_exception,
    ),
)

TABLES: dict[TableId, TableDescriptor] = {d.table_id: d for d in _DESCRIPTORS}


def get_descriptor(table_id: TableId | str) -> TableDescriptor:
    """Look up the descriptor for *table_id*.

    Raises:
        ValueError: If the table is not synchronised.
    """
    return TABLES[TableId(table_id)]


def sync_order() -> list[TableDescriptor]:
    """Descriptors in priority order (parents before children)."""
    return [TABLES[table_id] for table_id in TableId]

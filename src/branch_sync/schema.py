"""SQLAlchemy Core table definitions.

The same metadata describes the local database and every remote location:
the business tables that are reconciled, plus the local bookkeeping tables
(``remote_locations``, ``sync_history``, ``sync_table_tracking``,
``sync_applied_rows``).

Usage:
    from branch_sync.schema import metadata, ensure_schema

    ensure_schema(engine)
"""

from __future__ import annotations

import logging

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    Time,
    UniqueConstraint,
    func,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

# ---------------------------------------------------------------------------
# Business tables (present locally and at every location)
# ---------------------------------------------------------------------------

departments = Table(
    "departments",
    metadata,
    Column("dept_id", Integer, primary_key=True),
    Column("dept_name", String(255), nullable=False),
    Column(
        "parent_dept_id",
        Integer,
        ForeignKey("departments.dept_id", ondelete="SET NULL"),
    ),
    Column("head_user_id", Integer),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

shifts = Table(
    "shifts",
    metadata,
    Column("shift_id", Integer, primary_key=True),
    Column("shift_name", String(100), nullable=False),
    Column("start_time", Time, nullable=False),
    Column("end_time", Time, nullable=False),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

machines = Table(
    "machines",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("machine_alias", String(255), nullable=False),
    Column("ip_address", String(45)),
    Column("port", Integer, server_default="4370"),
    Column("serial_number", String(255)),
    Column("location", String(255)),
    Column("enabled", Boolean, server_default="1"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

users = Table(
    "users",
    metadata,
    Column("user_id", Integer, primary_key=True),
    Column("badge_number", String(50), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column(
        "default_dept_id",
        Integer,
        ForeignKey("departments.dept_id", ondelete="SET NULL"),
    ),
    Column(
        "shift_id",
        Integer,
        ForeignKey("shifts.shift_id", ondelete="SET NULL"),
    ),
    Column("is_active", Boolean, server_default="1"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

attendance_logs = Table(
    "attendance_logs",
    metadata,
    Column("log_id", Integer, primary_key=True),
    Column("user_badge_number", String(50), nullable=False),
    Column("log_time", DateTime, nullable=False),
    Column(
        "machine_id",
        Integer,
        ForeignKey("machines.id", ondelete="SET NULL"),
    ),
    Column("verify_type", Integer, server_default="0"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    UniqueConstraint(
        "user_badge_number",
        "log_time",
        "machine_id",
        name="unique_attendance_log",
    ),
)

exception_types = Table(
    "exception_types",
    metadata,
    Column("exception_type_id", Integer, primary_key=True),
    Column("exception_name", String(255), nullable=False, unique=True),
    Column("description", Text),
    Column("is_active", Boolean, server_default="1"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
)

employee_exceptions = Table(
    "employee_exceptions",
    metadata,
    Column("exception_id", Integer, primary_key=True),
    Column(
        "user_id_fk",
        Integer,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "exception_type_id_fk",
        Integer,
        ForeignKey("exception_types.exception_type_id", ondelete="SET NULL"),
    ),
    Column("exception_date", Date, nullable=False),
    Column("notes", Text),
    Column("clock_in_override", Time),
    Column("clock_out_override", Time),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

# ---------------------------------------------------------------------------
# Local bookkeeping tables
# ---------------------------------------------------------------------------

remote_locations = Table(
    "remote_locations",
    metadata,
    Column("location_id", Integer, primary_key=True),
    Column("location_name", String(100), nullable=False),
    Column("host", String(255), nullable=False),
    Column("port", Integer, server_default="5432"),
    Column("database_name", String(100), nullable=False),
    Column("username", String(100), nullable=False),
    # Fernet token, never the plain password
    Column("password", String(512), nullable=False),
    Column("is_active", Boolean, server_default="1"),
    Column("last_sync_time", DateTime),
    Column("last_sync_status", String(50)),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
)

# No foreign key to remote_locations: history outlives deleted locations.
sync_history = Table(
    "sync_history",
    metadata,
    Column("sync_id", Integer, primary_key=True),
    Column("location_id", Integer),
    Column("location_name", String(100), nullable=False),
    Column("sync_type", String(20), nullable=False),
    Column("records_added", Integer, nullable=False, server_default="0"),
    Column("records_updated", Integer, nullable=False, server_default="0"),
    Column("records_skipped", Integer, nullable=False, server_default="0"),
    Column("status", String(20), nullable=False),
    Column("error_message", Text),
    Column("operator", String(100)),
    Column("tables_synced", Text),
    Column("started_at", DateTime, nullable=False),
    Column("completed_at", DateTime, nullable=False),
    Column("duration_seconds", Float, nullable=False, server_default="0"),
)

sync_table_tracking = Table(
    "sync_table_tracking",
    metadata,
    Column("tracking_id", Integer, primary_key=True),
    Column(
        "location_id",
        Integer,
        ForeignKey("remote_locations.location_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("table_name", String(100), nullable=False),
    Column("last_sync_time", DateTime),
    Column("last_record_count", BigInteger, server_default="0"),
    Column("is_enabled", Boolean, server_default="1"),
    UniqueConstraint("location_id", "table_name", name="unique_location_table"),
)

# Remote change time last applied per row, so an applied row is not
# mistaken for a local edit while its table watermark is held back.
sync_applied_rows = Table(
    "sync_applied_rows",
    metadata,
    Column("applied_id", Integer, primary_key=True),
    Column(
        "location_id",
        Integer,
        ForeignKey("remote_locations.location_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("table_name", String(100), nullable=False),
    Column("record_key", String(255), nullable=False),
    Column("remote_changed_at", DateTime, nullable=False),
    UniqueConstraint(
        "location_id", "table_name", "record_key", name="unique_applied_row"
    ),
)


def ensure_schema(engine: Engine) -> None:
    """Create any missing tables.

    Existing tables are left untouched; there is no migration support.
    """
    logger.debug("Ensuring schema on %s", engine.url.render_as_string())
    metadata.create_all(engine)

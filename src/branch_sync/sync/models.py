"""Pydantic models for the reconciliation engine.

Defines the data contracts shared by all sync modules:

- ``TableId``: Enum of the synchronised tables, in apply order.
- ``ChangeType``: Classification of one divergence.
- ``SyncType``, ``SyncStatus``, ``RunState``: run metadata enums.
- ``RemoteLocation``: A registered branch database.
- ``SyncContext``: Who is syncing which location.
- ``PendingChange``: One reviewable divergence.
- ``DetectionReport``: Output of a detection pass.
- ``ProbeResult``: Outcome of a connection test.
- ``SyncResult``: Outcome of an apply pass.
- ``SyncHistoryEntry``: One persisted sync attempt.
- ``SyncStatistics``: Aggregates over history entries.

Everything except ``PendingChange`` is frozen.  ``PendingChange`` carries
the mutable ``is_approved`` flag the operator toggles during review.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr


class TableId(str, Enum):
    """Synchronised tables.  Declaration order is the apply order."""

    DEPARTMENTS = "departments"
    SHIFTS = "shifts"
    MACHINES = "machines"
    USERS = "users"
    ATTENDANCE_LOGS = "attendance_logs"
    EXCEPTION_TYPES = "exception_types"
    EMPLOYEE_EXCEPTIONS = "employee_exceptions"


class ChangeType(str, Enum):
    """How a remote row relates to the local store."""

    NEW = "new"
    UPDATED = "updated"
    CONFLICT = "conflict"


class SyncType(str, Enum):
    """Full runs compare everything; incremental runs use watermarks."""

    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RunState(str, Enum):
    """Lifecycle of a sync run."""

    IDLE = "idle"
    PROBING = "probing"
    DETECTING = "detecting"
    AWAITING_APPROVAL = "awaiting_approval"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED)


# ---------------------------------------------------------------------------
# Locations and context
# ---------------------------------------------------------------------------


class RemoteLocation(BaseModel):
    """A registered remote branch database.

    Attributes:
        location_id: Registry id, ``None`` before the location is saved.
        location_name: Display name, unique by convention.
        host: Database host name or address.
        port: Database port.
        database_name: Database name on the remote server.
        username: Database user.
        password: Database password (decrypted; never logged).
        is_active: Inactive locations cannot be synchronised.
        last_sync_time: When the last run finished.
        last_sync_status: Short status text of the last run.
    """

    location_id: int | None = None
    location_name: str = Field(min_length=1, max_length=100)
    host: str = Field(min_length=1, max_length=255)
    port: int = Field(default=5432, ge=1, le=65535)
    database_name: str = Field(min_length=1, max_length=100)
    username: str = Field(min_length=1, max_length=100)
    password: SecretStr
    is_active: bool = True
    last_sync_time: datetime | None = None
    last_sync_status: str | None = None

    model_config = {"frozen": True}


class SyncContext(BaseModel):
    """Explicit run context passed to probe, detection and apply.

    Attributes:
        location: Snapshot of the location being synchronised.
        operator_id: Id of the operator driving the run, if known.
        operator_name: Name recorded in history and the audit log.
    """

    location: RemoteLocation
    operator_id: int | None = None
    operator_name: str = "system"

    model_config = {"frozen": True}

    @property
    def location_id(self) -> int:
        if self.location.location_id is None:
            raise ValueError("Location has not been saved to the registry")
        return self.location.location_id


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class PendingChange(BaseModel):
    """One divergence between a remote row and the local store.

    Attributes:
        change_id: Stable identifier, ``"<table>:<record_key>"``.
        table: Table the row belongs to.
        record_key: Natural key rendered as text.
        change_type: New, Updated or Conflict.
        local_snapshot: Local column values, ``None`` for New rows.
        remote_snapshot: Remote column values to be applied.
        record_description: Human readable summary for review.
        changed_fields: Columns whose values differ.
        is_approved: Operator decision; starts unapproved.
    """

    change_id: str
    table: TableId
    record_key: str
    change_type: ChangeType
    local_snapshot: dict[str, Any] | None = None
    remote_snapshot: dict[str, Any]
    record_description: str
    changed_fields: list[str] = []
    is_approved: bool = False

    model_config = {"validate_assignment": True}


class DetectionReport(BaseModel):
    """Output of one detection pass.

    Attributes:
        changes: Pending changes in table priority then key order.
        warnings: Per-table problems that did not stop detection.
        scanned_tables: Tables that were read successfully.
        failed_tables: Tables whose read failed.
        started_at: Detection start; candidate for the next watermark.
        sync_type: Full or incremental.
    """

    changes: list[PendingChange] = []
    warnings: list[str] = []
    scanned_tables: list[TableId] = []
    failed_tables: list[TableId] = []
    started_at: datetime
    sync_type: SyncType

    model_config = {"frozen": True}

    def count(self, change_type: ChangeType) -> int:
        return sum(1 for c in self.changes if c.change_type == change_type)


class ProbeResult(BaseModel):
    """Outcome of a connection test."""

    location_name: str
    success: bool
    message: str
    elapsed_seconds: float = 0.0

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Apply and history
# ---------------------------------------------------------------------------


class SyncResult(BaseModel):
    """Outcome of applying an approved batch.

    ``records_added + records_updated + records_skipped`` always equals the
    number of approved changes submitted.

    Attributes:
        success: Whether the apply transaction committed.
        records_added: New rows written.
        records_updated: Existing rows overwritten.
        records_skipped: Approved rows that were not written.
        errors: Ordered ``"<table>/<key>: <reason>"`` messages.
        warnings: Detection problems that did not stop the run.
        message: One-line summary.
        applied_changes: Changes that were written.
        duration_seconds: Wall time of the apply pass.
    """

    success: bool
    records_added: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    errors: list[str] = []
    warnings: list[str] = []
    message: str = ""
    applied_changes: list[PendingChange] = []
    duration_seconds: float = 0.0

    model_config = {"frozen": True}

    @property
    def total_processed(self) -> int:
        return self.records_added + self.records_updated + self.records_skipped

    @property
    def status(self) -> SyncStatus:
        if not self.success:
            return SyncStatus.FAILED
        if self.errors:
            return SyncStatus.PARTIAL
        return SyncStatus.SUCCESS


class SyncHistoryEntry(BaseModel):
    """One persisted sync attempt.  Never modified after it is written."""

    sync_id: int | None = None
    location_id: int | None
    location_name: str
    sync_type: SyncType
    records_added: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    status: SyncStatus
    error_message: str | None = None
    operator: str | None = None
    tables_synced: list[str] = []
    started_at: datetime
    completed_at: datetime
    duration_seconds: float = 0.0

    model_config = {"frozen": True}


class SyncStatistics(BaseModel):
    """Aggregated history figures for a location or all locations."""

    total_runs: int = 0
    successful_runs: int = 0
    partial_runs: int = 0
    failed_runs: int = 0
    records_added: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    last_success_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def success_rate(self) -> float:
        if not self.total_runs:
            return 0.0
        return self.successful_runs / self.total_runs

"""Reconciliation of remote branch databases into the local store.

The engine detects how a remote location's data differs from the local
database, lets an operator approve individual changes, and applies the
approved subset atomically while recording history and an audit trail.

Usage::

    from branch_sync.sync import ChangeType, SyncContext

    run = engine.start(SyncContext(location=location, operator_name="admin"))
    for change in run.changes:
        print(change.change_id, change.record_description)
    run.queue.approve_where(change_type=ChangeType.NEW)
    result = run.apply()

Modules:

- ``models`` -- Pydantic data contracts.
- ``tables`` -- per-table read/compare/write descriptors.
- ``watermarks`` -- per-table incremental sync watermarks.
- ``probe`` -- connection test.
- ``detector`` -- change detection and classification.
- ``queue`` -- in-memory review queue.
- ``applier`` -- transactional apply with per-row savepoints.
- ``history`` -- append-only sync history.
- ``audit_log`` -- daily text audit log.
- ``locks`` -- per-location run locks.
- ``engine`` -- run state machine.
- ``reporter`` -- text and JSON output.
"""

from .applier import ChangeApplier
from .audit_log import SyncAuditLog
from .detector import ChangeDetector
from .engine import SyncEngine, SyncRun
from .history import SyncHistoryRecorder
from .locks import LocationLocks
from .models import (
    ChangeType,
    DetectionReport,
    PendingChange,
    ProbeResult,
    RemoteLocation,
    RunState,
    SyncContext,
    SyncHistoryEntry,
    SyncResult,
    SyncStatistics,
    SyncStatus,
    SyncType,
    TableId,
)
from .probe import ConnectionProbe
from .queue import ApprovedBatch, ReconciliationQueue
from .watermarks import WatermarkStore

__all__ = [
    "ApprovedBatch",
    "ChangeApplier",
    "ChangeDetector",
    "ChangeType",
    "ConnectionProbe",
    "DetectionReport",
    "LocationLocks",
    "PendingChange",
    "ProbeResult",
    "ReconciliationQueue",
    "RemoteLocation",
    "RunState",
    "SyncAuditLog",
    "SyncContext",
    "SyncEngine",
    "SyncHistoryEntry",
    "SyncHistoryRecorder",
    "SyncResult",
    "SyncRun",
    "SyncStatistics",
    "SyncStatus",
    "SyncType",
    "TableId",
    "WatermarkStore",
]

"""Run orchestration for location syncs.

``SyncEngine.start()`` drives one run through its lifecycle::

    Idle -> Probing -> Detecting -> AwaitingApproval -> Applying -> Completed
                |           |              |                  \\-> Failed
                \\-> Failed  \\-> Failed     \\-> Cancelled

1. Takes the location's run lock (a second run fails fast).
2. Probes the remote database.
3. Detects changes into a ``ReconciliationQueue``.
4. Waits, without timeout, for the operator to approve a subset and call
   ``SyncRun.apply()``, or ``SyncRun.cancel()``.
5. Applies the batch, then writes history, the audit log and the
   location's status, and releases the lock.

Nothing is written to the local database before ``apply()``.  A probe or
detection failure ends the run as Failed with a ``failure_reason``; the
attempt is still recorded in history and the audit log.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable

from sqlalchemy.engine import Engine

from branch_sync.errors import (
    ConnectivityError,
    DetectionError,
    InvalidRunStateError,
    SyncInProgressError,
    ValidationError,
)
from branch_sync.sync.applier import ChangeApplier
from branch_sync.sync.audit_log import SyncAuditLog
from branch_sync.sync.detector import ChangeDetector
from branch_sync.sync.history import SyncHistoryRecorder
from branch_sync.sync.models import (
    DetectionReport,
    PendingChange,
    ProbeResult,
    RemoteLocation,
    RunState,
    SyncContext,
    SyncHistoryEntry,
    SyncResult,
    SyncStatus,
    SyncType,
)
from branch_sync.sync.probe import ConnectionProbe
from branch_sync.sync.queue import ApprovedBatch, ReconciliationQueue
from branch_sync.sync.watermarks import WatermarkStore

if TYPE_CHECKING:
    from branch_sync.registry import LocationRegistry

logger = logging.getLogger(__name__)

StateListener = Callable[["SyncRun", RunState], None]

_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.IDLE: {RunState.PROBING},
    RunState.PROBING: {RunState.DETECTING, RunState.FAILED, RunState.CANCELLED},
    RunState.DETECTING: {
        RunState.AWAITING_APPROVAL,
        RunState.FAILED,
        RunState.CANCELLED,
    },
    RunState.AWAITING_APPROVAL: {RunState.APPLYING, RunState.CANCELLED},
    RunState.APPLYING: {RunState.COMPLETED, RunState.FAILED},
}


def _status_text(result: SyncResult) -> str:
    if result.status == SyncStatus.SUCCESS:
        return "Success"
    if result.status == SyncStatus.PARTIAL:
        return f"Partial: {len(result.errors)} errors"
    return f"Failed: {result.errors[0] if result.errors else 'unknown error'}"


class SyncRun:
    """One sync attempt against one location.

    Created by ``SyncEngine.start()``; not meant to be built directly.

    Attributes:
        run_id: Random identifier for log correlation.
        context: Location and operator of the run.
        sync_type: Full or incremental.
        state: Current ``RunState``.
        detection: Detection report once detection succeeded.
        queue: Review queue while awaiting approval.
        result: Apply outcome once applied.
        failure_reason: Why the run failed before applying.
        history_entry: History row written for this attempt.
    """

    def __init__(self, engine: SyncEngine, context: SyncContext, sync_type: SyncType) -> None:
        self.run_id = uuid.uuid4().hex[:12]
        self.context = context
        self.sync_type = sync_type
        self.state = RunState.IDLE
        self.started_at = datetime.now()
        self.detection: DetectionReport | None = None
        self.queue: ReconciliationQueue | None = None
        self.result: SyncResult | None = None
        self.failure_reason: str | None = None
        self.history_entry: SyncHistoryEntry | None = None
        self._engine = engine
        self._cancel_requested = threading.Event()
        self._released = False

    def __repr__(self) -> str:
        return (
            f"SyncRun({self.run_id}, location={self.context.location.location_name!r}, "
            f"state={self.state.value})"
        )

    @property
    def changes(self) -> tuple[PendingChange, ...]:
        return self.queue.changes if self.queue is not None else ()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def apply(self, approved: Iterable[PendingChange] | None = None) -> SyncResult:
        """Apply the approved changes and finish the run.

        Args:
            approved: Explicit approved subset.  Defaults to every change
                in the queue whose ``is_approved`` flag is set.

        Returns:
            The ``SyncResult`` of the apply pass.

        Raises:
            InvalidRunStateError: If the run is not awaiting approval.
            ValidationError: If *approved* contains foreign or unapproved
                changes (the run keeps waiting).
        """
        if self.state != RunState.AWAITING_APPROVAL or self.queue is None:
            raise InvalidRunStateError(
                f"Cannot apply run {self.run_id} in state '{self.state.value}'"
            )
        batch = self.queue.take_approved(approved)
        return self._apply(batch)

    def cancel(self) -> None:
        """Abandon the run without writing anything.

        Raises:
            InvalidRunStateError: If the run is applying or already finished.
        """
        if self.state in (RunState.PROBING, RunState.DETECTING):
            # Picked up by start() once the current step returns.
            self._cancel_requested.set()
            return
        if self.state != RunState.AWAITING_APPROVAL:
            raise InvalidRunStateError(
                f"Cannot cancel run {self.run_id} in state '{self.state.value}'"
            )
        self._cancel()

    # ------------------------------------------------------------------
    # Lifecycle (driven by SyncEngine)
    # ------------------------------------------------------------------

    def _transition(self, new_state: RunState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise InvalidRunStateError(
                f"Run {self.run_id}: invalid transition "
                f"{self.state.value} -> {new_state.value}"
            )
        logger.debug("Run %s: %s -> %s", self.run_id, self.state.value, new_state.value)
        self.state = new_state
        self._engine._notify(self, new_state)

    def _execute(self) -> None:
        engine = self._engine
        name = self.context.location.location_name

        self._transition(RunState.PROBING)
        try:
            remote = engine.probe.check(self.context.location)
        except ConnectivityError as exc:
            self._fail(str(exc), location_status="Connection failed")
            return

        try:
            if self._cancel_requested.is_set():
                self._cancel()
                return
            self._transition(RunState.DETECTING)
            try:
                report = engine.detector.detect(self.context, remote, self.sync_type)
            except DetectionError as exc:
                self._fail(str(exc))
                return
        finally:
            remote.dispose()

        self.detection = report
        self.queue = ReconciliationQueue(report.changes)
        if self._cancel_requested.is_set():
            self._cancel()
            return
        self._transition(RunState.AWAITING_APPROVAL)
        logger.info(
            "Run %s for '%s' awaiting approval of %d changes",
            self.run_id,
            name,
            len(self.queue),
        )
        engine.audit_log.log_sync_start(self.context, len(self.queue))

        if not len(self.queue):
            engine.audit_log.log_no_changes(self.context)
            self._apply(self.queue.take_approved())

    def _apply(self, batch: ApprovedBatch) -> SyncResult:
        engine = self._engine
        if self.detection is None:
            raise InvalidRunStateError(
                f"Run {self.run_id} has no detection report to apply"
            )
        self._transition(RunState.APPLYING)
        try:
            result = engine.applier.apply(
                self.context,
                batch,
                scanned_tables=self.detection.scanned_tables,
                watermark_at=self.detection.started_at,
            )
            if self.detection.warnings:
                result = result.model_copy(update={"warnings": list(self.detection.warnings)})
            self.result = result
            self.queue = None
            self._transition(RunState.COMPLETED if result.success else RunState.FAILED)

            completed_at = datetime.now()
            self.history_entry = engine.history.record(
                self.context,
                self.sync_type,
                result,
                self.started_at,
                completed_at,
                tables=self.detection.scanned_tables,
            )
            engine.audit_log.log_result(self.context, self.sync_type, result)
            engine.registry.update_sync_status(
                self.context.location_id, _status_text(result), completed_at
            )
        finally:
            self._release()
        logger.info(
            "Run %s for '%s' finished: %s",
            self.run_id,
            self.context.location.location_name,
            result.message,
        )
        return result

    def _fail(self, reason: str, location_status: str | None = None) -> None:
        engine = self._engine
        self.failure_reason = reason
        try:
            self._transition(RunState.FAILED)
            logger.error("Run %s failed: %s", self.run_id, reason)
            completed_at = datetime.now()
            self.history_entry = engine.history.record_failure(
                self.context, self.sync_type, reason, self.started_at, completed_at
            )
            engine.audit_log.log_failure(self.context, self.sync_type, reason)
            engine.registry.update_sync_status(
                self.context.location_id,
                location_status or f"Failed: {reason}",
                completed_at,
            )
        finally:
            self._release()

    def _cancel(self) -> None:
        self._transition(RunState.CANCELLED)
        self.queue = None
        self._release()
        logger.info("Run %s cancelled", self.run_id)

    def _release(self) -> None:
        if not self._released:
            self._released = True
            self._engine.locks.release(self.context.location_id)


class SyncEngine:
    """Entry point for connection tests and sync runs.

    Args:
        registry: Location registry; its locks guard concurrent runs.
        probe: Connection probe for remote locations.
        detector: Change detector.
        applier: Change applier.
        history: Sync history recorder.
        audit_log: Daily audit log.
        on_state_change: Optional callback invoked on every run transition.
    """

    def __init__(
        self,
        registry: LocationRegistry,
        probe: ConnectionProbe,
        detector: ChangeDetector,
        applier: ChangeApplier,
        history: SyncHistoryRecorder,
        audit_log: SyncAuditLog,
        on_state_change: StateListener | None = None,
    ) -> None:
        self.registry = registry
        self.locks = registry.locks
        self.probe = probe
        self.detector = detector
        self.applier = applier
        self.history = history
        self.audit_log = audit_log
        self.on_state_change = on_state_change

    @classmethod
    def create(
        cls,
        local_engine: Engine,
        registry: LocationRegistry,
        probe: ConnectionProbe,
        audit_log: SyncAuditLog,
        on_state_change: StateListener | None = None,
    ) -> SyncEngine:
        """Build an engine with default detector, applier and history."""
        watermarks = WatermarkStore(local_engine)
        return cls(
            registry=registry,
            probe=probe,
            detector=ChangeDetector(local_engine, watermarks),
            applier=ChangeApplier(local_engine, watermarks),
            history=SyncHistoryRecorder(local_engine),
            audit_log=audit_log,
            on_state_change=on_state_change,
        )

    def test_connection(self, location: RemoteLocation) -> ProbeResult:
        """Probe a location and record the outcome in the audit log."""
        result = self.probe.test(location)
        self.audit_log.log_connection_test(
            location.location_name, result.success, result.message
        )
        return result

    def is_syncing(self, location_id: int) -> bool:
        return self.locks.is_locked(location_id)

    def start(
        self, context: SyncContext, sync_type: SyncType = SyncType.INCREMENTAL
    ) -> SyncRun:
        """Probe and detect, returning a run that awaits approval.

        The returned run is Failed if the probe or detection failed, and
        Completed if there was nothing to review.

        Raises:
            ValidationError: If the location is inactive.
            SyncInProgressError: If another run holds the location.
        """
        location = context.location
        if not location.is_active:
            raise ValidationError(f"Location '{location.location_name}' is inactive")
        if not self.locks.try_acquire(context.location_id):
            raise SyncInProgressError(location.location_name)

        run = SyncRun(self, context, sync_type)
        logger.info(
            "Run %s: %s sync with '%s' started by %s",
            run.run_id,
            sync_type.value,
            location.location_name,
            context.operator_name,
        )
        try:
            run._execute()
        except Exception:
            run._release()
            raise
        return run

    def _notify(self, run: SyncRun, state: RunState) -> None:
        if self.on_state_change is not None:
            self.on_state_change(run, state)

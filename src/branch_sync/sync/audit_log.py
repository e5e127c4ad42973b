"""Human-readable daily audit log of sync activity.

Writes UTF-8 text files named ``sync_YYYY-MM-DD.txt`` in a log directory,
one per calendar day.  Entries are only ever appended; the sole way to
remove them is the operator-triggered ``clear()``.

Each applied run produces a block::

    ===================================================================
      Sync time: 2026-10-19 14:05:31
      Location:  Branch A
      Operator:  admin
      Sync type: incremental
    -------------------------------------------------------------------
      Status:          success
      Records added:   1
      Records updated: 1
      Records skipped: 0
    -------------------------------------------------------------------
      Applied changes:
        [new] Employees: Sara (2002)
    ===================================================================

Connection tests, run starts and "no changes" outcomes are single lines.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Callable

from branch_sync.sync.models import SyncContext, SyncResult, SyncType

logger = logging.getLogger(__name__)

_RULE_HEAVY = "=" * 67
_RULE_LIGHT = "-" * 67
_FILE_GLOB = "sync_*.txt"


class SyncAuditLog:
    """Append-only daily sync log files.

    Args:
        log_dir: Directory holding the log files; created on first write.
        clock: Returns the current time (injectable for tests).
    """

    def __init__(
        self, log_dir: Path, clock: Callable[[], datetime] = datetime.now
    ) -> None:
        self.log_dir = Path(log_dir)
        self._clock = clock
        self._lock = threading.Lock()

    def path_for(self, day: date) -> Path:
        return self.log_dir / f"sync_{day:%Y-%m-%d}.txt"

    @property
    def current_path(self) -> Path:
        return self.path_for(self._clock().date())

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def log_result(
        self,
        context: SyncContext,
        sync_type: SyncType,
        result: SyncResult,
    ) -> None:
        """Append a block describing an apply pass."""
        lines = [
            _RULE_HEAVY,
            f"  Sync time: {self._clock():%Y-%m-%d %H:%M:%S}",
            f"  Location:  {context.location.location_name}",
            f"  Operator:  {context.operator_name}",
            f"  Sync type: {sync_type.value}",
            _RULE_LIGHT,
            f"  Status:          {result.status.value}",
            f"  Records added:   {result.records_added}",
            f"  Records updated: {result.records_updated}",
            f"  Records skipped: {result.records_skipped}",
        ]
        if result.errors:
            lines += [_RULE_LIGHT, "  Errors:"]
            lines += [f"    - {error}" for error in result.errors]
        if result.warnings:
            lines += [_RULE_LIGHT, "  Warnings:"]
            lines += [f"    - {warning}" for warning in result.warnings]
        if result.applied_changes:
            lines += [_RULE_LIGHT, "  Applied changes:"]
            lines += [
                f"    [{change.change_type.value}] {change.record_description}"
                for change in result.applied_changes
            ]
        lines += [_RULE_HEAVY, ""]
        self._write("\n".join(lines) + "\n")

    def log_failure(self, context: SyncContext, sync_type: SyncType, reason: str) -> None:
        """Append a line for a run that failed before applying anything."""
        self._write(
            f"[{self._clock():%H:%M:%S}] {sync_type.value} sync with "
            f"{context.location.location_name} failed ({context.operator_name}): {reason}\n"
        )

    def log_sync_start(self, context: SyncContext, pending_count: int) -> None:
        self._write(
            f"\n[{self._clock():%H:%M:%S}] Sync started with "
            f"{context.location.location_name} by {context.operator_name}\n"
            f"  Pending changes: {pending_count}\n"
        )

    def log_no_changes(self, context: SyncContext) -> None:
        self._write(
            f"[{self._clock():%H:%M:%S}] {context.location.location_name}: no new changes\n"
        )

    def log_connection_test(
        self, location_name: str, success: bool, message: str | None = None
    ) -> None:
        outcome = "success" if success else f"failed - {message}"
        self._write(
            f"[{self._clock():%H:%M:%S}] Connection test for {location_name}: {outcome}\n"
        )

    def _write(self, content: str) -> None:
        path = self.current_path
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as fh:
                fh.write(content)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def log_files(self) -> list[Path]:
        """Existing log files, oldest first."""
        if not self.log_dir.is_dir():
            return []
        return sorted(self.log_dir.glob(_FILE_GLOB))

    def read(self, day: date | None = None) -> str:
        """Return the content of one day's log ("" if there is none)."""
        path = self.path_for(day) if day else self.current_path
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def clear(self) -> int:
        """Delete every log file.  Returns the number of files removed."""
        with self._lock:
            files = self.log_files()
            for path in files:
                path.unlink()
        logger.info("Cleared %d sync log files in %s", len(files), self.log_dir)
        return len(files)

    def open(self, path: Path | None = None) -> Path:
        """Open a log file, or the log directory, with the OS default handler.

        Returns:
            The path that was opened.
        """
        target = Path(path) if path else self.log_dir
        if target == self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        elif not target.exists():
            raise FileNotFoundError(f"Log file not found: {target}")

        if sys.platform.startswith("win"):
            os.startfile(target)  # type: ignore[attr-defined]
        else:
            opener = "open" if sys.platform == "darwin" else "xdg-open"
            subprocess.Popen([opener, str(target)])
        return target

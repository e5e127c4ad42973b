"""Per-location run locks.

At most one sync run may hold a location at a time.  Locks are taken
without blocking, so a second run fails fast instead of queueing, and may
be released from a different thread than the one that acquired them.
"""

from __future__ import annotations

import threading


class LocationLocks:
    """Registry of non-reentrant, non-blocking locks keyed by location id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, location_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(location_id, threading.Lock())

    def try_acquire(self, location_id: int) -> bool:
        """Take the lock for *location_id*; ``False`` if it is already held."""
        return self._lock_for(location_id).acquire(blocking=False)

    def release(self, location_id: int) -> None:
        lock = self._lock_for(location_id)
        if lock.locked():
            lock.release()

    def is_locked(self, location_id: int) -> bool:
        return self._lock_for(location_id).locked()

"""Exception hierarchy for branch-sync.

All errors raised deliberately by the package derive from
``BranchSyncError`` so callers (the CLI, an external review UI) can catch
one type and present ``str(exc)`` to the operator.

- ``ConnectivityError`` -- a remote location could not be reached.
- ``DetectionError`` -- no table of a detection pass could be read.
- ``ApplyError`` -- a single approved change could not be written.
- ``FatalTransactionError`` -- the apply transaction itself failed.
- ``AlreadyAppliedError`` -- an approved batch was submitted twice.
- ``SyncInProgressError`` -- a run already holds the location.
- ``InvalidRunStateError`` -- an operation is not allowed in the run state.
- ``CredentialError`` -- a stored password could not be decrypted.
- ``LocationNotFoundError`` -- unknown location id.
- ``ValidationError`` -- bad operator input.
"""

from __future__ import annotations


class BranchSyncError(Exception):
    """Base class for all branch-sync errors."""


class ConnectivityError(BranchSyncError):
    """Raised when a remote location fails the connection probe.

    Attributes:
        location_name: Name of the unreachable location.
    """

    def __init__(self, location_name: str, reason: str) -> None:
        self.location_name = location_name
        self.reason = reason
        super().__init__(f"Cannot connect to '{location_name}': {reason}")


class DetectionError(BranchSyncError):
    """Raised when change detection cannot produce any result."""


class ApplyError(BranchSyncError):
    """Raised by a table writer when one change cannot be applied."""


class FatalTransactionError(BranchSyncError):
    """Raised when the apply transaction as a whole is lost."""


class AlreadyAppliedError(BranchSyncError):
    """Raised when an approved batch is applied a second time."""


class SyncInProgressError(BranchSyncError):
    """Raised when a location is already being synchronised."""

    def __init__(self, location_name: str) -> None:
        self.location_name = location_name
        super().__init__(
            f"A sync is already in progress for '{location_name}'"
        )


class InvalidRunStateError(BranchSyncError):
    """Raised when a run operation is not valid in the current state."""


class CredentialError(BranchSyncError):
    """Raised when a stored credential cannot be decrypted."""


class LocationNotFoundError(BranchSyncError):
    """Raised when a location id does not exist in the registry."""

    def __init__(self, location_id: int) -> None:
        self.location_id = location_id
        super().__init__(f"Location {location_id} not found")


class ValidationError(BranchSyncError):
    """Raised for invalid operator input."""

"""In-memory review queue for detected changes.

The queue holds the ordered ``PendingChange`` list of one run while the
operator decides what to apply.  It performs no I/O.  Every change starts
unapproved; nothing here ever approves a change on its own.

``take_approved()`` hands the approved subset to the applier exactly once.
After that the queue is consumed and further edits are rejected.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from branch_sync.errors import AlreadyAppliedError, ValidationError
from branch_sync.sync.models import ChangeType, PendingChange, TableId


@dataclass
class ApprovedBatch:
    """Approved changes submitted for one apply pass.

    Attributes:
        changes: Approved changes in detection order.
        held_back_tables: Tables with at least one change left unapproved.
        consumed: Set by the applier when the batch is applied.
    """

    changes: tuple[PendingChange, ...]
    held_back_tables: frozenset[TableId] = frozenset()
    consumed: bool = field(default=False)

    def __len__(self) -> int:
        return len(self.changes)


class ReconciliationQueue:
    """Ordered collection of pending changes with approval flags.

    Args:
        changes: Detected changes, already in review order.
    """

    def __init__(self, changes: Iterable[PendingChange] = ()) -> None:
        self._changes: list[PendingChange] = list(changes)
        self._by_id: dict[str, PendingChange] = {}
        for change in self._changes:
            if change.change_id in self._by_id:
                raise ValidationError(f"Duplicate change id {change.change_id!r}")
            self._by_id[change.change_id] = change
        self._consumed = False

    def __len__(self) -> int:
        return len(self._changes)

    def __iter__(self) -> Iterator[PendingChange]:
        return iter(self._changes)

    def __contains__(self, change_id: object) -> bool:
        return change_id in self._by_id

    @property
    def changes(self) -> tuple[PendingChange, ...]:
        return tuple(self._changes)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def get(self, change_id: str) -> PendingChange:
        """Return a change by id.

        Raises:
            ValidationError: If no change has that id.
        """
        try:
            return self._by_id[change_id]
        except KeyError:
            raise ValidationError(f"Unknown change id {change_id!r}") from None

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def set_approved(self, change_id: str, approved: bool) -> None:
        self._check_open()
        self.get(change_id).is_approved = approved

    def toggle(self, change_id: str) -> bool:
        """Flip one approval flag and return the new value."""
        self._check_open()
        change = self.get(change_id)
        change.is_approved = not change.is_approved
        return change.is_approved

    def select_all(self) -> None:
        self._set_all(True)

    def deselect_all(self) -> None:
        self._set_all(False)

    def approve_where(
        self,
        table: TableId | None = None,
        change_type: ChangeType | None = None,
        approved: bool = True,
    ) -> int:
        """Set approval on every change matching the filters.

        Returns:
            Number of changes whose flag was set.
        """
        self._check_open()
        matched = 0
        for change in self._changes:
            if table is not None and change.table != table:
                continue
            if change_type is not None and change.change_type != change_type:
                continue
            change.is_approved = approved
            matched += 1
        return matched

    @property
    def approved(self) -> list[PendingChange]:
        return [c for c in self._changes if c.is_approved]

    def counts(self) -> dict[ChangeType, int]:
        """Number of changes per change type (all types present)."""
        counter = Counter(c.change_type for c in self._changes)
        return {change_type: counter.get(change_type, 0) for change_type in ChangeType}

    # ------------------------------------------------------------------
    # Hand-off
    # ------------------------------------------------------------------

    def take_approved(
        self, subset: Iterable[PendingChange] | None = None
    ) -> ApprovedBatch:
        """Consume the queue and return the batch to apply.

        Args:
            subset: Explicit approved changes to apply.  Each must belong
                to this queue and be approved.  Defaults to every approved
                change.

        Returns:
            An ``ApprovedBatch`` in detection order.

        Raises:
            AlreadyAppliedError: If the queue was already consumed.
            ValidationError: If *subset* contains a foreign or unapproved
                change.
        """
        self._check_open()
        if subset is None:
            chosen = {c.change_id for c in self._changes if c.is_approved}
        else:
            chosen = set()
            for change in subset:
                own = self.get(change.change_id)
                if not own.is_approved:
                    raise ValidationError(
                        f"Change {change.change_id!r} has not been approved"
                    )
                chosen.add(own.change_id)

        ordered = tuple(c for c in self._changes if c.change_id in chosen)
        held_back = frozenset(
            c.table for c in self._changes if c.change_id not in chosen
        )
        self._consumed = True
        return ApprovedBatch(changes=ordered, held_back_tables=held_back)

    def _set_all(self, approved: bool) -> None:
        self._check_open()
        for change in self._changes:
            change.is_approved = approved

    def _check_open(self) -> None:
        if self._consumed:
            raise AlreadyAppliedError("Changes from this queue were already submitted")

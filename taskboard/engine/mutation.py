"""Mutation lifecycle record.

One ``Mutation`` is created per user intent and walks a small state
machine::

    BUILDING -> APPLIED -> PENDING -> COMMITTED | ROLLED_BACK

with REJECTED (validation failed, nothing applied) and DISCARDED (the
store went away) as the other terminal states.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from taskboard.engine.store import Snapshot
from taskboard.errors import TaskBoardError
from taskboard.models import PLACEHOLDER_PREFIX, Task, TaskId


class MutationKind(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"
    toggle = "toggle"


class MutationState(str, Enum):
    building = "building"
    applied = "applied"
    pending = "pending"
    committed = "committed"
    rolled_back = "rolled_back"
    rejected = "rejected"
    discarded = "discarded"


_TRANSITIONS: dict[MutationState, frozenset[MutationState]] = {
    MutationState.building: frozenset(
        {MutationState.applied, MutationState.rejected, MutationState.discarded}
    ),
    MutationState.applied: frozenset({MutationState.pending}),
    MutationState.pending: frozenset(
        {MutationState.committed, MutationState.rolled_back, MutationState.discarded}
    ),
}

TERMINAL_STATES = frozenset(
    {
        MutationState.committed,
        MutationState.rolled_back,
        MutationState.rejected,
        MutationState.discarded,
    }
)


class Mutation:
    """State of one optimistic create/update/delete/toggle.

    Attributes:
        id: Unique mutation id, used as the store's in-flight hold key.
        kind: Which operation this is.
        task_id: Target id; the placeholder id for a create.
        sequence: Start order among mutations of the same coordinator.
        snapshot: Collection captured before the optimistic write. A later
            mutation on the same id may have its record rebased.
        optimistic: The record written optimistically (None for deletes).
        task: Committed server record (or the removed record for deletes).
        error: Classified failure for ROLLED_BACK / REJECTED mutations.
    """

    def __init__(self, kind: MutationKind, task_id: Optional[TaskId] = None) -> None:
        self.id = uuid.uuid4().hex
        self.kind = kind
        self.task_id = task_id
        self.sequence = 0
        self.state = MutationState.building
        self.snapshot: Optional[Snapshot] = None
        self.optimistic: Optional[Task] = None
        self.task: Optional[Task] = None
        self.error: Optional[TaskBoardError] = None

    def __repr__(self) -> str:
        return (
            f"Mutation(kind={self.kind.value}, task_id={self.task_id!r}, "
            f"state={self.state.value})"
        )

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state is MutationState.committed

    def advance(self, state: MutationState) -> None:
        """Move to *state*, raising RuntimeError on an illegal transition."""
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise RuntimeError(
                f"illegal mutation transition {self.state.value} -> {state.value}"
            )
        self.state = state

    def base(self) -> Optional[Task]:
        """The target's record before this mutation touched it."""
        if self.snapshot is None or self.task_id is None:
            return None
        return self.snapshot.get(self.task_id)

    def rebase(self, task: Optional[Task]) -> None:
        """Replace the rollback base for the target with *task*."""
        if self.snapshot is not None and self.task_id is not None:
            self.snapshot = self.snapshot.replace(self.task_id, task)

    def result(self) -> Optional[Task]:
        """Return the committed task, or raise the classified failure.

        A DISCARDED mutation returns None: its outcome was dropped with the
        store and there is nothing to report.
        """
        if not self.done:
            raise RuntimeError("mutation has not finished")
        if self.error is not None:
            raise self.error
        return self.task


class PlaceholderIds:
    """Issues ``tmp-<epoch ms>`` ids, strictly increasing per instance."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock
        self._last = 0

    def next(self) -> str:
        millis = max(int(self._clock().timestamp() * 1000), self._last + 1)
        self._last = millis
        return f"{PLACEHOLDER_PREFIX}{millis}"

"""In-flight mutation tracker.

Records which task ids have unconfirmed local mutations pending, and which
mutations hold them. Several mutations may hold the same id at once; the
id stays in flight until the last one releases it.
"""

from __future__ import annotations

from taskboard.models import TaskId


class InFlightTracker:
    """Maps task ids to the ids of the mutations currently holding them.

    Internal state:
        _holders: dict mapping task_id -> ordered list of mutation ids
    """

    def __init__(self) -> None:
        self._holders: dict[TaskId, list[str]] = {}

    def hold(self, task_id: TaskId, mutation_id: str) -> None:
        """Mark *task_id* as held by *mutation_id*. Re-holding is a no-op."""
        holders = self._holders.get(task_id, [])
        if mutation_id in holders:
            return
        self._holders = {**self._holders, task_id: [*holders, mutation_id]}

    def release(self, task_id: TaskId, mutation_id: str) -> bool:
        """Drop *mutation_id*'s hold on *task_id*.

        Returns True when this released the last hold, i.e. the id is no
        longer in flight. Releasing a hold that does not exist returns
        False.
        """
        holders = self._holders.get(task_id)
        if not holders or mutation_id not in holders:
            return False
        remaining = [h for h in holders if h != mutation_id]
        if remaining:
            self._holders = {**self._holders, task_id: remaining}
            return False
        self._holders = {
            tid: hs for tid, hs in self._holders.items() if tid != task_id
        }
        return True

    def is_held(self, task_id: TaskId) -> bool:
        return task_id in self._holders

    def held_ids(self) -> list[TaskId]:
        return list(self._holders)

    def release_all(self) -> None:
        self._holders = {}

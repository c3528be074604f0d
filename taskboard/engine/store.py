"""In-memory task store: the single source of truth the task list renders from.

All writes go through a handful of primitives (apply, commit, rollback,
remove/restore, merge). Records are immutable ``Task`` models: a write
replaces the record and stamps it with a fresh, monotonically increasing
revision. Readers get snapshots, never the live mapping.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional

from taskboard.engine.inflight import InFlightTracker
from taskboard.engine.ordering import next_overdue_boundary, sort_tasks, utc_now
from taskboard.errors import DuplicateTaskError, StaleContextError
from taskboard.models import Task, TaskId, is_placeholder_id

logger = logging.getLogger(__name__)

Listener = Callable[[], None]

# Fields that describe a record's bookkeeping rather than its content.
_BOOKKEEPING = frozenset({"id", "optimistic", "revision"})


class MergeOutcome(str, Enum):
    applied = "applied"
    deferred = "deferred"
    stale = "stale"
    ignored = "ignored"


class Snapshot:
    """Immutable capture of the whole collection, in insertion order.

    Two snapshots are equal when they hold the same ids, in the same
    order, with structurally equal records.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[tuple[TaskId, Task]] = ()) -> None:
        self._items: tuple[tuple[TaskId, Task], ...] = tuple(items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return self._items == other._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Task]:
        return (task for _, task in self._items)

    def __repr__(self) -> str:
        return f"Snapshot(ids={self.ids()!r})"

    def ids(self) -> list[TaskId]:
        return [task_id for task_id, _ in self._items]

    def get(self, task_id: TaskId) -> Optional[Task]:
        for key, task in self._items:
            if key == task_id:
                return task
        return None

    def records(self) -> dict[TaskId, Task]:
        return dict(self._items)

    def replace(self, task_id: TaskId, task: Optional[Task]) -> "Snapshot":
        """Return a copy with *task_id*'s record swapped for *task*.

        ``None`` drops the record; an id the snapshot lacks is appended.
        """
        items = [(k, v) for k, v in self._items if k != task_id or task is not None]
        if task is None:
            return Snapshot(items)
        if task_id in dict(items):
            return Snapshot((k, task if k == task_id else v) for k, v in items)
        return Snapshot([*items, (task_id, task)])


class _SortedView:
    """Cached ordering, valid until the next write or overdue boundary."""

    __slots__ = ("version", "computed_at", "boundary", "tasks")

    def __init__(
        self,
        version: int,
        computed_at: datetime,
        boundary: Optional[datetime],
        tasks: tuple[Task, ...],
    ) -> None:
        self.version = version
        self.computed_at = computed_at
        self.boundary = boundary
        self.tasks = tasks

    def valid_for(self, version: int, now: datetime) -> bool:
        if version != self.version or now < self.computed_at:
            return False
        return self.boundary is None or now <= self.boundary


def is_newer(a: Task, b: Task) -> bool:
    """True when confirmed state *a* was written by the server after *b*."""
    return a.updated_at is not None and b.updated_at is not None and a.updated_at > b.updated_at


def _diff(base: Optional[Task], incoming: Task) -> dict[str, Any]:
    """Content fields of *incoming* that differ from *base*."""
    names = [n for n in type(incoming).model_fields if n not in _BOOKKEEPING]
    if base is None:
        return {n: getattr(incoming, n) for n in names}
    return {
        n: getattr(incoming, n)
        for n in names
        if getattr(base, n) != getattr(incoming, n)
    }


class TaskStore:
    """Id-indexed collection of tasks with snapshot/rollback support.

    Besides the visible records the store keeps:

    - the last *confirmed* (server-originated) version of every record,
    - the ids with local mutations in flight,
    - push merges deferred while their id is in flight, accumulated as a
      field patch and applied once the last in-flight mutation releases
      the id, and
    - pushes for ids it has never seen, held back while a create is in
      flight since one of them may be that create's own record.

    Args:
        clock: Returns the current aware UTC time; drives overdue ordering.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._records: dict[TaskId, Task] = {}
        self._confirmed: dict[TaskId, Task] = {}
        self._deferred: dict[TaskId, dict[str, Any]] = {}
        self._pushed: dict[TaskId, Task] = {}
        self._arrivals: dict[TaskId, Task] = {}
        self._tombstones: set[TaskId] = set()
        self._inflight = InFlightTracker()
        self._listeners: list[Listener] = []
        self._revision = 0
        self._version = 0
        self._sorted: Optional[_SortedView] = None
        self._disposed = False

    # -- reads ---------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._records

    @property
    def disposed(self) -> bool:
        return self._disposed

    def get(self, task_id: TaskId) -> Optional[Task]:
        return self._records.get(task_id)

    def revision_of(self, task_id: TaskId) -> Optional[int]:
        """Revision of the visible record for *task_id*, or None if absent."""
        record = self._records.get(task_id)
        return None if record is None else record.revision

    def is_in_flight(self, task_id: TaskId) -> bool:
        return self._inflight.is_held(task_id)

    def snapshot(self) -> Snapshot:
        return Snapshot(self._records.items())

    def snapshot_sorted(self, now: Optional[datetime] = None) -> list[Task]:
        """Return every record in display order. Side-effect free for callers."""
        now = now or self._clock()
        view = self._sorted
        if view is not None and view.valid_for(self._version, now):
            return list(view.tasks)
        records = list(self._records.values())
        ordered = sort_tasks(records, now)
        self._sorted = _SortedView(
            self._version, now, next_overdue_boundary(records, now), tuple(ordered)
        )
        return ordered

    def get_sorted_tasks(
        self,
        predicate: Optional[Callable[[Task], bool]] = None,
        now: Optional[datetime] = None,
    ) -> list[Task]:
        """Read-only, display-ordered projection, optionally filtered."""
        ordered = self.snapshot_sorted(now)
        if predicate is None:
            return ordered
        return [task for task in ordered if predicate(task)]

    # -- writes --------------------------------------------------------------

    def load(self, tasks: Iterable[Task]) -> None:
        """Replace the confirmed collection with a freshly fetched one.

        Records with a mutation in flight keep their optimistic state; the
        fetched version of those is deferred like a push merge.
        """
        self._ensure_live()
        incoming: dict[TaskId, Task] = {}
        for task in tasks:
            if task.id in incoming:
                logger.error("Duplicate task id %s in loaded collection", task.id)
                raise DuplicateTaskError(f"duplicate task id {task.id!r}")
            incoming[task.id] = task.model_copy(update={"optimistic": False})

        records: dict[TaskId, Task] = {}
        for task_id, task in incoming.items():
            if task_id in self._tombstones:
                continue
            if self._inflight.is_held(task_id):
                self._defer(task)
                continue
            known = self._confirmed.get(task_id)
            if known is not None and is_newer(known, task):
                records[task_id] = self._records.get(task_id, known)
                continue
            records[task_id] = self._stamp(task)
        for task_id, task in self._records.items():
            if self._inflight.is_held(task_id) and task_id not in records:
                records[task_id] = task

        self._records = records
        self._confirmed = {
            **{k: v for k, v in self._confirmed.items() if self._inflight.is_held(k)},
            **{k: v for k, v in records.items() if not v.optimistic},
        }
        logger.info("Loaded %d tasks", len(records))
        self._changed()

    def apply(self, task: Task) -> Snapshot:
        """Insert or replace *task* by id.

        Returns the snapshot of the collection as it was before the write,
        for use with :meth:`rollback`.

        Raises
        ------
        DuplicateTaskError
            If an optimistic placeholder reuses an id already present.
        """
        self._ensure_live()
        if task.optimistic and task.is_placeholder and task.id in self._records:
            logger.error("Placeholder id collision on %s", task.id)
            raise DuplicateTaskError(f"placeholder id {task.id!r} already in use")

        before = self.snapshot()
        record = self._stamp(task)
        self._records[task.id] = record
        if not record.optimistic:
            self._confirmed[task.id] = record
        self._changed()
        return before

    def commit(self, task_id: TaskId, server_task: Task) -> Task:
        """Replace the record at *task_id* with the server's version.

        *task_id* may be an optimistic placeholder; the record is re-keyed
        under the server id in place, so no placeholder or duplicate
        survives. If the server id is already present (a push got there
        first) and holds a newer confirmed state, that state is kept.
        """
        self._ensure_live()
        record = server_task.model_copy(update={"optimistic": False})
        new_id = record.id
        if new_id in self._tombstones:
            logger.debug("Task %s was deleted; not placing its commit", new_id)
            if self._records.pop(task_id, None) is not None:
                self._changed()
            return record
        existing = self._records.get(new_id) if new_id != task_id else None
        if existing is not None and not existing.optimistic and is_newer(existing, record):
            logger.debug("Task %s already holds a newer pushed state", new_id)
            record = existing
        else:
            record = self._stamp(record)

        rebuilt: dict[TaskId, Task] = {}
        placed = False
        for key, value in self._records.items():
            if key == task_id:
                rebuilt[new_id] = record
                placed = True
            elif key != new_id:
                rebuilt[key] = value
        if not placed:
            rebuilt[new_id] = record

        self._records = rebuilt
        if task_id != new_id:
            self._confirmed.pop(task_id, None)
        self._confirmed[new_id] = record
        self._changed()
        return record

    def rollback(self, snapshot: Snapshot, ids: Optional[Iterable[TaskId]] = None) -> None:
        """Restore records exactly as captured in *snapshot*.

        Without *ids* the whole collection becomes the snapshot: same ids,
        same records, same order. With *ids* only those records are
        restored; ids the snapshot lacks are removed. Records the server
        has since confirmed deleted stay deleted in both cases.
        """
        self._ensure_live()
        if ids is None:
            touched = {*self._records, *self._confirmed, *snapshot.ids()}
            self._records = {
                k: v for k, v in snapshot.records().items() if k not in self._tombstones
            }
        else:
            touched = set(ids)
            for task_id in touched:
                original = snapshot.get(task_id)
                if original is None or task_id in self._tombstones:
                    self._records.pop(task_id, None)
                elif task_id in self._records:
                    self._records[task_id] = original
                else:
                    self._reinsert(original, snapshot.ids())
        self._reconfirm(touched)
        self._changed()

    def remove(self, task_id: TaskId) -> Optional[Task]:
        """Optimistically remove *task_id*. Returns the removed record, if any."""
        self._ensure_live()
        removed = self._records.pop(task_id, None)
        if removed is not None:
            self._changed()
        return removed

    def restore(self, task: Task, snapshot: Optional[Snapshot] = None) -> None:
        """Put a removed record back, at its *snapshot* position when given."""
        self._ensure_live()
        if task.id in self._records:
            self._records[task.id] = task
        else:
            self._reinsert(task, snapshot.ids() if snapshot is not None else [])
        self._changed()

    def confirm_removed(self, task_id: TaskId) -> None:
        """Record a server-confirmed delete so late pushes cannot revive it."""
        self._ensure_live()
        removed = self._records.pop(task_id, None)
        self._confirmed.pop(task_id, None)
        self._deferred.pop(task_id, None)
        self._pushed.pop(task_id, None)
        self._arrivals.pop(task_id, None)
        self._tombstones.add(task_id)
        if removed is not None:
            self._changed()

    def merge(self, task: Task) -> MergeOutcome:
        """Fold a server-pushed record into the collection.

        Last writer wins among confirmed states only: a push older than the
        confirmed record is dropped, and a push for an id with a local
        mutation in flight is deferred until that mutation resolves. A push
        for an unknown id waits while any create is in flight, so a create
        never shows up twice.
        """
        self._ensure_live()
        incoming = task.model_copy(update={"optimistic": False})
        if incoming.id in self._tombstones:
            return MergeOutcome.ignored
        confirmed = self._confirmed.get(incoming.id)
        if confirmed is not None and is_newer(confirmed, incoming):
            return MergeOutcome.stale
        if confirmed is None and incoming.id not in self._records and self._creating():
            waiting = self._arrivals.get(incoming.id)
            if waiting is None or not is_newer(waiting, incoming):
                self._arrivals[incoming.id] = incoming
            logger.debug("Holding push for task %s until creates resolve", incoming.id)
            return MergeOutcome.deferred
        if self._inflight.is_held(incoming.id):
            self._defer(incoming)
            return MergeOutcome.deferred

        record = self._stamp(incoming)
        self._records[record.id] = record
        self._confirmed[record.id] = record
        self._changed()
        return MergeOutcome.applied

    def hold(self, task_id: TaskId, mutation_id: str) -> None:
        """Mark *task_id* as having a local mutation in flight."""
        self._ensure_live()
        self._inflight.hold(task_id, mutation_id)

    def release(self, task_id: TaskId, mutation_id: str) -> None:
        """Drop a hold.

        The last release of an id flushes the merges deferred for it. Once
        no create is in flight any more, pushes held back for unknown ids
        are applied too, except where a commit already placed that state.
        """
        if self._disposed:
            return
        if not self._inflight.release(task_id, mutation_id):
            return
        changed = self._flush_deferred(task_id)
        if self._arrivals and not self._creating():
            changed = self._flush_arrivals() or changed
        if changed:
            self._changed()

    # -- notifications -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* after every change. Returns an unsubscribe function."""
        self._ensure_live()
        self._listeners = [*self._listeners, listener]

        def unsubscribe() -> None:
            self._listeners = [fn for fn in self._listeners if fn is not listener]

        return unsubscribe

    def invalidate(self) -> None:
        """Drop the cached ordering and notify listeners."""
        self._ensure_live()
        self._changed()

    def dispose(self) -> None:
        """Tear the store down. Any later write raises StaleContextError."""
        if self._disposed:
            return
        self._disposed = True
        self._listeners = []
        self._deferred = {}
        self._pushed = {}
        self._arrivals = {}
        self._sorted = None
        self._inflight.release_all()
        logger.debug("Task store disposed")

    # -- private helpers -----------------------------------------------------

    def _ensure_live(self) -> None:
        if self._disposed:
            raise StaleContextError("task store has been disposed")

    def _stamp(self, task: Task) -> Task:
        self._revision += 1
        return task.model_copy(update={"revision": self._revision})

    def _creating(self) -> bool:
        return any(is_placeholder_id(task_id) for task_id in self._inflight.held_ids())

    def _reconfirm(self, ids: Iterable[TaskId]) -> None:
        """Make the confirmed state of *ids* follow their visible records.

        Held ids keep theirs; it may carry a deferred push.
        """
        for task_id in ids:
            if self._inflight.is_held(task_id):
                continue
            record = self._records.get(task_id)
            if record is None:
                self._confirmed.pop(task_id, None)
            elif not record.optimistic:
                self._confirmed[task_id] = record

    def _flush_deferred(self, task_id: TaskId) -> bool:
        patch = self._deferred.pop(task_id, None)
        pushed = self._pushed.pop(task_id, None)
        if not patch:
            return False
        current = self._records.get(task_id)
        if current is None:
            logger.debug("Dropping deferred merge for removed task %s", task_id)
            return False
        if pushed is not None and not current.optimistic and is_newer(current, pushed):
            # The committed server state already includes the pushed change.
            logger.debug("Deferred merge for task %s superseded by commit", task_id)
            return False
        record = self._stamp(current.model_copy(update={**patch, "optimistic": False}))
        self._records[task_id] = record
        self._confirmed[task_id] = record
        logger.debug("Applied deferred merge to task %s: %s", task_id, sorted(patch))
        return True

    def _flush_arrivals(self) -> bool:
        arrivals, self._arrivals = self._arrivals, {}
        changed = False
        for task_id, incoming in arrivals.items():
            if task_id in self._tombstones:
                continue
            known = self._confirmed.get(task_id)
            if known is not None and not is_newer(incoming, known):
                logger.debug("Held push for task %s already placed", task_id)
                continue
            if self._inflight.is_held(task_id):
                self._defer(incoming)
                continue
            record = self._stamp(incoming)
            self._records[task_id] = record
            self._confirmed[task_id] = record
            changed = True
        return changed

    def _defer(self, incoming: Task) -> None:
        base = self._confirmed.get(incoming.id) or self._records.get(incoming.id)
        patch = _diff(base, incoming)
        self._deferred[incoming.id] = {**self._deferred.get(incoming.id, {}), **patch}
        self._pushed[incoming.id] = incoming
        self._confirmed[incoming.id] = incoming
        logger.debug("Deferred merge for in-flight task %s", incoming.id)

    def _reinsert(self, task: Task, order: list[TaskId]) -> None:
        """Insert *task* before the first record that followed it in *order*."""
        position = {task_id: i for i, task_id in enumerate(order)}
        target = position.get(task.id)
        rebuilt: dict[TaskId, Task] = {}
        inserted = False
        for key, value in self._records.items():
            if not inserted and target is not None and position.get(key, len(order)) > target:
                rebuilt[task.id] = task
                inserted = True
            rebuilt[key] = value
        if not inserted:
            rebuilt[task.id] = task
        self._records = rebuilt

    def _changed(self) -> None:
        self._version += 1
        self._sorted = None
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Task store listener failed")

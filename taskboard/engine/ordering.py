"""Priority ordering for the task list.

A pure, partition-agnostic total order over tasks:

1. overdue before not overdue
2. with a due date before without one
3. due date ascending (soonest first)
4. priority descending: critical > high > medium > low > absent
5. id ascending (server ids before placeholders)

A due date whose time component is midnight carries only a calendar date
and counts as due at the end of that day (UTC).
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from taskboard.models import PLACEHOLDER_PREFIX, Task, TaskId, is_date_only, priority_rank

DEFAULT_DUE_SOON_DAYS = 2

_END_OF_DAY = timedelta(days=1, microseconds=-1)

SortKey = tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def effective_due(task: Task) -> Optional[datetime]:
    """Return the instant *task* is actually due, or None without a due date."""
    due = task.due_date
    if due is None:
        return None
    if is_date_only(due):
        return due + _END_OF_DAY
    return due


def is_overdue(task: Task, now: datetime) -> bool:
    if task.completed:
        return False
    due = effective_due(task)
    return due is not None and due < now


def is_due_soon(task: Task, now: datetime, days: int = DEFAULT_DUE_SOON_DAYS) -> bool:
    """True for an open task due within *days* from *now* (and not yet overdue)."""
    if task.completed:
        return False
    due = effective_due(task)
    if due is None or due < now:
        return False
    return due - now <= timedelta(days=days)


def id_key(task_id: TaskId) -> tuple[int, int]:
    if isinstance(task_id, int):
        return (0, task_id)
    # Placeholders are "tmp-<epoch ms>"; they sort after every server id.
    return (1, int(task_id[len(PLACEHOLDER_PREFIX):]))


def sort_key(task: Task, now: datetime) -> SortKey:
    due = effective_due(task)
    return (
        0 if is_overdue(task, now) else 1,
        0 if due is not None else 1,
        due.timestamp() if due is not None else 0.0,
        -priority_rank(task.priority),
        id_key(task.id),
    )


def compare(a: Task, b: Task, now: datetime) -> int:
    """Three-way comparison; zero only when both tasks share an id."""
    ka, kb = sort_key(a, now), sort_key(b, now)
    return (ka > kb) - (ka < kb)


def comparator(now: datetime) -> Callable[[Task, Task], int]:
    """Return a two-argument comparator bound to *now*."""
    return lambda a, b: compare(a, b, now)


def sort_tasks(tasks: Iterable[Task], now: Optional[datetime] = None) -> list[Task]:
    now = now or utc_now()
    return sorted(tasks, key=lambda t: sort_key(t, now))


def partition(
    tasks: Iterable[Task], now: Optional[datetime] = None
) -> tuple[list[Task], list[Task]]:
    """Split into (pending, completed), each independently sorted."""
    now = now or utc_now()
    pending: list[Task] = []
    done: list[Task] = []
    for task in tasks:
        (done if task.completed else pending).append(task)
    return sort_tasks(pending, now), sort_tasks(done, now)


def next_overdue_boundary(tasks: Iterable[Task], now: datetime) -> Optional[datetime]:
    """Earliest instant after which some open task flips to overdue.

    An ordering computed at *now* stays valid until the clock passes this
    boundary. Returns None when no open task can become overdue.
    """
    upcoming = [
        due
        for due in (effective_due(t) for t in tasks if not t.completed)
        if due is not None and due >= now
    ]
    return min(upcoming) if upcoming else None


"""Tests for the task ordering rules."""

import random
from datetime import datetime, timedelta, timezone
from functools import cmp_to_key

import pytest

from fakes import NOW, make_task
from taskboard.engine.ordering import (
    compare,
    comparator,
    effective_due,
    is_due_soon,
    is_overdue,
    next_overdue_boundary,
    partition,
    sort_tasks,
)
from taskboard.models import TaskPriority

UTC = timezone.utc


def _ids(tasks):
    return [t.id for t in tasks]


class TestOverdue:
    def test_overdue_sorts_before_future_due(self):
        a = make_task(1, due_date=NOW - timedelta(days=1))
        b = make_task(2, due_date=NOW + timedelta(days=7))
        assert compare(a, b, NOW) < 0
        assert compare(b, a, NOW) > 0

    def test_completed_task_is_never_overdue(self):
        task = make_task(1, due_date=NOW - timedelta(days=3), completed=True)
        assert is_overdue(task, NOW) is False

    def test_task_without_due_date_is_not_overdue(self):
        assert is_overdue(make_task(1), NOW) is False

    def test_due_exactly_now_is_not_overdue(self):
        task = make_task(1, due_date=NOW.replace(second=21))
        assert is_overdue(task, task.due_date) is False


class TestDateOnlyDueDates:
    def test_midnight_due_counts_as_end_of_day(self):
        task = make_task(1, due_date=datetime(2025, 1, 1, tzinfo=UTC))
        assert effective_due(task) == datetime(2025, 1, 1, 23, 59, 59, 999999, tzinfo=UTC)

    def test_not_overdue_during_the_due_day(self):
        task = make_task(1, due_date=datetime(2025, 1, 1, tzinfo=UTC))
        assert is_overdue(task, datetime(2025, 1, 1, 18, 0, tzinfo=UTC)) is False

    def test_overdue_once_the_day_is_over(self):
        task = make_task(1, due_date=datetime(2025, 1, 1, tzinfo=UTC))
        assert is_overdue(task, datetime(2025, 1, 2, tzinfo=UTC)) is True

    def test_timed_due_keeps_its_instant(self):
        due = datetime(2025, 1, 1, 9, 30, tzinfo=UTC)
        assert effective_due(make_task(1, due_date=due)) == due


class TestSortPolicy:
    def test_due_date_outranks_priority(self):
        c = make_task(3, priority="critical")
        d = make_task(4, due_date=NOW + timedelta(days=1), priority="low")
        assert _ids(sort_tasks([c, d], NOW)) == [4, 3]

    def test_overdue_with_date_beats_no_date_despite_priority(self):
        first = make_task(1, title="A", due_date=datetime(2025, 1, 1, tzinfo=UTC), priority="low")
        second = make_task(2, title="B", priority="critical")
        now = datetime(2025, 6, 1, tzinfo=UTC)
        assert _ids(sort_tasks([second, first], now)) == [1, 2]

    def test_earlier_due_date_first(self):
        later = make_task(1, due_date=NOW + timedelta(days=5))
        sooner = make_task(2, due_date=NOW + timedelta(days=2))
        assert _ids(sort_tasks([later, sooner], NOW)) == [2, 1]

    def test_priority_descending_on_same_due_date(self):
        due = NOW + timedelta(days=2)
        tasks = [
            make_task(1, due_date=due),
            make_task(2, due_date=due, priority="low"),
            make_task(3, due_date=due, priority="critical"),
            make_task(4, due_date=due, priority="medium"),
            make_task(5, due_date=due, priority="high"),
        ]
        assert _ids(sort_tasks(tasks, NOW)) == [3, 5, 4, 2, 1]

    def test_id_breaks_remaining_ties(self):
        tasks = [make_task(9), make_task(2), make_task(5)]
        assert _ids(sort_tasks(tasks, NOW)) == [2, 5, 9]

    def test_placeholders_sort_after_server_ids_by_timestamp(self):
        tasks = [
            make_task("tmp-1700000000500"),
            make_task(7),
            make_task("tmp-1700000000001"),
        ]
        assert _ids(sort_tasks(tasks, NOW)) == [7, "tmp-1700000000001", "tmp-1700000000500"]

    def test_empty_tasks_ordered_by_id_only(self):
        tasks = [make_task(i) for i in (3, 1, 2)]
        assert _ids(sort_tasks(tasks, NOW)) == [1, 2, 3]


class TestTotality:
    @pytest.fixture
    def tasks(self):
        return [
            make_task(1, due_date=NOW - timedelta(days=2), priority="low"),
            make_task(2, due_date=NOW - timedelta(days=2), priority="high"),
            make_task(3, due_date=NOW + timedelta(hours=3)),
            make_task(4, priority="critical"),
            make_task(5),
            make_task(6, due_date=NOW + timedelta(hours=3), completed=True),
            make_task("tmp-1700000000000", priority="medium"),
            make_task(7, due_date=datetime(2023, 11, 14, tzinfo=UTC)),
        ]

    def test_compare_is_antisymmetric(self, tasks):
        for a in tasks:
            for b in tasks:
                if a.id == b.id:
                    assert compare(a, b, NOW) == 0
                else:
                    assert compare(a, b, NOW) == -compare(b, a, NOW) != 0

    def test_sorting_is_deterministic(self, tasks):
        expected = _ids(sort_tasks(tasks, NOW))
        rng = random.Random(42)
        for _ in range(10):
            shuffled = list(tasks)
            rng.shuffle(shuffled)
            assert _ids(sort_tasks(shuffled, NOW)) == expected

    def test_comparator_matches_sort_key(self, tasks):
        by_cmp = sorted(tasks, key=cmp_to_key(comparator(NOW)))
        assert _ids(by_cmp) == _ids(sort_tasks(tasks, NOW))


class TestDueSoon:
    def test_due_within_horizon(self):
        assert is_due_soon(make_task(1, due_date=NOW + timedelta(days=1)), NOW) is True

    def test_due_beyond_horizon(self):
        assert is_due_soon(make_task(1, due_date=NOW + timedelta(days=3)), NOW) is False

    def test_custom_horizon(self):
        task = make_task(1, due_date=NOW + timedelta(days=3))
        assert is_due_soon(task, NOW, days=5) is True

    def test_overdue_and_completed_are_not_due_soon(self):
        overdue = make_task(1, due_date=NOW - timedelta(hours=1))
        done = make_task(2, due_date=NOW + timedelta(hours=1), completed=True)
        assert is_due_soon(overdue, NOW) is False
        assert is_due_soon(done, NOW) is False


class TestPartition:
    def test_splits_and_sorts_each_side(self):
        tasks = [
            make_task(1, completed=True),
            make_task(2, priority=TaskPriority.high),
            make_task(3, status="completed", due_date=NOW - timedelta(days=1)),
            make_task(4, due_date=NOW + timedelta(days=1)),
        ]
        pending, done = partition(tasks, NOW)
        assert _ids(pending) == [4, 2]
        assert _ids(done) == [3, 1]


class TestNextOverdueBoundary:
    def test_earliest_upcoming_due_among_open_tasks(self):
        soon = NOW + timedelta(hours=2)
        tasks = [
            make_task(1, due_date=NOW - timedelta(days=1)),
            make_task(2, due_date=NOW + timedelta(days=1)),
            make_task(3, due_date=soon),
            make_task(4, due_date=NOW + timedelta(minutes=5), completed=True),
        ]
        assert next_overdue_boundary(tasks, NOW) == soon

    def test_none_when_nothing_can_become_overdue(self):
        assert next_overdue_boundary([make_task(1)], NOW) is None

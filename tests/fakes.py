"""Test doubles shared across the engine tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from taskboard.models import Task, TaskId

# Epoch 1_700_000_000: placeholder ids created at this instant are "tmp-1700000000000".
NOW = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
SERVER_TIME = datetime(2023, 11, 14, 22, 30, tzinfo=timezone.utc)


def make_task(task_id: TaskId = 1, **fields: Any) -> Task:
    return Task.model_validate({"id": task_id, "title": f"Task {task_id}", **fields})


class FakeGateway:
    """In-memory RemoteTaskGateway.

    Behaves like the real server by default. ``fail`` queues an exception
    for the next call of a method; ``gate`` makes the next call of a method
    wait until the returned event is set.
    """

    def __init__(self, tasks: tuple[Task, ...] = ()) -> None:
        self.server: dict[TaskId, Task] = {t.id: t for t in tasks}
        self.calls: list[tuple[Any, ...]] = []
        self._failures: dict[str, list[Optional[BaseException]]] = {}
        self._gates: dict[str, list[asyncio.Event]] = {}
        self._next_id = 100
        self._ticks = 0

    def fail(self, method: str, error: BaseException) -> None:
        self._failures.setdefault(method, []).append(error)

    def allow(self, method: str) -> None:
        """Let the next call of *method* succeed ahead of queued failures."""
        self._failures.setdefault(method, []).append(None)

    def gate(self, method: str) -> asyncio.Event:
        event = asyncio.Event()
        self._gates.setdefault(method, []).append(event)
        return event

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        failures = self._failures.get(method)
        failure = failures.pop(0) if failures else None
        gates = self._gates.get(method)
        if gates:
            await gates.pop(0).wait()
        if failure is not None:
            raise failure

    def _stamp(self) -> datetime:
        self._ticks += 1
        return SERVER_TIME + timedelta(seconds=self._ticks)

    # -- RemoteTaskGateway ---------------------------------------------------

    async def list_tasks(self) -> list[Task]:
        await self._enter("list_tasks")
        return list(self.server.values())

    async def create_task(self, fields: Mapping[str, Any]) -> Task:
        await self._enter("create_task", dict(fields))
        task_id = self._next_id
        self._next_id += 1
        stamp = self._stamp()
        task = Task.model_validate(
            {**fields, "id": task_id, "creation_date": stamp, "updated_at": stamp}
        )
        self.server[task_id] = task
        return task

    async def update_task(self, task_id: TaskId, fields: Mapping[str, Any]) -> Task:
        await self._enter("update_task", task_id, dict(fields))
        return self._patch(task_id, fields)

    async def toggle_completion(self, task_id: TaskId, completed: bool) -> Task:
        await self._enter("toggle_completion", task_id, completed)
        return self._patch(
            task_id, {"completed": completed, "status": "completed" if completed else "pending"}
        )

    async def delete_task(self, task_id: TaskId) -> None:
        await self._enter("delete_task", task_id)
        self.server.pop(task_id, None)

    def _patch(self, task_id: TaskId, fields: Mapping[str, Any]) -> Task:
        base = self.server[task_id]
        data: dict[str, Any] = {**base.model_dump(), **fields, "updated_at": self._stamp()}
        if "completed" in fields:
            data["completion_date"] = SERVER_TIME if fields["completed"] else None
        task = Task.model_validate(data)
        self.server[task_id] = task
        return task


class Recorder:
    """Collects mutations handed to coordinator callbacks."""

    def __init__(self) -> None:
        self.mutations: list[Any] = []

    def __call__(self, mutation: Any) -> None:
        self.mutations.append(mutation)


def server_copy(task: Task, **changes: Any) -> Task:
    """A confirmed server record derived from *task*."""
    return Task.model_validate({**task.model_dump(), **changes})


"""CRUD endpoints for tasks. Every write is published on the push channel."""

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from taskboard.models import TaskPriority, TaskStatus, as_utc
from taskboard.push import TASK_CREATED, TASK_UPDATED, LocalPushChannel, PushChannel
from taskboard.server.database import get_session
from taskboard.server.models import Task, TaskCreate, TaskUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

_DATETIME_FIELDS = ("due_date", "start_date", "completion_date")

_channel = LocalPushChannel()


def get_push_channel() -> PushChannel:
    """Channel task events are published to."""
    return _channel


def _end_of_day(value: Optional[datetime]) -> Optional[datetime]:
    """A due date at midnight carries only a date and is due at the end of it."""
    if value is not None and value.time() == time(0):
        return value + timedelta(days=1, microseconds=-1)
    return value


def _prepare(data: dict[str, Any]) -> dict[str, Any]:
    cleaned = dict(data)
    if "title" in cleaned:
        title = (cleaned["title"] or "").strip()
        if not title:
            raise HTTPException(status_code=422, detail="Title must not be empty")
        cleaned["title"] = title
    for field in _DATETIME_FIELDS:
        if field in cleaned:
            cleaned[field] = as_utc(cleaned[field])
    if "due_date" in cleaned:
        cleaned["due_date"] = _end_of_day(cleaned["due_date"])
    return cleaned


def _settle_completion(
    task: Task, data: dict[str, Any], was_done: bool, now: datetime
) -> None:
    """Keep completed, status and completion_date consistent after a write.

    ``completed`` wins over ``status`` when both are given. Completing
    stamps the completion date unless one was supplied; reopening clears
    it and moves a completed status back to pending.
    """
    if data.get("completed") is not None:
        done = bool(data["completed"])
    elif data.get("status") is not None:
        done = data["status"] == TaskStatus.completed
    else:
        return

    task.completed = done
    if done:
        task.status = TaskStatus.completed
        if data.get("completion_date") is None:
            keep = was_done and task.completion_date is not None
            task.completion_date = task.completion_date if keep else now
    else:
        if task.status == TaskStatus.completed:
            task.status = TaskStatus.pending
        task.completion_date = None


def _wire(task: Task) -> dict[str, Any]:
    return task.model_dump(mode="json")


@router.get("")
def list_tasks(
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    session: Session = Depends(get_session),
) -> list[Task]:
    """List all tasks, optionally filtered by status and/or priority."""
    statement = select(Task)
    if status is not None:
        statement = statement.where(Task.status == status)
    if priority is not None:
        statement = statement.where(Task.priority == priority)
    statement = statement.order_by(Task.id)
    return list(session.exec(statement).all())


@router.get("/{task_id}")
def get_task(task_id: int, session: Session = Depends(get_session)) -> Task:
    task = session.get(Task, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.post("", status_code=201)
def create_task(
    body: TaskCreate,
    session: Session = Depends(get_session),
    channel: PushChannel = Depends(get_push_channel),
) -> Task:
    """Create a task and announce it with ``task_created``."""
    now = datetime.now(timezone.utc)
    data = _prepare(body.model_dump())
    task = Task.model_validate({**data, "creation_date": now, "updated_at": now})
    done = data["completed"] or data["status"] == TaskStatus.completed
    _settle_completion(task, {**data, "completed": done}, False, now)

    session.add(task)
    session.commit()
    session.refresh(task)
    logger.info("Created task %s", task.id)
    channel.publish(TASK_CREATED, {"task": _wire(task)})
    return task


@router.patch("/{task_id}")
def update_task(
    task_id: int,
    body: TaskUpdate,
    session: Session = Depends(get_session),
    channel: PushChannel = Depends(get_push_channel),
) -> Task:
    """Update an existing task and announce it with ``task_updated``."""
    task = session.get(Task, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")

    now = datetime.now(timezone.utc)
    was_done = task.completed
    data = _prepare(body.model_dump(exclude_unset=True))
    for key, value in data.items():
        if key != "completed":
            setattr(task, key, value)
    _settle_completion(task, data, was_done, now)
    task.updated_at = now

    session.add(task)
    session.commit()
    session.refresh(task)
    logger.info("Updated task %s: %s", task.id, sorted(data))
    channel.publish(
        TASK_UPDATED,
        {"action": "updated", "task": _wire(task), "timestamp": now.isoformat()},
    )
    return task


@router.delete("/{task_id}", status_code=204)
def delete_task(
    task_id: int,
    session: Session = Depends(get_session),
    channel: PushChannel = Depends(get_push_channel),
) -> None:
    task = session.get(Task, task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    session.delete(task)
    session.commit()
    logger.info("Deleted task %s", task_id)
    now = datetime.now(timezone.utc)
    channel.publish(
        TASK_UPDATED,
        {"action": "deleted", "task_id": task_id, "timestamp": now.isoformat()},
    )

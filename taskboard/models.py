"""Task models shared by the engine, the gateway and the push channel."""

from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PLACEHOLDER_PREFIX = "tmp-"

# Server ids are integers; optimistic creates carry a "tmp-<epoch ms>" string.
TaskId = Union[int, str]


class TaskStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    blocked = "blocked"
    completed = "completed"
    cancelled = "cancelled"


class TaskPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"

    @property
    def rank(self) -> int:
        """Ordinal rank; higher is more urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.low: 1,
    TaskPriority.medium: 2,
    TaskPriority.high: 3,
    TaskPriority.critical: 4,
}


def priority_rank(priority: Optional[TaskPriority]) -> int:
    """Return the rank of *priority*, with an absent priority ranked 0."""
    return 0 if priority is None else priority.rank


def is_placeholder_id(task_id: TaskId) -> bool:
    return isinstance(task_id, str) and task_id.startswith(PLACEHOLDER_PREFIX)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return *value* as an aware UTC datetime. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_date_only(value: datetime) -> bool:
    """True when *value* carries only a calendar date (midnight time component)."""
    return value.time() == time(0)


class Reference(BaseModel):
    """Display-only pointer to a project or user, resolved from cached data."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str


class _TaskValidators(BaseModel):
    """Validators shared by the full record and the input models."""

    @field_validator("title", mode="after", check_fields=False)
    @classmethod
    def _title_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("title must not be empty")
        return v

    @field_validator(
        "due_date",
        "start_date",
        "completion_date",
        "creation_date",
        "updated_at",
        mode="after",
        check_fields=False,
    )
    @classmethod
    def _dates_in_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class Task(_TaskValidators):
    """A task record as held by the client.

    Immutable: every change goes through ``model_copy`` or a fresh
    ``model_validate``. ``completed`` and ``status`` are kept paired on
    every construction.
    """

    model_config = ConfigDict(frozen=True)

    id: TaskId
    title: str = Field(max_length=200)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.pending
    completed: bool = False
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    creation_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    project_id: Optional[int] = None
    assigned_to: Optional[int] = None

    project: Optional[Reference] = Field(default=None, exclude=True)
    assigned_user: Optional[Reference] = Field(default=None, exclude=True)
    optimistic: bool = Field(default=False, exclude=True)
    revision: int = Field(default=0, exclude=True)

    @field_validator("id", mode="before")
    @classmethod
    def _check_id(cls, v: Any) -> Any:
        if not isinstance(v, str):
            return v
        if v.isdigit():
            return int(v)
        if is_placeholder_id(v) and v[len(PLACEHOLDER_PREFIX):].isdigit():
            return v
        raise ValueError(f"invalid task id: {v!r}")

    @model_validator(mode="before")
    @classmethod
    def _pair_completion(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        status = data.get("status")
        if status is not None and TaskStatus(status) is TaskStatus.completed:
            return {**data, "completed": True}
        if data.get("completed"):
            return {**data, "status": TaskStatus.completed}
        return data

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_id(self.id)


class TaskDraft(_TaskValidators):
    """Validated input for creating a task."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(max_length=200)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.pending
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    project_id: Optional[int] = None
    assigned_to: Optional[int] = None

    def payload(self) -> dict[str, Any]:
        """JSON body for a create request."""
        return self.model_dump(mode="json", exclude_none=True)


class TaskChanges(_TaskValidators):
    """Validated partial update. Only explicitly provided fields are sent.

    When only one of ``completed``/``status`` is provided the other is
    derived so the pair never diverges.
    """

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    completed: Optional[bool] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    project_id: Optional[int] = None
    assigned_to: Optional[int] = None

    @model_validator(mode="before")
    @classmethod
    def _pair_completion(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        has_status = data.get("status") is not None
        has_completed = data.get("completed") is not None
        if has_status:
            done = TaskStatus(data["status"]) is TaskStatus.completed
            return {**data, "completed": done}
        if has_completed:
            status = TaskStatus.completed if data["completed"] else TaskStatus.pending
            return {**data, "status": status}
        return data

    @field_validator("title", mode="before")
    @classmethod
    def _title_not_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("title cannot be cleared")
        return v

    def payload(self) -> dict[str, Any]:
        """JSON body for a PATCH request."""
        return self.model_dump(mode="json", exclude_unset=True)

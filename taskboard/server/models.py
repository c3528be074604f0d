"""Task table and request schemas for the reference backend.

Datetimes are written as aware UTC values.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel

from taskboard.models import TaskPriority, TaskStatus


class TaskBase(SQLModel):
    """Fields a client may set on create."""
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None)
    status: TaskStatus = Field(default=TaskStatus.pending)
    priority: Optional[TaskPriority] = Field(default=None)
    due_date: Optional[datetime] = Field(default=None)
    start_date: Optional[datetime] = Field(default=None)
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    project_id: Optional[int] = Field(default=None)
    assigned_to: Optional[int] = Field(default=None)


class Task(TaskBase, table=True):
    """Task database table."""
    id: Optional[int] = Field(default=None, primary_key=True)
    completed: bool = Field(default=False)
    completion_date: Optional[datetime] = Field(default=None)
    creation_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TaskCreate(TaskBase):
    """Schema for creating a task. Title is required, rest have defaults."""
    completed: bool = False
    completion_date: Optional[datetime] = None


class TaskUpdate(SQLModel):
    """Schema for a partial update. Only provided fields are changed."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    completed: Optional[bool] = None
    completion_date: Optional[datetime] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    project_id: Optional[int] = None
    assigned_to: Optional[int] = None

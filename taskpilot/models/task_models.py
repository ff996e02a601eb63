"""Pydantic models for task persistence and API responses."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from taskpilot.models.routing_models import WorkerType


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    pending = "pending"
    running = "running"
    awaiting_confirmation = "awaiting_confirmation"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.succeeded, TaskStatus.failed})

# Legal (from -> to) moves. Anything not listed is an InvalidTransition.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.pending: frozenset({TaskStatus.running, TaskStatus.failed}),
    TaskStatus.running: frozenset(
        {TaskStatus.succeeded, TaskStatus.failed, TaskStatus.awaiting_confirmation}
    ),
    TaskStatus.awaiting_confirmation: frozenset({TaskStatus.running, TaskStatus.failed}),
    TaskStatus.succeeded: frozenset(),
    TaskStatus.failed: frozenset(),
}


def sources_for(target: TaskStatus) -> frozenset[TaskStatus]:
    """Statuses a task may currently hold for a move to `target` to be legal."""
    return frozenset(src for src, targets in ALLOWED_TRANSITIONS.items() if target in targets)


class Task(BaseModel):
    """The unit of queued work."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str = Field(..., min_length=1)
    session_id: str | None = None
    worker_type: WorkerType
    task_kind: str = Field(..., min_length=1)
    status: TaskStatus = TaskStatus.pending
    progress_percent: int = Field(default=0, ge=0, le=100)
    stage: str | None = None
    input_parameters: dict[str, Any] = Field(default_factory=dict)
    original_message: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    attempt_count: int = Field(default=0, ge=0)
    confirmation_rounds: int = Field(default=0, ge=0)
    cancel_requested: bool = False
    result: Any | None = None
    error_message: str | None = None

    @model_validator(mode="after")
    def _terminal_has_one_outcome(self) -> "Task":
        if self.status.is_terminal and (self.result is None) == (self.error_message is None):
            raise ValueError("terminal task must carry exactly one of result / error_message")
        return self


class TaskReadResponse(BaseModel):
    task_id: str
    user_id: str
    worker_type: WorkerType
    task_kind: str
    status: TaskStatus
    progress_percent: int
    stage: str | None = None
    attempt_count: int
    created_at: datetime
    completed_at: datetime | None = None
    result: Any | None = None
    error_message: str | None = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskReadResponse":
        return cls(
            task_id=task.id,
            user_id=task.user_id,
            worker_type=task.worker_type,
            task_kind=task.task_kind,
            status=task.status,
            progress_percent=task.progress_percent,
            stage=task.stage,
            attempt_count=task.attempt_count,
            created_at=task.created_at,
            completed_at=task.completed_at,
            result=task.result,
            error_message=task.error_message,
        )


class QueueStats(BaseModel):
    """Read-only per-worker-type counters; observability only."""

    worker_type: WorkerType
    pending: int = 0
    running: int = 0
    awaiting_confirmation: int = 0
    succeeded: int = 0
    failed: int = 0
    paused: bool = False
    concurrency: int

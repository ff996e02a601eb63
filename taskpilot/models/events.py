"""Pydantic payloads for task lifecycle events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from taskpilot.models.confirmation_models import SuggestedAnswer
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import utc_now


class TaskEvent(BaseModel):
    """Fields carried by every event."""

    task_id: str = Field(..., min_length=1)
    user_id: str
    worker_type: WorkerType
    occurred_at: datetime = Field(default_factory=utc_now)


class TaskEnqueued(TaskEvent):
    kind: Literal["enqueued"] = "enqueued"
    task_kind: str
    resumed: bool = False


class TaskStarted(TaskEvent):
    kind: Literal["started"] = "started"
    attempt: int
    acknowledgement: str | None = None


class TaskProgressed(TaskEvent):
    kind: Literal["progressed"] = "progressed"
    percent: int = Field(..., ge=0, le=100)
    stage: str


class TaskTerminal(TaskEvent):
    kind: Literal["terminal"] = "terminal"
    status: Literal["succeeded", "failed"]
    result: Any | None = None
    error_message: str | None = None
    summary: str | None = None
    attempt_count: int = 0


class ConfirmationRequested(TaskEvent):
    kind: Literal["confirmation_requested"] = "confirmation_requested"
    question: str
    suggested_answers: list[SuggestedAnswer] = Field(default_factory=list)
    clarification: bool = False


class ConfirmationResolved(TaskEvent):
    kind: Literal["confirmation_resolved"] = "confirmation_resolved"
    answer_key: str
    value: Any


LifecycleEvent = Union[
    TaskEnqueued,
    TaskStarted,
    TaskProgressed,
    TaskTerminal,
    ConfirmationRequested,
    ConfirmationResolved,
]

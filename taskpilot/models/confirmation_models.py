"""Pydantic models for suspended tasks awaiting a user answer."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import utc_now


class SuggestedAnswer(BaseModel):
    """One candidate answer offered with the question."""

    value: Any
    label: str | None = None
    rationale: str | None = None

    @property
    def display(self) -> str:
        return self.label or str(self.value)


class ConfirmationContext(BaseModel):
    """A task paused pending a clarifying answer.

    Keyed by (user_id, task_id); `task_id` is a back-reference, the task itself
    is owned by the task store.
    """

    task_id: str
    user_id: str
    worker_type: WorkerType
    pending_question: str = Field(..., min_length=1)
    suggested_answers: list[SuggestedAnswer] = Field(default_factory=list)
    answer_key: str = Field(..., min_length=1)
    partial_state: dict[str, Any] = Field(default_factory=dict)
    clarifications_asked: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class AnswerExtraction(BaseModel):
    """Result of mapping a free-text answer to a concrete value."""

    value: Any | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    method: str = "none"

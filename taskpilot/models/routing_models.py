"""Pydantic models for routing decisions (Classifier)."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WorkerType(str, Enum):
    router = "router"
    prospecting = "prospecting"
    research = "research"
    communication = "communication"


class RoutingDecision(BaseModel):
    """Classification output for one inbound message.

    `target_worker_type == router` means the router answers the message itself
    and no task is created.
    """

    target_worker_type: WorkerType = Field(...)
    task_kind: str = Field(..., min_length=1)
    # Static per predicate category; a coarse signal, not a calibrated probability.
    confidence: float = Field(..., ge=0.0, le=1.0)
    extracted_parameters: dict[str, Any] = Field(default_factory=dict)
    original_message: str
    rationale: str | None = None

    @property
    def creates_task(self) -> bool:
        return self.target_worker_type != WorkerType.router

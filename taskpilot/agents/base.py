"""Base interface for worker implementations.

Every worker type implements one operation, `run(task, progress) -> Outcome`.
Retries re-run the whole body with the same `input_parameters`, so `run` must
be safe to repeat: idempotent, or at least non-corrupting.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar, Protocol, TypeVar

from taskpilot.core.settings import Settings
from taskpilot.models.outcomes import Outcome
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import Task
from taskpilot.models.task_parameters import TaskParameters, decode_parameters

P = TypeVar("P", bound=TaskParameters)


class ProgressReporter(Protocol):
    async def __call__(self, percent: int, stage: str) -> None: ...


class BaseWorker(ABC):
    """Base interface for all workers."""

    worker_type: ClassVar[WorkerType]
    task_kinds: ClassVar[frozenset[str]] = frozenset()
    display_name: ClassVar[str] = "Worker"

    @property
    def fallback_acknowledgement(self) -> str:
        return f"{self.display_name} is processing your request..."

    def fallback_summary(self, succeeded: bool) -> str:
        if succeeded:
            return f"{self.display_name} completed your request successfully!"
        return f"{self.display_name} encountered an issue while processing your request."

    def check_available(self, settings: Settings | None) -> str | None:
        """Return a reason string when an external dependency is missing.

        Called once at registration; a non-None result makes every run of this
        worker type end as `Unavailable` without calling `run`.
        """
        return None

    @staticmethod
    def parameters(task: Task, schema: type[P]) -> P:
        decoded = decode_parameters(task.task_kind, task.input_parameters)
        if not isinstance(decoded, schema):
            decoded = schema.model_validate(task.input_parameters)
        return decoded

    @abstractmethod
    async def run(self, task: Task, progress: ProgressReporter) -> Outcome:
        """Execute the task and return a Success / Failure / NeedsConfirmation."""

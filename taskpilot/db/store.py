"""Persistence contract for tasks and confirmation contexts.

The transition-legality table in `taskpilot.models.task_models` is the only
locking discipline: every backend performs the status check and the write as
one atomic step, so two executors racing on a resumed task cannot both move it
to `running`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from taskpilot.models.confirmation_models import ConfirmationContext
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import ALLOWED_TRANSITIONS, Task, TaskStatus


class TaskNotFound(LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"task not found: {task_id}")
        self.task_id = task_id


class InvalidTransition(RuntimeError):
    """A status move the legality table forbids.

    Indicates two executors raced on one task id (or a programming error).
    """

    def __init__(self, task_id: str, current: TaskStatus | None, target: TaskStatus) -> None:
        current_label = current.value if current is not None else "unknown"
        super().__init__(f"task {task_id}: {current_label} -> {target.value} not allowed")
        self.task_id = task_id
        self.current = current
        self.target = target


class ConfirmationAlreadyOpen(RuntimeError):
    def __init__(self, user_id: str, task_id: str) -> None:
        super().__init__(f"confirmation already open for user={user_id} task={task_id}")
        self.user_id = user_id
        self.task_id = task_id


def check_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(task_id, current, target)


def check_outcome(target: TaskStatus, result: Any | None, error: str | None) -> None:
    if target.is_terminal and (result is None) == (error is None):
        raise ValueError(f"{target.value} requires exactly one of result / error")


@runtime_checkable
class TaskStore(Protocol):
    async def create(self, task: Task) -> str: ...

    async def get(self, task_id: str) -> Task: ...

    async def update_progress(self, task_id: str, percent: int, stage: str) -> Task: ...

    async def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        *,
        result: Any | None = None,
        error: str | None = None,
    ) -> Task: ...

    async def increment_attempt(self, task_id: str) -> Task: ...

    async def merge_parameters(self, task_id: str, parameters: dict[str, Any]) -> Task: ...

    async def mark_confirmation_requested(self, task_id: str) -> Task: ...

    async def request_cancel(self, task_id: str) -> Task: ...

    async def list_by_user(self, user_id: str, *, limit: int = 50) -> list[Task]: ...

    async def list_by_status(
        self, worker_type: WorkerType, status: TaskStatus, *, limit: int = 1000
    ) -> list[Task]: ...

    async def count_by_status(self, worker_type: WorkerType) -> dict[TaskStatus, int]: ...


@runtime_checkable
class ConfirmationStore(Protocol):
    async def open(self, context: ConfirmationContext) -> None: ...

    async def get(self, user_id: str, task_id: str) -> ConfirmationContext | None: ...

    async def list_open(self, user_id: str) -> list[ConfirmationContext]: ...

    async def list_expired(self, now: datetime) -> list[ConfirmationContext]: ...

    async def replace(self, context: ConfirmationContext) -> None: ...

    async def delete(self, user_id: str, task_id: str) -> bool: ...

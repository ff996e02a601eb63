"""In-process store backends (local runs and tests)."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime
from typing import Any

from taskpilot.db.store import (
    ConfirmationAlreadyOpen,
    TaskNotFound,
    check_outcome,
    check_transition,
)
from taskpilot.models.confirmation_models import ConfirmationContext
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import Task, TaskStatus, utc_now


class InMemoryTaskStore:
    """Dict-backed task store; one lock serialises every read-modify-write."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def create(self, task: Task) -> str:
        async with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"duplicate task id: {task.id}")
            self._tasks[task.id] = task.model_copy(deep=True)
        return task.id

    async def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task.model_copy(deep=True)

    async def _update(self, task_id: str, **changes: Any) -> Task:
        current = self._tasks.get(task_id)
        if current is None:
            raise TaskNotFound(task_id)
        updated = current.model_copy(update={**changes, "updated_at": utc_now()}, deep=True)
        self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    async def update_progress(self, task_id: str, percent: int, stage: str) -> Task:
        async with self._lock:
            current = await self.get(task_id)
            percent = max(current.progress_percent, min(100, max(0, int(percent))))
            return await self._update(task_id, progress_percent=percent, stage=stage)

    async def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        *,
        result: Any | None = None,
        error: str | None = None,
    ) -> Task:
        check_outcome(new_status, result, error)
        async with self._lock:
            current = await self.get(task_id)
            check_transition(task_id, current.status, new_status)
            changes: dict[str, Any] = {"status": new_status}
            if new_status.is_terminal:
                changes.update(result=result, error_message=error, completed_at=utc_now())
            return await self._update(task_id, **changes)

    async def increment_attempt(self, task_id: str) -> Task:
        async with self._lock:
            current = await self.get(task_id)
            return await self._update(task_id, attempt_count=current.attempt_count + 1)

    async def merge_parameters(self, task_id: str, parameters: dict[str, Any]) -> Task:
        async with self._lock:
            current = await self.get(task_id)
            merged = {**current.input_parameters, **parameters}
            return await self._update(task_id, input_parameters=merged)

    async def mark_confirmation_requested(self, task_id: str) -> Task:
        async with self._lock:
            current = await self.get(task_id)
            return await self._update(task_id, confirmation_rounds=current.confirmation_rounds + 1)

    async def request_cancel(self, task_id: str) -> Task:
        async with self._lock:
            return await self._update(task_id, cancel_requested=True)

    async def list_by_user(self, user_id: str, *, limit: int = 50) -> list[Task]:
        tasks = sorted(
            (t for t in self._tasks.values() if t.user_id == user_id),
            key=lambda t: t.created_at,
        )
        return [t.model_copy(deep=True) for t in tasks[:limit]]

    async def list_by_status(
        self, worker_type: WorkerType, status: TaskStatus, *, limit: int = 1000
    ) -> list[Task]:
        tasks = sorted(
            (t for t in self._tasks.values() if t.worker_type == worker_type and t.status == status),
            key=lambda t: t.created_at,
        )
        return [t.model_copy(deep=True) for t in tasks[:limit]]

    async def count_by_status(self, worker_type: WorkerType) -> dict[TaskStatus, int]:
        counts = Counter(t.status for t in self._tasks.values() if t.worker_type == worker_type)
        return {status: counts.get(status, 0) for status in TaskStatus}


class InMemoryConfirmationStore:
    def __init__(self) -> None:
        self._contexts: dict[tuple[str, str], ConfirmationContext] = {}
        self._lock = asyncio.Lock()

    async def open(self, context: ConfirmationContext) -> None:
        key = (context.user_id, context.task_id)
        async with self._lock:
            if key in self._contexts:
                raise ConfirmationAlreadyOpen(context.user_id, context.task_id)
            self._contexts[key] = context.model_copy(deep=True)

    async def get(self, user_id: str, task_id: str) -> ConfirmationContext | None:
        ctx = self._contexts.get((user_id, task_id))
        return ctx.model_copy(deep=True) if ctx is not None else None

    async def list_open(self, user_id: str) -> list[ConfirmationContext]:
        contexts = [c for (uid, _), c in self._contexts.items() if uid == user_id]
        return [c.model_copy(deep=True) for c in sorted(contexts, key=lambda c: c.created_at)]

    async def list_expired(self, now: datetime) -> list[ConfirmationContext]:
        expired = [c for c in self._contexts.values() if c.is_expired(now)]
        return [c.model_copy(deep=True) for c in sorted(expired, key=lambda c: c.created_at)]

    async def replace(self, context: ConfirmationContext) -> None:
        async with self._lock:
            self._contexts[(context.user_id, context.task_id)] = context.model_copy(deep=True)

    async def delete(self, user_id: str, task_id: str) -> bool:
        async with self._lock:
            return self._contexts.pop((user_id, task_id), None) is not None

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

from taskpilot.agents.base import BaseWorker
from taskpilot.core.container import build_orchestrator
from taskpilot.core.settings import Settings
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import Task


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "MONGODB_URL": "mongodb://localhost:27017",
        "REDIS_URL": "redis://localhost:6379",
        "STORE_BACKEND": "memory",
        "GOOGLE_API_KEY": None,
        "QUOTA_TASKS_PER_PERIOD": None,
        "NOTIFICATIONS_ENABLED": False,
        "PROSPECT_SOURCE_URL": None,
        "RESEARCH_SOURCE_URL": None,
        "CONFIRMATION_SWEEP_INTERVAL_S": 0,
    }
    values.update(overrides)
    return Settings(**values)


def make_task(**overrides: Any) -> Task:
    values: dict[str, Any] = {
        "user_id": "u1",
        "worker_type": WorkerType.communication,
        "task_kind": "reminder",
        "original_message": "remind me",
    }
    values.update(overrides)
    return Task(**values)


class SleepRecorder:
    """Stands in for asyncio.sleep in the pool; records backoff delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class ScriptedWorker(BaseWorker):
    """Returns (or raises) the scripted outcomes in order; the last one repeats."""

    worker_type = WorkerType.communication
    task_kinds = frozenset({"reminder"})
    display_name = "Scripted"

    def __init__(self, *outcomes: Any, worker_type: WorkerType | None = None) -> None:
        self._outcomes = list(outcomes)
        if worker_type is not None:
            self.worker_type = worker_type
        self.calls: list[Task] = []

    async def run(self, task, progress):
        self.calls.append(task)
        item = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item(task, progress)
        return item


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class EventLog:
    def __init__(self) -> None:
        self.events: list[Any] = []

    async def __call__(self, event: Any) -> None:
        self.events.append(event)

    def kinds(self, task_id: str | None = None) -> list[str]:
        return [e.kind for e in self.events if task_id is None or e.task_id == task_id]

    def of(self, kind: str) -> list[Any]:
        return [e for e in self.events if e.kind == kind]


async def build_test_orchestrator(*workers: BaseWorker, settings: Settings | None = None, **kwargs: Any):
    sleep = kwargs.pop("sleep", None) or SleepRecorder()
    orchestrator = await build_orchestrator(
        settings or make_settings(),
        workers=list(workers),
        sleep=sleep,
        **kwargs,
    )
    return orchestrator, sleep

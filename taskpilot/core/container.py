"""Builds the orchestrator graph from settings (stores, bus, runner, pool, workers)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence

import structlog

from taskpilot.agents.base import BaseWorker
from taskpilot.agents.classifier import Classifier
from taskpilot.agents.communication_worker import CommunicationWorker
from taskpilot.agents.integrations import (
    HttpProfileResearcher,
    HttpProspectSource,
    InMemoryReminderScheduler,
)
from taskpilot.agents.prospecting_worker import ProspectingWorker
from taskpilot.agents.research_worker import ResearchWorker
from taskpilot.core.confirmation import ConfirmationConfig, ConfirmationManager
from taskpilot.core.events import EventBus
from taskpilot.core.llm import CompletionClient, CompletionConfig
from taskpilot.core.notifications import LogNotifier, NotificationRelay, Notifier, RedisNotifier
from taskpilot.core.orchestrator import Orchestrator
from taskpilot.core.quota import RedisTaskQuota, TaskQuota, TaskQuotaConfig
from taskpilot.core.runner import RunnerConfig, TaskLifecycle, TaskRunner
from taskpilot.core.settings import Settings
from taskpilot.core.worker_pool import WorkerPool, WorkerPoolConfig
from taskpilot.db.memory import InMemoryConfirmationStore, InMemoryTaskStore
from taskpilot.db.mongo import Mongo, MongoConfirmationStore, MongoTaskStore
from taskpilot.db.store import ConfirmationStore, TaskStore
from taskpilot.models.task_models import utc_now

log = structlog.get_logger(__name__)


def default_workers(settings: Settings) -> list[BaseWorker]:
    source = HttpProspectSource(settings.PROSPECT_SOURCE_URL) if settings.PROSPECT_SOURCE_URL else None
    researcher = HttpProfileResearcher(settings.RESEARCH_SOURCE_URL) if settings.RESEARCH_SOURCE_URL else None
    return [
        ProspectingWorker(source),
        ResearchWorker(researcher),
        CommunicationWorker(InMemoryReminderScheduler()),
    ]


async def build_orchestrator(
    settings: Settings,
    *,
    store: TaskStore | None = None,
    contexts: ConfirmationStore | None = None,
    completion: CompletionClient | None = None,
    quota: TaskQuota | None = None,
    notifier: Notifier | None = None,
    workers: Sequence[BaseWorker] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Orchestrator:
    """Assemble every component; injected arguments win over settings-derived defaults."""
    closers: list[Callable[[], Awaitable[None]]] = []
    health_checks: dict[str, Callable[[], Awaitable[None]]] = {}

    if store is None or contexts is None:
        if settings.STORE_BACKEND == "mongo":
            mongo = Mongo(settings.MONGODB_URL)
            await mongo.ensure_indexes()
            closers.append(mongo.close)
            health_checks["mongo"] = mongo.ping
            store = store or MongoTaskStore(mongo)
            contexts = contexts or MongoConfirmationStore(mongo)
        else:
            store = store or InMemoryTaskStore()
            contexts = contexts or InMemoryConfirmationStore()

    if completion is None and settings.GOOGLE_API_KEY:
        completion = CompletionClient(CompletionConfig.from_settings(settings))

    if quota is None and settings.QUOTA_TASKS_PER_PERIOD:
        redis_quota = RedisTaskQuota(
            TaskQuotaConfig(tasks_per_period=settings.QUOTA_TASKS_PER_PERIOD, period_s=settings.QUOTA_PERIOD_S),
            redis_url=settings.REDIS_URL,
        )
        closers.append(redis_quota.close)
        health_checks["redis"] = redis_quota.ping
        quota = redis_quota

    bus = EventBus()
    lifecycle = TaskLifecycle(store, bus)
    confirmations = ConfirmationManager(
        lifecycle,
        contexts,
        completion=completion,
        config=ConfirmationConfig.from_settings(settings),
        clock=clock or utc_now,
    )
    runner = TaskRunner(
        lifecycle,
        confirmations,
        completion=completion,
        config=RunnerConfig(task_timeout_s=settings.TASK_TIMEOUT_S),
    )
    pool_kwargs: dict[str, Any] = {"config": WorkerPoolConfig.from_settings(settings), "settings": settings}
    if sleep is not None:
        pool_kwargs["sleep"] = sleep
    pool = WorkerPool(runner, **pool_kwargs)
    for worker in workers if workers is not None else default_workers(settings):
        pool.register(worker)

    if notifier is None and settings.NOTIFICATIONS_ENABLED:
        redis_notifier = RedisNotifier(redis_url=settings.REDIS_URL)
        closers.append(redis_notifier.close)
        health_checks.setdefault("redis", redis_notifier.ping)
        notifier = redis_notifier
    NotificationRelay(notifier or LogNotifier()).attach(bus)

    log.info(
        "orchestrator_built",
        store_backend=type(store).__name__,
        completion=completion is not None,
        quota=quota is not None,
        workers=[w.value for w in pool.registered()],
    )
    return Orchestrator(
        store=store,
        bus=bus,
        pool=pool,
        classifier=Classifier(completion=completion),
        confirmations=confirmations,
        quota=quota,
        completion=completion,
        closers=closers,
        health_checks=health_checks,
        sweep_interval_s=settings.CONFIRMATION_SWEEP_INTERVAL_S,
    )

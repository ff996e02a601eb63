"""Inbound message handling: confirmation answers, classification, task creation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal

import structlog

from taskpilot.agents.classifier import Classifier
from taskpilot.core.confirmation import ConfirmationManager
from taskpilot.core.events import EventBus
from taskpilot.core.llm import CompletionClient, CompletionError
from taskpilot.core.quota import TaskQuota
from taskpilot.core.worker_pool import WorkerPool
from taskpilot.db.store import TaskStore
from taskpilot.models.confirmation_models import ConfirmationContext
from taskpilot.models.routing_models import RoutingDecision, WorkerType
from taskpilot.models.task_models import Task, TaskStatus

log = structlog.get_logger(__name__)

ReplyStatus = Literal[
    "task_created",
    "answered",
    "confirmation_resolved",
    "clarification",
    "confirmation_failed",
    "quota_exceeded",
]

SPECIALTIES: dict[WorkerType, str] = {
    WorkerType.prospecting: "lead generation and prospecting",
    WorkerType.research: "lead research and profile analysis",
    WorkerType.communication: "email, calendar and reminders",
}

GENERAL_SYSTEM_PROMPT = """You are Prism, the coordinator of a small team of assistant workers:
- Falcon finds new leads and prospects
- Sage researches leads and LinkedIn profiles
- Sentinel manages email, calendar and reminders

Answer the user's message briefly (1-3 sentences). If it sounds like a task one of the workers
could do, tell the user how to ask for it."""

GENERAL_FALLBACK_REPLY = (
    "I can help you find new leads, research a LinkedIn profile, or manage your email, "
    "calendar and reminders. What would you like to do?"
)


@dataclass(frozen=True)
class MessageReply:
    reply: str
    status: ReplyStatus
    task_id: str | None = None
    worker_type: WorkerType | None = None


@dataclass
class Orchestrator:
    store: TaskStore
    bus: EventBus
    pool: WorkerPool
    classifier: Classifier
    confirmations: ConfirmationManager
    quota: TaskQuota | None = None
    completion: CompletionClient | None = None
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)
    # name -> check; a check raises when its dependency is unreachable.
    health_checks: dict[str, Callable[[], Awaitable[None]]] = field(default_factory=dict)
    sweep_interval_s: float | None = None
    _sweeper: asyncio.Task | None = field(default=None, init=False, repr=False)

    async def start(self) -> None:
        await self.pool.start()
        await self._resume_answered()
        if self.sweep_interval_s and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(self.sweep_interval_s))

    async def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.pool.shutdown()
        for close in self.closers:
            await close()

    async def handle_user_message(self, user_id: str, session_id: str | None, text: str) -> str:
        """Immediate acknowledgement for one inbound message; the work itself is queued."""
        return (await self.handle(user_id, session_id, text)).reply

    async def handle(self, user_id: str, session_id: str | None, text: str) -> MessageReply:
        text = text.strip()
        if not text:
            raise ValueError("message must not be empty")
        structlog.contextvars.bind_contextvars(user_id=user_id)
        try:
            context = await self.confirmations.find_pending(user_id)
            if context is not None:
                decision = self.classifier.route(text)
                switching = (
                    decision.creates_task
                    and decision.target_worker_type != context.worker_type
                    and not self.confirmations.looks_like_answer(context, text)
                )
                if not switching:
                    return await self._answer(context, text)
                log.info("confirmation_left_open", task_id=context.task_id, new_worker_type=decision.target_worker_type.value)

            decision = await self.classifier.classify(text, user_id)
            if not decision.creates_task:
                return MessageReply(await self._general_reply(text), "answered", worker_type=WorkerType.router)
            return await self._create_task(user_id, session_id, decision)
        finally:
            structlog.contextvars.unbind_contextvars("user_id")

    async def cancel_task(self, task_id: str) -> bool:
        task = await self.store.get(task_id)
        if task.status == TaskStatus.awaiting_confirmation and await self.confirmations.abandon(task):
            return True
        return await self.pool.cancel(task_id)

    async def _resume_answered(self) -> None:
        """Queue again tasks whose answer was accepted but which never ran before a restart."""
        for worker_type in self.pool.registered():
            for task in await self.store.list_by_status(worker_type, TaskStatus.awaiting_confirmation):
                if self.pool.is_queued(task.id) or await self.confirmations.is_open(task):
                    continue
                log.info("answered_task_resumed", task_id=task.id, worker_type=worker_type.value)
                await self.pool.readmit(task)

    async def _sweep_loop(self, interval_s: float) -> None:
        while True:
            try:
                expired = await self.confirmations.sweep()
            except Exception as e:  # noqa: BLE001 - the next tick retries
                log.error("confirmation_sweep_failed", error=str(e)[:200], exc_info=True)
            else:
                if expired:
                    log.info("confirmation_sweep", expired=expired)
            await asyncio.sleep(interval_s)

    async def _answer(self, context: ConfirmationContext, text: str) -> MessageReply:
        resolution = await self.confirmations.resolve(context, text)
        if resolution.status == "resolved" and resolution.task is not None:
            await self.pool.readmit(resolution.task)
            return MessageReply(
                resolution.message,
                "confirmation_resolved",
                task_id=resolution.task.id,
                worker_type=resolution.task.worker_type,
            )
        status: ReplyStatus = "clarification" if resolution.status == "clarify" else "confirmation_failed"
        return MessageReply(resolution.message, status, task_id=context.task_id, worker_type=context.worker_type)

    async def _create_task(self, user_id: str, session_id: str | None, decision: RoutingDecision) -> MessageReply:
        worker = self.pool.worker_for(decision.target_worker_type)
        if self.quota is not None:
            verdict = await self.quota.acquire(user_id)
            if not verdict.allowed:
                log.info("task_quota_exceeded", limit=verdict.limit, retry_after_s=verdict.retry_after_s)
                hours = max(1, round(verdict.retry_after_s / 3600))
                return MessageReply(
                    f"You've reached your limit of {verdict.limit} tasks for now. "
                    f"Please try again in about {hours} hour{'s' if hours != 1 else ''}.",
                    "quota_exceeded",
                )

        task = Task(
            user_id=user_id,
            session_id=session_id,
            worker_type=decision.target_worker_type,
            task_kind=decision.task_kind,
            input_parameters=decision.extracted_parameters,
            original_message=decision.original_message,
        )
        await self.store.create(task)
        await self.pool.enqueue(task)
        log.info(
            "task_created",
            task_id=task.id,
            worker_type=task.worker_type.value,
            task_kind=task.task_kind,
            confidence=decision.confidence,
        )
        reply = (
            f"Got it! I've passed this to {worker.display_name}, who handles "
            f"{SPECIALTIES.get(task.worker_type, task.worker_type.value)}. "
            f"You'll get updates here as it progresses."
        )
        return MessageReply(reply, "task_created", task_id=task.id, worker_type=task.worker_type)

    async def _general_reply(self, text: str) -> str:
        if self.completion is None:
            return GENERAL_FALLBACK_REPLY
        try:
            return await self.completion.complete(GENERAL_SYSTEM_PROMPT, text)
        except CompletionError as e:
            log.info("general_reply_fallback", reason=str(e))
            return GENERAL_FALLBACK_REPLY

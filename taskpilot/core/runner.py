"""Task runner: the uniform execution contract around every worker run.

- `execute` never lets a worker exception escape; faults and timeouts become
  `Failure` outcomes the pool can retry.
- `finish` applies the final outcome (terminal transition, or hand-off to the
  confirmation state machine).
- Acknowledgement / summary text comes from the completion service with a static
  fallback per worker; generating it can never fail the task.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
from typing import TYPE_CHECKING, Any

import structlog

from taskpilot.agents.base import BaseWorker
from taskpilot.core.events import EventBus
from taskpilot.core.llm import CompletionClient, CompletionError
from taskpilot.db.store import TaskStore
from taskpilot.models.events import TaskProgressed, TaskStarted, TaskTerminal
from taskpilot.models.outcomes import Failure, NeedsConfirmation, Outcome, Success, Unavailable
from taskpilot.models.task_models import Task, TaskStatus

if TYPE_CHECKING:
    from taskpilot.core.confirmation import ConfirmationManager

log = structlog.get_logger(__name__)

TIMEOUT_MESSAGE = "timeout"

ACK_SYSTEM_PROMPT = """You are {name}, an assistant worker. Write a brief acknowledgement that you are starting the user's request.
- 1-2 sentences, conversational and professional
- Reference the specific task
- Use "I'm" or "I'll"; avoid generic phrases like "working on your request\""""

SUMMARY_SYSTEM_PROMPT = """You are {name}, an assistant worker. Write a brief completion message for the user.
- 1-2 sentences, conversational and professional
- Reference specific results and numbers when available
- Be encouraging on success and helpful on failure"""


@dataclass(frozen=True)
class RunnerConfig:
    task_timeout_s: float = 300.0


class TaskLifecycle:
    """Terminal transitions plus their `terminal` event, shared by runner and confirmations."""

    def __init__(self, store: TaskStore, bus: EventBus) -> None:
        self.store = store
        self.bus = bus

    async def succeed(self, task: Task, payload: Any, *, summary: str | None = None) -> Task:
        if payload is None:
            payload = {}
        done = await self.store.transition(task.id, TaskStatus.succeeded, result=payload)
        await self._publish_terminal(done, summary)
        log.info("task_succeeded", task_id=done.id, worker_type=done.worker_type.value, attempts=done.attempt_count)
        return done

    async def fail(self, task: Task, message: str, *, summary: str | None = None) -> Task:
        done = await self.store.transition(task.id, TaskStatus.failed, error=message)
        await self._publish_terminal(done, summary)
        log.warning(
            "task_failed",
            task_id=done.id,
            worker_type=done.worker_type.value,
            attempts=done.attempt_count,
            error=message,
        )
        return done

    async def _publish_terminal(self, task: Task, summary: str | None) -> None:
        await self.bus.publish(
            TaskTerminal(
                task_id=task.id,
                user_id=task.user_id,
                worker_type=task.worker_type,
                status=task.status.value,
                result=task.result,
                error_message=task.error_message,
                summary=summary,
                attempt_count=task.attempt_count,
            )
        )


class TaskProgress:
    """Progress callback handed to `run`.

    Clamps to [0, 100] and ignores anything below the highest percent already
    reported, so every subscriber sees a non-decreasing sequence.
    """

    def __init__(self, task: Task, store: TaskStore, bus: EventBus) -> None:
        self._task = task
        self._store = store
        self._bus = bus
        self.percent = task.progress_percent

    async def __call__(self, percent: int, stage: str) -> None:
        clamped = min(100, max(0, int(percent)))
        if clamped < self.percent:
            log.debug("progress_regression_ignored", task_id=self._task.id, percent=clamped, current=self.percent)
            return
        self.percent = clamped
        await self._store.update_progress(self._task.id, clamped, stage)
        await self._bus.publish(
            TaskProgressed(
                task_id=self._task.id,
                user_id=self._task.user_id,
                worker_type=self._task.worker_type,
                percent=clamped,
                stage=stage,
            )
        )


class TaskRunner:
    def __init__(
        self,
        lifecycle: TaskLifecycle,
        confirmations: "ConfirmationManager",
        *,
        completion: CompletionClient | None = None,
        config: RunnerConfig | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self._confirmations = confirmations
        self._completion = completion
        self._config = config or RunnerConfig()

    async def start(self, task: Task, worker: BaseWorker, attempt: int) -> None:
        """Publish `started`; the first attempt of an admission carries an acknowledgement."""
        ack = await self.acknowledgement(task, worker) if attempt == 1 else None
        await self.lifecycle.bus.publish(
            TaskStarted(
                task_id=task.id,
                user_id=task.user_id,
                worker_type=task.worker_type,
                attempt=task.attempt_count,
                acknowledgement=ack,
            )
        )

    async def execute(self, task: Task, worker: BaseWorker, *, unavailable: str | None = None) -> Outcome:
        if unavailable is not None:
            return Unavailable(unavailable)

        progress = TaskProgress(task, self.lifecycle.store, self.lifecycle.bus)
        try:
            outcome = await asyncio.wait_for(worker.run(task, progress), timeout=self._config.task_timeout_s)
        except asyncio.TimeoutError:
            log.warning("task_run_timeout", task_id=task.id, timeout_s=self._config.task_timeout_s)
            return Failure(TIMEOUT_MESSAGE)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001 - worker code calls unreliable services
            log.error("task_run_raised", task_id=task.id, error=str(e)[:200], exc_info=True)
            return Failure(f"{worker.display_name} ran into a problem while working on your request.")

        if not isinstance(outcome, (Success, Failure, NeedsConfirmation, Unavailable)):
            log.error("task_run_bad_outcome", task_id=task.id, outcome_type=type(outcome).__name__)
            return Failure(f"{worker.display_name} returned an unexpected result.", retryable=False)
        return outcome

    async def finish(self, task: Task, worker: BaseWorker, outcome: Outcome) -> Task:
        if isinstance(outcome, NeedsConfirmation):
            return await self._confirmations.suspend(task, outcome)

        if isinstance(outcome, Success):
            summary = await self.summary(task, worker, succeeded=True, detail=outcome.payload)
            return await self.lifecycle.succeed(task, outcome.payload, summary=summary)

        if isinstance(outcome, Unavailable):
            message = f"{worker.display_name} is not available right now: {outcome.reason}."
        elif outcome.message == TIMEOUT_MESSAGE:
            message = f"{worker.display_name} did not finish within its time budget (timeout)."
        else:
            message = outcome.message
        summary = await self.summary(task, worker, succeeded=False, detail=message)
        return await self.lifecycle.fail(task, message, summary=summary)

    async def acknowledgement(self, task: Task, worker: BaseWorker) -> str:
        if self._completion is None:
            return worker.fallback_acknowledgement
        user = (
            f"Job Type: {task.task_kind}\n"
            f"User's Original Message: \"{task.original_message}\"\n"
            f"Job Parameters: {_compact(task.input_parameters)}"
        )
        try:
            return await self._completion.complete(ACK_SYSTEM_PROMPT.format(name=worker.display_name), user)
        except CompletionError as e:
            log.info("acknowledgement_fallback", task_id=task.id, reason=str(e))
            return worker.fallback_acknowledgement

    async def summary(self, task: Task, worker: BaseWorker, *, succeeded: bool, detail: Any) -> str:
        if self._completion is None:
            return worker.fallback_summary(succeeded)
        user = (
            f"Job Type: {task.task_kind}\n"
            f"User's Original Message: \"{task.original_message}\"\n"
            f"Job Success: {succeeded}\n"
            f"Job Result: {_compact(detail)}"
        )
        try:
            return await self._completion.complete(SUMMARY_SYSTEM_PROMPT.format(name=worker.display_name), user)
        except CompletionError as e:
            log.info("summary_fallback", task_id=task.id, reason=str(e))
            return worker.fallback_summary(succeeded)


def _compact(value: Any, limit: int = 1500) -> str:
    try:
        text = json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = str(value)
    return text[:limit]

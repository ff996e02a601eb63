"""In-process worker pool: one FIFO queue per worker type, bounded concurrency.

Each registered worker type gets an admission loop. The loop pops task ids in
FIFO order while fewer than `concurrency` executors are live, moves the task to
`running` through the store (the atomic transition check is the only lock), and
hands it to an executor that owns the task until a terminal outcome or a
suspension. Retry backoff happens inside the executor, which keeps its slot.

The deques are rebuilt from the store on `start()`: pending tasks are queued
again oldest first, and tasks a previous process left in `running` are
admitted again without a second transition.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable

import structlog
from taskpilot.agents.base import BaseWorker
from taskpilot.core.runner import TaskRunner
from taskpilot.core.settings import Settings
from taskpilot.db.store import InvalidTransition, TaskNotFound
from taskpilot.models.events import TaskEnqueued
from taskpilot.models.outcomes import Failure, Outcome
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import QueueStats, Task, TaskStatus

log = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "The task was cancelled."

class QueueNotRegistered(LookupError):
    def __init__(self, worker_type: WorkerType) -> None:
        super().__init__(f"no worker registered for {worker_type.value}")
        self.worker_type = worker_type


@dataclass(frozen=True)
class WorkerPoolConfig:
    concurrency: int = 2
    max_attempts: int = 3
    backoff_base_s: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerPoolConfig":
        return cls(
            concurrency=settings.QUEUE_CONCURRENCY,
            max_attempts=settings.QUEUE_MAX_ATTEMPTS,
            backoff_base_s=settings.QUEUE_BACKOFF_BASE_S,
        )

    def backoff_s(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based): 2, 4, 8 ... with the default base."""
        return self.backoff_base_s * (2 ** (attempt - 1))


@dataclass
class _TaskQueue:
    worker: BaseWorker
    concurrency: int
    unavailable: str | None = None
    paused: bool = False
    pending: deque[str] = field(default_factory=deque)
    resuming: set[str] = field(default_factory=set)
    running: set[str] = field(default_factory=set)
    executors: set[asyncio.Task] = field(default_factory=set)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    loop: asyncio.Task | None = None


class WorkerPool:
    def __init__(
        self,
        runner: TaskRunner,
        *,
        config: WorkerPoolConfig | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._runner = runner
        self._store = runner.lifecycle.store
        self._bus = runner.lifecycle.bus
        self._config = config or WorkerPoolConfig()
        self._settings = settings
        self._sleep = sleep
        self._queues: dict[WorkerType, _TaskQueue] = {}
        self._started = False
        self._closing = False

    @property
    def config(self) -> WorkerPoolConfig:
        return self._config

    def registered(self) -> list[WorkerType]:
        return list(self._queues)

    def worker_for(self, worker_type: WorkerType) -> BaseWorker:
        return self._queue(worker_type).worker

    def register(self, worker: BaseWorker, *, concurrency: int | None = None) -> None:
        """Register the single implementation for `worker.worker_type`.

        The worker's capability check runs here, once; a missing dependency
        turns every later run of that type into an `Unavailable` outcome.
        """
        if worker.worker_type in self._queues:
            raise ValueError(f"worker already registered for {worker.worker_type.value}")
        limit = concurrency if concurrency is not None else self._config.concurrency
        if limit < 1:
            raise ValueError("concurrency must be >= 1")

        unavailable = worker.check_available(self._settings)
        queue = _TaskQueue(worker=worker, concurrency=limit, unavailable=unavailable)
        self._queues[worker.worker_type] = queue
        if unavailable:
            log.warning("worker_unavailable", worker_type=worker.worker_type.value, reason=unavailable)
        log.info("worker_registered", worker_type=worker.worker_type.value, concurrency=limit)
        if self._started:
            queue.loop = asyncio.create_task(self._admission_loop(worker.worker_type, queue))

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._closing = False
        for worker_type, queue in self._queues.items():
            await self._recover(worker_type, queue)
            queue.loop = asyncio.create_task(self._admission_loop(worker_type, queue))
            queue.wakeup.set()

    async def enqueue(self, task: Task, *, resumed: bool = False) -> None:
        """Append a pending (or just-resolved) task to its worker type's FIFO."""
        queue = self._queue(task.worker_type)
        queue.pending.append(task.id)
        await self._bus.publish(
            TaskEnqueued(
                task_id=task.id,
                user_id=task.user_id,
                worker_type=task.worker_type,
                task_kind=task.task_kind,
                resumed=resumed,
            )
        )
        log.info(
            "task_enqueued",
            task_id=task.id,
            worker_type=task.worker_type.value,
            queue_depth=len(queue.pending),
            resumed=resumed,
        )
        queue.wakeup.set()

    def is_queued(self, task_id: str) -> bool:
        return any(task_id in q.pending or task_id in q.running for q in self._queues.values())

    async def readmit(self, task: Task) -> None:
        """Re-admit a task whose confirmation was resolved."""
        await self.enqueue(task, resumed=True)

    async def cancel(self, task_id: str) -> bool:
        """Cancel a task that has not reached a terminal state.

        Queued tasks (pending, or answered and waiting to resume) leave the
        queue and fail immediately. Running tasks are flagged; they finish
        their current attempt but are not retried.
        """
        task = await self._store.get(task_id)
        if task.status.is_terminal:
            return False
        if task.status == TaskStatus.running:
            await self._store.request_cancel(task_id)
            log.info("task_cancel_requested", task_id=task_id)
            return True
        queue = self._queues.get(task.worker_type)
        queued = queue is not None and task_id in queue.pending
        if task.status == TaskStatus.pending or queued:
            # An answered task waits in the deque still marked awaiting_confirmation.
            if queued:
                queue.pending.remove(task_id)
                queue.resuming.discard(task_id)
            await self._runner.lifecycle.fail(task, CANCELLED_MESSAGE)
            log.info("task_cancelled", task_id=task_id, status=task.status.value)
            return True
        return False

    def pause(self, worker_type: WorkerType) -> None:
        """Stop admitting new tasks of this type; running ones continue."""
        self._queue(worker_type).paused = True
        log.info("queue_paused", worker_type=worker_type.value)

    def resume(self, worker_type: WorkerType) -> None:
        queue = self._queue(worker_type)
        queue.paused = False
        queue.wakeup.set()
        log.info("queue_resumed", worker_type=worker_type.value)

    async def stats(self) -> list[QueueStats]:
        out: list[QueueStats] = []
        for worker_type, queue in self._queues.items():
            counts = await self._store.count_by_status(worker_type)
            out.append(
                QueueStats(
                    worker_type=worker_type,
                    pending=counts[TaskStatus.pending],
                    running=counts[TaskStatus.running],
                    awaiting_confirmation=counts[TaskStatus.awaiting_confirmation],
                    succeeded=counts[TaskStatus.succeeded],
                    failed=counts[TaskStatus.failed],
                    paused=queue.paused,
                    concurrency=queue.concurrency,
                )
            )
        return out

    def running_count(self, worker_type: WorkerType) -> int:
        return len(self._queue(worker_type).running)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until no admissible work is left (paused queues are skipped)."""

        async def _wait() -> None:
            while True:
                busy = [q for q in self._queues.values() if q.running or (q.pending and not q.paused)]
                if not busy:
                    return
                live = [e for q in busy for e in q.executors if not e.done()]
                if live:
                    await asyncio.wait(live, return_when=asyncio.FIRST_COMPLETED)
                else:
                    await asyncio.sleep(0)

        await asyncio.wait_for(_wait(), timeout=timeout)

    async def shutdown(self) -> None:
        self._closing = True
        tasks: list[asyncio.Task] = []
        for queue in self._queues.values():
            queue.wakeup.set()
            if queue.loop is not None:
                queue.loop.cancel()
                tasks.append(queue.loop)
            for executor in queue.executors:
                executor.cancel()
                tasks.append(executor)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._started = False
        log.info("worker_pool_stopped")

    def _queue(self, worker_type: WorkerType) -> _TaskQueue:
        queue = self._queues.get(worker_type)
        if queue is None:
            raise QueueNotRegistered(worker_type)
        return queue

    async def _recover(self, worker_type: WorkerType, queue: _TaskQueue) -> None:
        pending = await self._store.list_by_status(worker_type, TaskStatus.pending)
        interrupted = await self._store.list_by_status(worker_type, TaskStatus.running)
        for task in interrupted:
            if task.id not in queue.running and task.id not in queue.pending:
                queue.resuming.add(task.id)
                queue.pending.append(task.id)
        for task in pending:
            if task.id not in queue.pending:
                queue.pending.append(task.id)
        if pending or interrupted:
            log.info(
                "tasks_recovered",
                worker_type=worker_type.value,
                pending=len(pending),
                interrupted=len(interrupted),
            )

    async def _admission_loop(self, worker_type: WorkerType, queue: _TaskQueue) -> None:
        while not self._closing:
            await queue.wakeup.wait()
            queue.wakeup.clear()
            while not queue.paused and queue.pending and len(queue.running) < queue.concurrency:
                task_id = queue.pending.popleft()
                try:
                    if task_id in queue.resuming:
                        queue.resuming.discard(task_id)
                        task = await self._recovered(task_id)
                    else:
                        task = await self._store.transition(task_id, TaskStatus.running)
                except InvalidTransition as e:
                    # Another executor already owns it (duplicate resume) or it was cancelled.
                    log.warning(
                        "task_admission_rejected",
                        task_id=task_id,
                        worker_type=worker_type.value,
                        current=e.current.value if e.current else None,
                    )
                    continue
                except TaskNotFound:
                    log.warning("task_admission_missing", task_id=task_id, worker_type=worker_type.value)
                    continue

                queue.running.add(task_id)
                executor = asyncio.create_task(self._execute(queue, task))
                queue.executors.add(executor)
                executor.add_done_callback(partial(self._executor_done, queue, task_id))

    async def _recovered(self, task_id: str) -> Task:
        task = await self._store.get(task_id)
        if task.status != TaskStatus.running:
            raise InvalidTransition(task_id, task.status, TaskStatus.running)
        log.info("task_resumed_after_restart", task_id=task_id, attempt_count=task.attempt_count)
        return task

    def _executor_done(self, queue: _TaskQueue, task_id: str, executor: asyncio.Task) -> None:
        queue.running.discard(task_id)
        queue.executors.discard(executor)
        queue.wakeup.set()
        if not executor.cancelled() and executor.exception() is not None:
            log.error("task_executor_crashed", task_id=task_id, error=repr(executor.exception())[:200])

    async def _execute(self, queue: _TaskQueue, task: Task) -> None:
        structlog.contextvars.bind_contextvars(
            task_id=task.id,
            worker_type=task.worker_type.value,
            user_id=task.user_id,
        )
        try:
            task, outcome = await self._attempts(queue, task)
            await self._runner.finish(task, queue.worker, outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001 - the task must not stay in running
            log.error("task_executor_failed", error=str(e)[:200], exc_info=True)
            try:
                await self._runner.lifecycle.fail(
                    task, f"{queue.worker.display_name} could not complete your request."
                )
            except (InvalidTransition, TaskNotFound) as exc:
                log.warning("task_executor_fail_skipped", error=str(exc))
        finally:
            structlog.contextvars.unbind_contextvars("task_id", "worker_type", "user_id")

    async def _attempts(self, queue: _TaskQueue, task: Task) -> tuple[Task, Outcome]:
        max_attempts = self._config.max_attempts
        outcome: Outcome = Failure(CANCELLED_MESSAGE, retryable=False)
        for attempt in range(1, max_attempts + 1):
            task = await self._store.increment_attempt(task.id)
            await self._runner.start(task, queue.worker, attempt)
            outcome = await self._runner.execute(task, queue.worker, unavailable=queue.unavailable)

            if not isinstance(outcome, Failure) or not outcome.retryable or attempt == max_attempts:
                break
            current = await self._store.get(task.id)
            if current.cancel_requested:
                log.info("task_retry_cancelled", attempt=attempt)
                return current, Failure(CANCELLED_MESSAGE, retryable=False)

            delay = self._config.backoff_s(attempt)
            log.warning("task_attempt_failed", attempt=attempt, retry_in_s=delay, error=outcome.message)
            await self._sleep(delay)
            task = await self._store.get(task.id)
        return task, outcome

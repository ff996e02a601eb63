from __future__ import annotations

import httpx
import pytest

from taskpilot.core.confirmation import ConfirmationManager
from taskpilot.core.events import EventBus
from taskpilot.core.llm import CompletionClient, CompletionConfig, CompletionError
from taskpilot.core.runner import TaskLifecycle, TaskProgress, TaskRunner
from taskpilot.db.memory import InMemoryConfirmationStore, InMemoryTaskStore
from taskpilot.models.outcomes import Failure, NeedsConfirmation, Success, Unavailable
from taskpilot.models.task_models import TaskStatus

from tests.helpers import EventLog, ScriptedWorker, make_task


class DummyCompletion:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, system, user, *, json_mode=False):
        self.calls.append((system, user))
        if self.error:
            raise self.error
        return self.reply


async def _runner(completion=None):
    store = InMemoryTaskStore()
    bus = EventBus()
    events = EventLog()
    bus.subscribe(events)
    lifecycle = TaskLifecycle(store, bus)
    confirmations = ConfirmationManager(lifecycle, InMemoryConfirmationStore())
    return TaskRunner(lifecycle, confirmations, completion=completion), store, events


async def _running_task(store, **kwargs):
    task = make_task(**kwargs)
    await store.create(task)
    return await store.transition(task.id, TaskStatus.running)


@pytest.mark.asyncio
async def test_progress_reporter_clamps_and_drops_regressions():
    runner, store, events = await _runner()
    task = await _running_task(store)
    progress = TaskProgress(task, store, runner.lifecycle.bus)

    await progress(-20, "start")
    await progress(50, "mid")
    await progress(30, "back")
    await progress(500, "end")

    assert [(e.percent, e.stage) for e in events.of("progressed")] == [(0, "start"), (50, "mid"), (100, "end")]
    assert (await store.get(task.id)).progress_percent == 100


@pytest.mark.asyncio
async def test_execute_rejects_non_outcome_return_values():
    runner, store, _ = await _runner()
    task = await _running_task(store)

    outcome = await runner.execute(task, ScriptedWorker({"not": "an outcome"}))
    assert isinstance(outcome, Failure)
    assert outcome.retryable is False


@pytest.mark.asyncio
async def test_execute_short_circuits_when_unavailable():
    runner, store, _ = await _runner()
    task = await _running_task(store)
    worker = ScriptedWorker(Success({}))

    outcome = await runner.execute(task, worker, unavailable="no key")
    assert outcome == Unavailable("no key")
    assert worker.calls == []


@pytest.mark.asyncio
async def test_summary_comes_from_completion_service():
    completion = DummyCompletion(reply="I found 3 leads for you.")
    runner, store, events = await _runner(completion)
    task = await _running_task(store)

    await runner.finish(task, ScriptedWorker(Success({})), Success({"leads_found": 3}))

    terminal = events.of("terminal")[0]
    assert terminal.summary == "I found 3 leads for you."
    assert terminal.result == {"leads_found": 3}
    assert "leads_found" in completion.calls[0][1]


@pytest.mark.asyncio
async def test_completion_failure_falls_back_to_static_text():
    completion = DummyCompletion(error=CompletionError("completion_timeout"))
    runner, store, events = await _runner(completion)
    task = await _running_task(store)
    worker = ScriptedWorker(Success({}))

    assert await runner.acknowledgement(task, worker) == "Scripted is processing your request..."
    done = await runner.finish(task, worker, Failure("nope"))

    assert done.status == TaskStatus.failed
    assert events.of("terminal")[0].summary == "Scripted encountered an issue while processing your request."


@pytest.mark.asyncio
async def test_success_with_no_payload_still_records_a_result():
    runner, store, _ = await _runner()
    task = await _running_task(store)

    done = await runner.finish(task, ScriptedWorker(Success(None)), Success(None))
    assert done.status == TaskStatus.succeeded
    assert done.result == {}


@pytest.mark.asyncio
async def test_needs_confirmation_suspends_the_task():
    runner, store, events = await _runner()
    task = await _running_task(store)

    suspended = await runner.finish(
        task,
        ScriptedWorker(Success({})),
        NeedsConfirmation("What time?", answer_key="reminder_time"),
    )

    assert suspended.status == TaskStatus.awaiting_confirmation
    assert suspended.confirmation_rounds == 1
    assert events.of("confirmation_requested")[0].question == "What time?"
    assert events.of("terminal") == []


@pytest.mark.asyncio
async def test_transport_error_in_completion_falls_back_for_ack_and_summary():
    class DummyLLM:
        async def ainvoke(self, messages):
            raise httpx.ConnectError("connection refused")

    completion = CompletionClient(CompletionConfig(google_api_key=None, model="m"), llm=DummyLLM())
    runner, store, events = await _runner(completion)
    task = await _running_task(store)
    worker = ScriptedWorker(Success({"ok": True}))

    assert await runner.acknowledgement(task, worker) == "Scripted is processing your request..."
    done = await runner.finish(task, worker, Success({"ok": True}))

    assert done.status == TaskStatus.succeeded
    assert events.of("terminal")[0].summary == worker.fallback_summary(True)

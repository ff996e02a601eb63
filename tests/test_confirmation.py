from __future__ import annotations

import asyncio

import pytest

from taskpilot.core.confirmation import (
    EXPIRED_MESSAGE,
    UNRESOLVED_MESSAGE,
    ConfirmationConfig,
    ConfirmationManager,
    match_answer,
)
from taskpilot.core.events import EventBus
from taskpilot.core.llm import CompletionError
from taskpilot.core.runner import TaskLifecycle
from taskpilot.db.memory import InMemoryConfirmationStore, InMemoryTaskStore
from taskpilot.models.confirmation_models import ConfirmationContext, SuggestedAnswer
from taskpilot.models.outcomes import NeedsConfirmation, Success
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import TaskStatus

from tests.helpers import EventLog, FakeClock, ScriptedWorker, build_test_orchestrator, make_settings, make_task

TIMES = [SuggestedAnswer(value="09:00", label="9:00 AM"), SuggestedAnswer(value="14:00", label="2:00 PM")]


def _context(**overrides):
    values = {
        "task_id": "t1",
        "user_id": "u1",
        "worker_type": WorkerType.communication,
        "pending_question": "What time?",
        "suggested_answers": TIMES,
        "answer_key": "reminder_time",
    }
    values.update(overrides)
    return ConfirmationContext(**values)


@pytest.mark.parametrize(
    "reply,value,method",
    [
        ("the first one", "09:00", "ordinal"),
        ("second", "14:00", "ordinal"),
        ("option 2", "14:00", "ordinal"),
        ("the last one", "14:00", "ordinal"),
        ("2", "14:00", "ordinal"),
        ("9am", "09:00", "time"),
        ("make it 4:15 PM", "16:15", "time"),
        ("noon", "12:00", "time"),
        ("yes", "09:00", "affirmative"),
        ("Sounds good!", "09:00", "affirmative"),
    ],
)
def test_match_answer(reply, value, method):
    found = match_answer(_context(), reply)
    assert found.value == value
    assert found.method == method
    assert found.confidence >= 0.5


def test_match_answer_by_label_for_non_time_questions():
    ctx = _context(
        answer_key="email_type",
        suggested_answers=[SuggestedAnswer(value="unread", label="Unread only"), SuggestedAnswer(value="all")],
    )
    assert match_answer(ctx, "all").value == "all"
    assert match_answer(ctx, "unread only please").value == "unread"


def test_match_answer_free_text_and_urls():
    ctx = _context(answer_key="linkedin_url", suggested_answers=[])
    assert match_answer(ctx, "https://linkedin.com/in/jane.").value == "https://linkedin.com/in/jane"
    free = match_answer(_context(answer_key="topic", suggested_answers=[]), "pricing")
    assert free.value == "pricing"
    assert free.method == "free_text"


def test_match_answer_gives_up_on_noise():
    found = match_answer(_context(), "hmm not sure")
    assert found.value is None
    assert found.confidence == 0.0


async def _manager(*, completion=None, clock=None):
    store = InMemoryTaskStore()
    contexts = InMemoryConfirmationStore()
    bus = EventBus()
    events = EventLog()
    bus.subscribe(events)
    kwargs = {"completion": completion}
    if clock is not None:
        kwargs["clock"] = clock
    manager = ConfirmationManager(TaskLifecycle(store, bus), contexts, config=ConfirmationConfig(ttl_s=600), **kwargs)
    return manager, store, contexts, events


async def _suspended(manager, store, **task_kwargs):
    task = make_task(**task_kwargs)
    await store.create(task)
    task = await store.transition(task.id, TaskStatus.running)
    await manager.suspend(task, NeedsConfirmation("What time?", TIMES, {"reminder_date": "2026-03-03"}, "reminder_time"))
    return task


@pytest.mark.asyncio
async def test_resolve_merges_answer_and_closes_context():
    manager, store, contexts, events = await _manager()
    task = await _suspended(manager, store)

    ctx = await manager.find_pending("u1")
    resolution = await manager.resolve(ctx, "the first one")

    assert resolution.status == "resolved"
    assert resolution.task.input_parameters["reminder_time"] == "09:00"
    assert resolution.task.input_parameters["reminder_date"] == "2026-03-03"
    assert await contexts.get("u1", task.id) is None
    assert events.of("confirmation_resolved")[0].value == "09:00"


@pytest.mark.asyncio
async def test_unclear_answer_gets_one_clarification_then_fails():
    manager, store, contexts, events = await _manager()
    task = await _suspended(manager, store)

    first = await manager.resolve(await manager.find_pending("u1"), "hmm")
    assert first.status == "clarify"
    assert '"9:00 AM"' in first.message
    ctx = await contexts.get("u1", task.id)
    assert ctx.clarifications_asked == 1
    assert events.of("confirmation_requested")[-1].clarification is True

    second = await manager.resolve(ctx, "still no idea")
    assert second.status == "failed"
    done = await store.get(task.id)
    assert done.status == TaskStatus.failed
    assert done.error_message == UNRESOLVED_MESSAGE
    assert await contexts.get("u1", task.id) is None


@pytest.mark.asyncio
async def test_expired_context_fails_its_task():
    clock = FakeClock()
    manager, store, contexts, _ = await _manager(clock=clock)
    task = await _suspended(manager, store)

    clock.advance(601)
    assert await manager.find_pending("u1") is None
    done = await store.get(task.id)
    assert done.status == TaskStatus.failed
    assert done.error_message == EXPIRED_MESSAGE
    assert await contexts.list_open("u1") == []


@pytest.mark.asyncio
async def test_second_confirmation_request_fails_the_task():
    manager, store, _, _ = await _manager()
    task = await _suspended(manager, store)
    ctx = await manager.find_pending("u1")
    await manager.resolve(ctx, "9am")
    resumed = await store.transition(task.id, TaskStatus.running)

    result = await manager.suspend(resumed, NeedsConfirmation("Again?", answer_key="x"))
    assert result.status == TaskStatus.failed
    assert result.error_message == UNRESOLVED_MESSAGE


@pytest.mark.asyncio
async def test_completion_answer_is_used_when_rules_are_unsure():
    class DummyCompletion:
        async def complete_json(self, system, user):
            return {"value": "14:00", "confidence": 0.8}

    manager, store, _, _ = await _manager(completion=DummyCompletion())
    await _suspended(manager, store)
    resolution = await manager.resolve(await manager.find_pending("u1"), "after lunch works")

    assert resolution.status == "resolved"
    assert resolution.value == "14:00"


@pytest.mark.asyncio
async def test_completion_failure_falls_back_to_rules():
    class DummyCompletion:
        async def complete_json(self, system, user):
            raise CompletionError("completion_timeout")

    manager, store, _, _ = await _manager(completion=DummyCompletion())
    await _suspended(manager, store)
    resolution = await manager.resolve(await manager.find_pending("u1"), "yes")

    assert resolution.status == "resolved"
    assert resolution.value == "09:00"


@pytest.mark.asyncio
async def test_round_trip_through_pool_reruns_with_merged_parameters():
    seen = []

    async def body(task, progress):
        seen.append(dict(task.input_parameters))
        if "reminder_time" not in task.input_parameters:
            return NeedsConfirmation("What time?", TIMES, {}, "reminder_time")
        return Success({"time": task.input_parameters["reminder_time"]})

    orch, _ = await build_test_orchestrator(ScriptedWorker(body))
    await orch.start()
    task = make_task()
    await orch.store.create(task)
    await orch.pool.enqueue(task)
    await orch.pool.drain(timeout=5)
    assert (await orch.store.get(task.id)).status == TaskStatus.awaiting_confirmation

    reply = await orch.handle("u1", None, "the first one")
    assert reply.status == "confirmation_resolved"
    await orch.pool.drain(timeout=5)

    done = await orch.store.get(task.id)
    assert done.status == TaskStatus.succeeded
    assert done.input_parameters["reminder_time"] == "09:00"
    assert done.result == {"time": "09:00"}
    assert len(seen) == 2
    await orch.shutdown()


@pytest.mark.asyncio
async def test_unrelated_request_leaves_the_question_open():
    async def body(task, progress):
        if task.task_kind == "reminder" and "reminder_time" not in task.input_parameters:
            return NeedsConfirmation("What time?", TIMES, {}, "reminder_time")
        return Success({})

    prospecting = ScriptedWorker(Success({"leads_found": 0}), worker_type=WorkerType.prospecting)
    orch, _ = await build_test_orchestrator(ScriptedWorker(body), prospecting)
    await orch.start()
    task = make_task()
    await orch.store.create(task)
    await orch.pool.enqueue(task)
    await orch.pool.drain(timeout=5)

    reply = await orch.handle("u1", None, "find 20 CTOs in Austin")
    assert reply.status == "task_created"
    assert reply.worker_type == WorkerType.prospecting
    assert await orch.confirmations.find_pending("u1") is not None
    await orch.shutdown()


@pytest.mark.asyncio
async def test_sweep_expires_questions_nobody_answers():
    clock = FakeClock()
    manager, store, contexts, events = await _manager(clock=clock)
    stale = await _suspended(manager, store)
    clock.advance(300)
    fresh = await _suspended(manager, store, user_id="u2")
    clock.advance(301)

    assert await manager.sweep() == 1
    done = await store.get(stale.id)
    assert done.status == TaskStatus.failed
    assert done.error_message == EXPIRED_MESSAGE
    assert await contexts.get("u1", stale.id) is None
    assert (await store.get(fresh.id)).status == TaskStatus.awaiting_confirmation
    assert [e.task_id for e in events.of("terminal")] == [stale.id]
    assert await manager.sweep() == 0


@pytest.mark.asyncio
async def test_background_sweep_fails_expired_task_without_a_new_message():
    async def body(task, progress):
        return NeedsConfirmation("What time?", TIMES, {}, "reminder_time")

    clock = FakeClock()
    settings = make_settings(CONFIRMATION_SWEEP_INTERVAL_S=0.01, CONFIRMATION_TTL_S=600)
    orch, _ = await build_test_orchestrator(ScriptedWorker(body), settings=settings, clock=clock)
    await orch.start()
    task = make_task()
    await orch.store.create(task)
    await orch.pool.enqueue(task)
    await orch.pool.drain(timeout=5)
    assert (await orch.store.get(task.id)).status == TaskStatus.awaiting_confirmation

    clock.advance(601)
    for _ in range(200):
        if (await orch.store.get(task.id)).status == TaskStatus.failed:
            break
        await asyncio.sleep(0.01)

    done = await orch.store.get(task.id)
    assert done.status == TaskStatus.failed
    assert done.error_message == EXPIRED_MESSAGE
    await orch.shutdown()

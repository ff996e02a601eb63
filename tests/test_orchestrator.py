from __future__ import annotations

from datetime import date

import pytest

from taskpilot.agents.communication_worker import CommunicationWorker
from taskpilot.agents.integrations import InMemoryReminderScheduler
from taskpilot.core.llm import CompletionError
from taskpilot.core.orchestrator import GENERAL_FALLBACK_REPLY
from taskpilot.core.quota import InMemoryTaskQuota, TaskQuotaConfig
from taskpilot.db.memory import InMemoryConfirmationStore, InMemoryTaskStore
from taskpilot.models.confirmation_models import ConfirmationContext
from taskpilot.models.outcomes import Success
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import TaskStatus

from tests.helpers import EventLog, ScriptedWorker, build_test_orchestrator, make_task

TODAY = date(2026, 3, 2)


async def _reminder_stack(**kwargs):
    scheduler = InMemoryReminderScheduler()
    worker = CommunicationWorker(scheduler, today=lambda: TODAY)
    orch, _ = await build_test_orchestrator(worker, **kwargs)
    return orch, scheduler


@pytest.mark.asyncio
async def test_dentist_reminder_end_to_end():
    orch, scheduler = await _reminder_stack()
    events = EventLog()
    orch.bus.subscribe(events)
    await orch.start()

    first = await orch.handle("u1", "s1", "remind me about the dentist tomorrow")
    assert first.status == "task_created"
    assert first.worker_type == WorkerType.communication
    assert "Sentinel" in first.reply
    await orch.pool.drain(timeout=5)

    task = await orch.store.get(first.task_id)
    assert task.task_kind == "reminder"
    assert task.status == TaskStatus.awaiting_confirmation
    question = events.of("confirmation_requested")[0]
    assert "the dentist" in question.question
    assert [s.value for s in question.suggested_answers] == ["10:00", "15:00"]

    second = await orch.handle("u1", "s1", "9am")
    assert second.status == "confirmation_resolved"
    assert second.task_id == first.task_id
    await orch.pool.drain(timeout=5)

    done = await orch.store.get(first.task_id)
    assert done.status == TaskStatus.succeeded
    assert done.result["scheduled_for"] == "2026-03-03T09:00:00"
    assert done.result["reminder_text"] == "the dentist"
    reminders = scheduler.list_for("u1")
    assert len(reminders) == 1
    assert reminders[0].scheduled_for.date() == date(2026, 3, 3)
    assert reminders[0].scheduled_for.hour == 9
    assert events.kinds(first.task_id)[-1] == "terminal"
    await orch.shutdown()


@pytest.mark.asyncio
async def test_reminder_with_explicit_time_needs_no_question():
    orch, scheduler = await _reminder_stack()
    await orch.start()

    reply = await orch.handle("u1", None, "remind me to call mom on friday at 6pm")
    await orch.pool.drain(timeout=5)

    done = await orch.store.get(reply.task_id)
    assert done.status == TaskStatus.succeeded
    assert done.result["scheduled_for"] == "2026-03-06T18:00:00"
    assert done.result["reminder_text"] == "call mom"
    assert done.confirmation_rounds == 0
    await orch.shutdown()


@pytest.mark.asyncio
async def test_general_message_is_answered_without_a_task():
    orch, _ = await _reminder_stack()
    reply = await orch.handle("u1", None, "hello there")

    assert reply.status == "answered"
    assert reply.task_id is None
    assert reply.reply == GENERAL_FALLBACK_REPLY
    assert await orch.handle_user_message("u1", None, "hello there") == GENERAL_FALLBACK_REPLY
    assert await orch.store.list_by_user("u1") == []


@pytest.mark.asyncio
async def test_general_reply_uses_completion_with_fallback():
    class DummyCompletion:
        def __init__(self, error=None):
            self.error = error

        async def complete(self, system, user, *, json_mode=False):
            if self.error:
                raise self.error
            return "Hi! Ask me to find leads or set a reminder."

        async def complete_json(self, system, user):
            raise CompletionError("not used")

    orch, _ = await _reminder_stack(completion=DummyCompletion())
    assert (await orch.handle("u1", None, "hey")).reply.startswith("Hi!")

    orch, _ = await _reminder_stack(completion=DummyCompletion(error=CompletionError("completion_timeout")))
    assert (await orch.handle("u1", None, "hey")).reply == GENERAL_FALLBACK_REPLY


@pytest.mark.asyncio
async def test_quota_blocks_task_creation():
    quota = InMemoryTaskQuota(TaskQuotaConfig(tasks_per_period=1, period_s=3600))
    orch, _ = await build_test_orchestrator(ScriptedWorker(Success({})), quota=quota)

    first = await orch.handle("u1", None, "remind me to stretch tomorrow at 9am")
    second = await orch.handle("u1", None, "remind me to drink water tomorrow at 10am")

    assert first.status == "task_created"
    assert second.status == "quota_exceeded"
    assert "limit of 1" in second.reply
    assert len(await orch.store.list_by_user("u1")) == 1


@pytest.mark.asyncio
async def test_empty_message_is_rejected():
    orch, _ = await _reminder_stack()
    with pytest.raises(ValueError):
        await orch.handle("u1", None, "   ")


@pytest.mark.asyncio
async def test_cancel_awaiting_task_closes_its_question():
    orch, _ = await _reminder_stack()
    await orch.start()
    reply = await orch.handle("u1", None, "remind me about the dentist tomorrow")
    await orch.pool.drain(timeout=5)

    assert await orch.cancel_task(reply.task_id) is True
    done = await orch.store.get(reply.task_id)
    assert done.status == TaskStatus.failed
    assert await orch.confirmations.find_pending("u1") is None
    await orch.shutdown()


@pytest.mark.asyncio
async def test_cancel_after_answer_but_before_resume_fails_the_task():
    orch, scheduler = await _reminder_stack()
    await orch.start()
    reply = await orch.handle("u1", None, "remind me about the dentist tomorrow")
    await orch.pool.drain(timeout=5)

    orch.pool.pause(WorkerType.communication)
    answered = await orch.handle("u1", None, "9am")
    assert answered.status == "confirmation_resolved"
    assert (await orch.store.get(reply.task_id)).status == TaskStatus.awaiting_confirmation

    assert await orch.cancel_task(reply.task_id) is True
    orch.pool.resume(WorkerType.communication)
    await orch.pool.drain(timeout=5)

    done = await orch.store.get(reply.task_id)
    assert done.status == TaskStatus.failed
    assert "cancelled" in done.error_message
    assert scheduler.list_for("u1") == []
    assert await orch.cancel_task(reply.task_id) is False
    await orch.shutdown()


@pytest.mark.asyncio
async def test_restart_resumes_answered_tasks_and_keeps_open_questions():
    store = InMemoryTaskStore()
    contexts = InMemoryConfirmationStore()
    answered = make_task(input_parameters={"reminder_time": "09:00"})
    waiting = make_task(user_id="u2")
    for task in (answered, waiting):
        await store.create(task)
        await store.transition(task.id, TaskStatus.running)
        await store.transition(task.id, TaskStatus.awaiting_confirmation)
    await contexts.open(
        ConfirmationContext(
            task_id=waiting.id,
            user_id="u2",
            worker_type=WorkerType.communication,
            pending_question="What time?",
            answer_key="reminder_time",
        )
    )

    worker = ScriptedWorker(Success({"ok": True}))
    orch, _ = await build_test_orchestrator(worker, store=store, contexts=contexts)
    await orch.start()
    await orch.pool.drain(timeout=5)

    assert (await store.get(answered.id)).status == TaskStatus.succeeded
    assert (await store.get(waiting.id)).status == TaskStatus.awaiting_confirmation
    assert [t.id for t in worker.calls] == [answered.id]
    await orch.shutdown()

"""Communication worker: reminders, plus email / calendar requests.

Reminders without a stated time suspend with a time question and suggested
times; the resumed run reads the answer from `reminder_time`.
"""

from __future__ import annotations

from datetime import date, datetime, time
import re
from typing import Callable

import structlog

from taskpilot.agents.base import BaseWorker, ProgressReporter
from taskpilot.agents.integrations import IntegrationError, Mailbox, ReminderScheduler
from taskpilot.core.timeparse import display_time, parse_time, resolve_date
from taskpilot.models.confirmation_models import SuggestedAnswer
from taskpilot.models.outcomes import Failure, NeedsConfirmation, Outcome, Success, Unavailable
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import Task
from taskpilot.models.task_parameters import CommunicationParameters, ReminderParameters

log = structlog.get_logger(__name__)

_SUBJECT_RE = re.compile(r"\bremind(?:er)?(?:\s+me)?\s+(?:about|to|of|that|for)\s+(.+)", re.IGNORECASE)
_TRAILING_WHEN_RE = re.compile(
    r"\s+(?:(?:on|at|by|this|next)\s+)?"
    r"(?:today|tonight|tomorrow|day after tomorrow|next week|"
    r"monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
    r"\d{4}-\d{2}-\d{2}|\d{1,2}(?::\d{2})?\s*(?:am|pm)|\d{1,2}:\d{2}|noon|"
    r"morning|afternoon|evening)\b.*$",
    re.IGNORECASE,
)
_APPOINTMENT_WORDS = ("appointment", "dentist", "doctor", "meeting", "interview", "call with")
_BIRTHDAY_WORDS = ("birthday", "bday", "anniversary")

SUGGESTED_TIMES: dict[str, list[SuggestedAnswer]] = {
    "general": [
        SuggestedAnswer(value="09:00", label="9:00 AM", rationale="Good morning time to start the day"),
        SuggestedAnswer(value="14:00", label="2:00 PM", rationale="Afternoon reminder when you're active"),
    ],
    "birthday": [
        SuggestedAnswer(value="09:00", label="9:00 AM", rationale="Morning reminder so you have the whole day to celebrate"),
        SuggestedAnswer(value="08:00", label="8:00 AM", rationale="Early reminder to plan something special"),
    ],
    "appointment": [
        SuggestedAnswer(value="10:00", label="10:00 AM", rationale="Good time for appointment reminders"),
        SuggestedAnswer(value="15:00", label="3:00 PM", rationale="Afternoon reminder for preparation"),
    ],
}


def reminder_subject(message: str) -> str:
    m = _SUBJECT_RE.search(message)
    subject = m.group(1) if m else message
    subject = _TRAILING_WHEN_RE.sub("", subject).strip(" .!?")
    return subject or "your reminder"


def infer_reminder_type(text: str) -> str:
    lowered = text.lower()
    if any(word in lowered for word in _BIRTHDAY_WORDS):
        return "birthday"
    if any(word in lowered for word in _APPOINTMENT_WORDS):
        return "appointment"
    return "general"


class CommunicationWorker(BaseWorker):
    worker_type = WorkerType.communication
    task_kinds = frozenset({"reminder", "email_check", "auto_reply", "calendar_booking"})
    display_name = "Sentinel"

    def __init__(
        self,
        scheduler: ReminderScheduler,
        *,
        mailbox: Mailbox | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._scheduler = scheduler
        self._mailbox = mailbox
        self._today = today

    async def run(self, task: Task, progress: ProgressReporter) -> Outcome:
        if task.task_kind == "reminder":
            return await self._reminder(task, progress)
        if task.task_kind == "calendar_booking":
            return Unavailable("calendar access is not configured")
        return await self._email(task, progress)

    async def _reminder(self, task: Task, progress: ProgressReporter) -> Outcome:
        params = self.parameters(task, ReminderParameters)
        await progress(20, "analyzing_request")

        text = params.reminder_text or reminder_subject(params.original_message or task.original_message)
        reminder_type = params.reminder_type
        if reminder_type == "general":
            reminder_type = infer_reminder_type(f"{text} {task.original_message}")

        today = self._today()
        day = resolve_date(params.reminder_date, today=today) or resolve_date(task.original_message, today=today) or today

        at = self._reminder_time(params, task.original_message)
        if at is None:
            await progress(40, "awaiting_time")
            suggestions = SUGGESTED_TIMES[reminder_type]
            return NeedsConfirmation(
                question=(
                    f"What time would you like me to remind you about {text}? "
                    f"I have a few suggestions based on the type of reminder."
                ),
                suggested_answers=list(suggestions),
                # Date is pinned now so a late answer doesn't shift "tomorrow".
                partial_state={"reminder_text": text, "reminder_date": day.isoformat(), "reminder_type": reminder_type},
                answer_key="reminder_time",
            )

        await progress(70, "reminder_creation")
        when = datetime.combine(day, at)
        try:
            scheduled = await self._scheduler.schedule(
                reminder_id=task.id,
                user_id=task.user_id,
                text=text,
                when=when,
                reminder_type=reminder_type,
            )
        except IntegrationError as e:
            log.warning("reminder_schedule_failed", task_id=task.id, error=str(e))
            return Failure("I couldn't save your reminder. I'll try again.")

        await progress(100, "reminder_scheduled")
        return Success(
            {
                "reminder_id": scheduled.reminder_id,
                "reminder_text": text,
                "reminder_type": reminder_type,
                "scheduled_for": when.isoformat(),
                "display": f"{when:%A, %B} {when.day} at {display_time(at.strftime('%H:%M'))}",
            }
        )

    @staticmethod
    def _reminder_time(params: ReminderParameters, original_message: str) -> time | None:
        # A resolved answer wins; otherwise only an explicit time in the message counts.
        if params.reminder_time:
            found = parse_time(params.reminder_time)
            if found is not None:
                return time.fromisoformat(found.value)
        found = parse_time(original_message)
        if found is not None and found.explicit:
            return time.fromisoformat(found.value)
        return None

    async def _email(self, task: Task, progress: ProgressReporter) -> Outcome:
        if self._mailbox is None:
            return Unavailable("mailbox access is not configured")
        params = self.parameters(task, CommunicationParameters)
        await progress(30, "email_fetch")
        try:
            summary = await self._mailbox.summarize(task.user_id, email_type=params.email_type)
        except IntegrationError as e:
            log.warning("mailbox_failed", task_id=task.id, error=str(e))
            return Failure("I couldn't reach your mailbox just now.")
        await progress(100, "email_summarized")
        return Success({"request_type": params.request_type, **summary})

"""Confirmation state machine: suspend a task on a question, resume it on the answer.

Flow:
    running --NeedsConfirmation--> awaiting_confirmation (context opened, question published)
    user reply --resolve--> answer merged into input_parameters, context deleted,
                            task handed back to the pool for re-admission
    low-confidence reply --> one clarifying question, then terminal failure
    TTL elapsed          --> terminal failure ("confirmation expired")
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import re
from typing import Any, Callable, Literal

import structlog
from pydantic import ValidationError

from taskpilot.core.llm import CompletionClient, CompletionError
from taskpilot.core.runner import TaskLifecycle
from taskpilot.core.settings import Settings
from taskpilot.core.timeparse import parse_time
from taskpilot.db.store import ConfirmationAlreadyOpen, ConfirmationStore, InvalidTransition, TaskNotFound
from taskpilot.models.confirmation_models import AnswerExtraction, ConfirmationContext, SuggestedAnswer
from taskpilot.models.events import ConfirmationRequested, ConfirmationResolved
from taskpilot.models.outcomes import NeedsConfirmation
from taskpilot.models.task_models import Task, TaskStatus, utc_now
from taskpilot.models.task_parameters import decode_parameters

log = structlog.get_logger(__name__)

UNRESOLVED_MESSAGE = "could not resolve parameters"
EXPIRED_MESSAGE = "confirmation expired"
ABANDONED_MESSAGE = "The task was cancelled while waiting for your answer."

_ORDINALS = {
    "first": 0, "1st": 0, "one": 0,
    "second": 1, "2nd": 1, "two": 1,
    "third": 2, "3rd": 2, "three": 2,
    "fourth": 3, "4th": 3, "four": 3,
}
_ORDINAL_RE = re.compile(r"\b(first|1st|second|2nd|third|3rd|fourth|4th|last)\b")
_NUMBERED_RE = re.compile(r"\b(?:option|number|choice|#)\s*(\d+|one|two|three|four)\b|#(\d+)")
_AFFIRMATIVE_RE = re.compile(
    r"^(yes|yeah|yep|yup|sure|ok|okay|sounds good|that works|perfect|great|fine|do it|go ahead)\b"
)
_URL_RE = re.compile(r"https?://\S+")

ANSWER_SYSTEM_PROMPT = """Extract the answer to a pending question from the user's reply.

Map the reply to one of the suggested answers when it refers to one (by position, label or meaning),
otherwise extract the concrete value it states. Times must be HH:MM in 24-hour format.

Return JSON: {"value": <answer or null>, "confidence": <0.0-1.0>}
Use null with confidence 0.0 when the reply does not answer the question."""


@dataclass(frozen=True)
class ConfirmationConfig:
    ttl_s: int = 10 * 60
    min_confidence: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfirmationConfig":
        return cls(
            ttl_s=settings.CONFIRMATION_TTL_S,
            min_confidence=settings.CONFIRMATION_MIN_CONFIDENCE,
        )


@dataclass(frozen=True)
class Resolution:
    status: Literal["resolved", "clarify", "failed"]
    message: str
    task: Task | None = None
    value: Any | None = None


def expects_time(context: ConfirmationContext) -> bool:
    if context.answer_key.endswith("time"):
        return True
    return any(isinstance(s.value, str) and re.fullmatch(r"\d{2}:\d{2}", s.value) for s in context.suggested_answers)


def match_answer(context: ConfirmationContext, message: str) -> AnswerExtraction:
    """Rule-based answer extraction used when the completion service is unavailable or unsure."""
    text = message.strip().lower().rstrip(".!")
    suggestions = context.suggested_answers
    if not text:
        return AnswerExtraction()

    if suggestions:
        index = _ordinal_index(text, len(suggestions))
        if index is not None:
            return AnswerExtraction(value=suggestions[index].value, confidence=0.9, method="ordinal")

    if expects_time(context):
        found = parse_time(text)
        if found is not None:
            return AnswerExtraction(value=found.value, confidence=found.confidence, method="time")

    for suggestion in suggestions:
        value_text = str(suggestion.value).lower()
        label = (suggestion.label or "").lower()
        if text == value_text or (label and (text == label or label in text)):
            return AnswerExtraction(value=suggestion.value, confidence=0.85, method="suggestion")

    if suggestions and _AFFIRMATIVE_RE.match(text):
        return AnswerExtraction(value=suggestions[0].value, confidence=0.7, method="affirmative")

    url = _URL_RE.search(message)
    if url:
        return AnswerExtraction(value=url.group(0).rstrip(".,)"), confidence=0.9, method="url")

    # Open question without suggestions: the reply itself is the answer.
    if not suggestions and not expects_time(context):
        return AnswerExtraction(value=message.strip(), confidence=0.6, method="free_text")
    return AnswerExtraction()


def _ordinal_index(text: str, count: int) -> int | None:
    m = _NUMBERED_RE.search(text)
    if m:
        token = m.group(1) or m.group(2)
        index = int(token) - 1 if token.isdigit() else _ORDINALS[token]
        return index if 0 <= index < count else None
    if text.isdigit():
        index = int(text) - 1
        return index if 0 <= index < count else None
    m = _ORDINAL_RE.search(text)
    if m:
        if m.group(1) == "last":
            return count - 1
        index = _ORDINALS[m.group(1)]
        return index if index < count else None
    return None


class ConfirmationManager:
    def __init__(
        self,
        lifecycle: TaskLifecycle,
        contexts: ConfirmationStore,
        *,
        completion: CompletionClient | None = None,
        config: ConfirmationConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._lifecycle = lifecycle
        self._store = lifecycle.store
        self._bus = lifecycle.bus
        self._contexts = contexts
        self._completion = completion
        self._config = config or ConfirmationConfig()
        self._clock = clock

    async def suspend(self, task: Task, request: NeedsConfirmation) -> Task:
        if task.confirmation_rounds >= 1:
            log.warning("confirmation_repeated", task_id=task.id)
            return await self._lifecycle.fail(task, UNRESOLVED_MESSAGE)

        task = await self._store.transition(task.id, TaskStatus.awaiting_confirmation)
        task = await self._store.mark_confirmation_requested(task.id)
        now = self._clock()
        context = ConfirmationContext(
            task_id=task.id,
            user_id=task.user_id,
            worker_type=task.worker_type,
            pending_question=request.question,
            suggested_answers=list(request.suggested_answers),
            answer_key=request.answer_key,
            partial_state=dict(request.partial_state),
            created_at=now,
            expires_at=now + timedelta(seconds=self._config.ttl_s),
        )
        try:
            await self._contexts.open(context)
        except ConfirmationAlreadyOpen:
            log.warning("confirmation_context_replaced", task_id=task.id)
            await self._contexts.replace(context)

        await self._publish_question(context, clarification=False)
        log.info("confirmation_opened", task_id=task.id, answer_key=context.answer_key)
        return task

    async def find_pending(self, user_id: str) -> ConfirmationContext | None:
        """Oldest open context for the user; expired ones fail their task on the way."""
        now = self._clock()
        for context in await self._contexts.list_open(user_id):
            if not context.is_expired(now):
                return context
            await self.expire(context)
        return None

    async def expire(self, context: ConfirmationContext) -> None:
        await self._close(context, EXPIRED_MESSAGE)
        log.info("confirmation_expired", task_id=context.task_id, user_id=context.user_id)

    async def sweep(self) -> int:
        """Expire every context past its TTL, whether or not its user writes again."""
        expired = await self._contexts.list_expired(self._clock())
        for context in expired:
            await self.expire(context)
        return len(expired)

    async def is_open(self, task: Task) -> bool:
        return await self._contexts.get(task.user_id, task.id) is not None

    async def abandon(self, task: Task) -> bool:
        context = await self._contexts.get(task.user_id, task.id)
        if context is None:
            return False
        await self._close(context, ABANDONED_MESSAGE)
        return True

    def looks_like_answer(self, context: ConfirmationContext, message: str) -> bool:
        extraction = match_answer(context, message)
        return extraction.method not in ("none", "free_text") and extraction.confidence >= self._config.min_confidence

    async def resolve(self, context: ConfirmationContext, message: str) -> Resolution:
        extraction = await self.extract_answer(context, message)
        if extraction.value is not None and extraction.confidence >= self._config.min_confidence:
            merged = {**context.partial_state, context.answer_key: extraction.value}
            try:
                task = await self._store.get(context.task_id)
                decode_parameters(task.task_kind, {**task.input_parameters, **merged})
            except ValidationError:
                log.info("confirmation_answer_invalid", task_id=context.task_id, value=str(extraction.value)[:100])
            else:
                return await self._accept(context, merged, extraction)

        if context.clarifications_asked >= 1:
            task = await self._close(context, UNRESOLVED_MESSAGE)
            return Resolution("failed", f"Sorry, I couldn't work out your answer, so I stopped that task ({UNRESOLVED_MESSAGE}).", task=task)

        question = self.clarifying_question(context)
        updated = context.model_copy(
            update={"clarifications_asked": context.clarifications_asked + 1, "pending_question": question}
        )
        await self._contexts.replace(updated)
        await self._publish_question(updated, clarification=True)
        log.info("confirmation_clarification_asked", task_id=context.task_id, confidence=extraction.confidence)
        return Resolution("clarify", question)

    async def extract_answer(self, context: ConfirmationContext, message: str) -> AnswerExtraction:
        rule_based = match_answer(context, message)
        if rule_based.confidence >= 0.85 or self._completion is None:
            return rule_based

        suggestions = "\n".join(
            f"{i}. value={s.value!r} label={s.display!r}" for i, s in enumerate(context.suggested_answers, start=1)
        )
        user = (
            f"Question: {context.pending_question}\n"
            f"Answer field: {context.answer_key}\n"
            f"Suggested answers:\n{suggestions or '(none)'}\n"
            f"User reply: \"{message}\""
        )
        try:
            data = await self._completion.complete_json(ANSWER_SYSTEM_PROMPT, user)
            llm_answer = AnswerExtraction(
                value=data.get("value"),
                confidence=float(data.get("confidence") or 0.0),
                method="completion",
            )
        except (CompletionError, ValidationError, TypeError, ValueError) as e:
            log.info("answer_extraction_fallback", task_id=context.task_id, reason=str(e)[:200])
            return rule_based

        if llm_answer.value is None:
            llm_answer = AnswerExtraction(confidence=0.0, method="completion")
        return llm_answer if llm_answer.confidence > rule_based.confidence else rule_based

    def clarifying_question(self, context: ConfirmationContext) -> str:
        options = [s.display for s in context.suggested_answers]
        if not options:
            return f"Sorry, I didn't catch that. {context.pending_question}"
        if len(options) == 1:
            return f'Sorry, I didn\'t catch that. Did you mean "{options[0]}"? Reply "yes" or give me a different answer.'
        listed = ", ".join(f'"{o}"' for o in options[:-1]) + f' or "{options[-1]}"'
        hint = ' You can also say a specific time like "9:00 AM".' if expects_time(context) else ""
        return f"Sorry, I didn't catch that. Did you mean {listed}?{hint}"

    async def _accept(self, context: ConfirmationContext, merged: dict[str, Any], extraction: AnswerExtraction) -> Resolution:
        task = await self._store.merge_parameters(context.task_id, merged)
        await self._contexts.delete(context.user_id, context.task_id)
        await self._bus.publish(
            ConfirmationResolved(
                task_id=task.id,
                user_id=task.user_id,
                worker_type=task.worker_type,
                answer_key=context.answer_key,
                value=extraction.value,
            )
        )
        log.info("confirmation_resolved", task_id=task.id, method=extraction.method, confidence=extraction.confidence)
        return Resolution("resolved", "Got it, picking your task back up.", task=task, value=extraction.value)

    async def _close(self, context: ConfirmationContext, message: str) -> Task | None:
        await self._contexts.delete(context.user_id, context.task_id)
        try:
            task = await self._store.get(context.task_id)
            return await self._lifecycle.fail(task, message)
        except (TaskNotFound, InvalidTransition) as e:
            log.warning("confirmation_close_skipped", task_id=context.task_id, error=str(e))
            return None

    async def _publish_question(self, context: ConfirmationContext, *, clarification: bool) -> None:
        await self._bus.publish(
            ConfirmationRequested(
                task_id=context.task_id,
                user_id=context.user_id,
                worker_type=context.worker_type,
                question=context.pending_question,
                suggested_answers=context.suggested_answers,
                clarification=clarification,
            )
        )

"""Classifier: routes an inbound message to a worker type and task kind.

Two stages:
- Rule-based routing over an ordered predicate registry. The first predicate
  whose keywords match wins, so declaration order is the tie-break policy.
  The same text always yields the same worker type and task kind.
- One parameter-extraction call to the completion service for the chosen task
  kind. Any failure there falls back to that kind's default parameters.

No match routes to the router itself (task kind "general"); no task is created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import re
from typing import Any

import structlog
from pydantic import ValidationError

from taskpilot.core.llm import CompletionClient, CompletionError
from taskpilot.models.routing_models import RoutingDecision, WorkerType
from taskpilot.models.task_parameters import decode_parameters, default_parameters

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RoutePredicate:
    """One routing rule.

    Matches when any keyword appears in the message, or when every word of an
    `all_of` group does. Keywords match whole words plus common inflections
    ('book' matches 'booking' but not 'facebook'; 'find' does not match
    'findings'). Keywords of three characters or fewer match exactly.
    """

    name: str
    worker_type: WorkerType
    task_kind: str
    trigger_keywords: tuple[str, ...] = ()
    all_of: tuple[tuple[str, ...], ...] = ()
    confidence: float = 0.9

    def matches(self, text: str) -> bool:
        if any(_contains(text, kw) for kw in self.trigger_keywords):
            return True
        return any(all(_contains(text, kw) for kw in group) for group in self.all_of)


@lru_cache(maxsize=256)
def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    kw = keyword.lower()
    if len(kw) <= 3:
        return re.compile(r"\b" + re.escape(kw) + r"\b")
    if kw.endswith("e"):
        return re.compile(r"\b" + re.escape(kw[:-1]) + r"(?:e|es|ed|er|ers|ing)\b")
    return re.compile(r"\b" + re.escape(kw) + r"(?:s|es|ed|er|ers|ing)?\b")


def _contains(text: str, keyword: str) -> bool:
    return _keyword_pattern(keyword).search(text) is not None


class PredicateRegistry:
    """Ordered predicate list; earlier predicates take priority."""

    def __init__(self) -> None:
        self._predicates: list[RoutePredicate] = []

    def register(self, predicate: RoutePredicate) -> None:
        self._predicates.append(predicate)
        log.debug(
            "route_predicate_registered",
            name=predicate.name,
            worker_type=predicate.worker_type.value,
            task_kind=predicate.task_kind,
        )

    def all(self) -> list[RoutePredicate]:
        return list(self._predicates)

    def match(self, message: str) -> RoutePredicate | None:
        text = message.lower()
        for predicate in self._predicates:
            if predicate.matches(text):
                return predicate
        return None


def create_default_registry() -> PredicateRegistry:
    registry = PredicateRegistry()

    # Prospecting first: "find" / "generate" anywhere wins over later categories.
    registry.register(RoutePredicate(
        name="lead_generation",
        worker_type=WorkerType.prospecting,
        task_kind="lead_generation",
        trigger_keywords=("find", "generate", "scrape", "apollo", "prospect"),
    ))

    registry.register(RoutePredicate(
        name="lead_research",
        worker_type=WorkerType.research,
        task_kind="lead_research",
        trigger_keywords=("research", "linkedin", "analyze", "analyse"),
    ))

    # Communication: reminders before the generic calendar / email rules.
    registry.register(RoutePredicate(
        name="reminder",
        worker_type=WorkerType.communication,
        task_kind="reminder",
        trigger_keywords=("remind", "reminder"),
        confidence=0.85,
    ))
    registry.register(RoutePredicate(
        name="calendar_booking",
        worker_type=WorkerType.communication,
        task_kind="calendar_booking",
        trigger_keywords=("calendar", "cal", "schedule", "meeting", "appointment", "book"),
        confidence=0.85,
    ))
    registry.register(RoutePredicate(
        name="auto_reply",
        worker_type=WorkerType.communication,
        task_kind="auto_reply",
        trigger_keywords=("auto reply", "auto-reply", "autoreply", "respond to"),
        all_of=(("reply", "email"), ("reply", "mail")),
        confidence=0.85,
    ))
    registry.register(RoutePredicate(
        name="email_check",
        worker_type=WorkerType.communication,
        task_kind="email_check",
        trigger_keywords=(
            "email", "gmail", "inbox", "message", "mail",
            "automate", "automation", "monitor", "workflow",
        ),
        confidence=0.85,
    ))
    return registry


EXTRACTION_PROMPTS: dict[str, str] = {
    "lead_generation": """Extract lead generation parameters from the message.

Return a JSON object with these fields:
- locations: array of location names (cities, states, countries)
- businesses: array of business types or industries
- job_titles: array of job titles or roles
- max_results: number

Omit a field (or use null) when the message does not mention it.""",
    "lead_research": """Extract research parameters from the message.

Return a JSON object with these fields:
- linkedin_url: the LinkedIn profile URL if provided, else null
- lead_id: lead ID if mentioned, else null
- research_type: type of research requested""",
    "reminder": """Extract reminder parameters from the message.

Return a JSON object with these fields:
- reminder_text: what the user wants to be reminded about (short phrase)
- reminder_date: YYYY-MM-DD if an exact date is given, otherwise the relative phrase used ("tomorrow", "friday"), else null
- reminder_time: HH:MM in 24-hour format ONLY if the user states a time, else null. Never guess a time.
- reminder_type: "appointment", "birthday" or "general\"""",
    "calendar_booking": """Extract calendar booking parameters from the message.

Return a JSON object with these fields:
- requested_date: YYYY-MM-DD or the relative phrase used, else null
- requested_time: HH:MM in 24-hour format if stated, else null""",
    "auto_reply": """Extract email automation parameters from the message.

Return a JSON object with these fields:
- email_type: which emails the user means (e.g. "customer inquiries"), else null""",
    "email_check": """Extract email parameters from the message.

Return a JSON object with these fields:
- email_type: which emails the user wants checked (e.g. "unread", "from my boss"), else null""",
}


@dataclass(frozen=True)
class ClassifierConfig:
    router_confidence: float = 0.4
    extract_parameters: bool = True
    skip_kinds: frozenset[str] = field(default_factory=lambda: frozenset({"general"}))


class Classifier:
    def __init__(
        self,
        *,
        completion: CompletionClient | None = None,
        registry: PredicateRegistry | None = None,
        config: ClassifierConfig | None = None,
    ) -> None:
        self._completion = completion
        self._registry = registry or create_default_registry()
        self._config = config or ClassifierConfig()

    @property
    def registry(self) -> PredicateRegistry:
        return self._registry

    def route(self, message: str) -> RoutingDecision:
        """Rule-based routing only; parameters are the task kind's defaults."""
        text = message.strip()
        predicate = self._registry.match(text) if text else None
        if predicate is None:
            return RoutingDecision(
                target_worker_type=WorkerType.router,
                task_kind="general",
                confidence=self._config.router_confidence if text else 0.0,
                extracted_parameters=default_parameters("general", text),
                original_message=text,
                rationale="no_predicate_matched" if text else "empty_message",
            )
        return RoutingDecision(
            target_worker_type=predicate.worker_type,
            task_kind=predicate.task_kind,
            confidence=predicate.confidence,
            extracted_parameters=default_parameters(predicate.task_kind, text),
            original_message=text,
            rationale=f"keyword_match:{predicate.name}",
        )

    async def classify(self, message: str, user_id: str | None = None) -> RoutingDecision:
        decision = self.route(message)
        if not decision.creates_task or decision.task_kind in self._config.skip_kinds:
            return decision

        params = await self._extract_parameters(decision.task_kind, decision.original_message)
        log.info(
            "message_classified",
            user_id=user_id,
            worker_type=decision.target_worker_type.value,
            task_kind=decision.task_kind,
            rationale=decision.rationale,
        )
        return decision.model_copy(update={"extracted_parameters": params})

    async def _extract_parameters(self, task_kind: str, message: str) -> dict[str, Any]:
        defaults = default_parameters(task_kind, message)
        prompt = EXTRACTION_PROMPTS.get(task_kind)
        if not self._config.extract_parameters or prompt is None or self._completion is None:
            return defaults

        try:
            raw = await self._completion.complete_json(prompt, f'Message: "{message}"')
            params = decode_parameters(task_kind, {**raw, "original_message": message})
        except (CompletionError, ValidationError) as e:
            log.info("parameter_extraction_fallback", task_kind=task_kind, reason=str(e)[:200])
            return defaults
        return params.model_dump()

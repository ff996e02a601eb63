"""External services the reference workers call, and their default adapters.

The core never looks inside these: workers receive them at construction and a
missing one shows up through the worker's capability check.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, Field

from taskpilot.models.task_models import utc_now
from taskpilot.models.task_parameters import ProspectSearchParameters

log = structlog.get_logger(__name__)


class IntegrationError(RuntimeError):
    """An external service call failed (transport error or unusable response)."""


class Lead(BaseModel):
    name: str
    title: str | None = None
    company: str | None = None
    location: str | None = None
    email: str | None = None
    linkedin_url: str | None = None


class ScheduledReminder(BaseModel):
    reminder_id: str
    user_id: str
    text: str
    scheduled_for: datetime
    reminder_type: str = "general"
    created_at: datetime = Field(default_factory=utc_now)


@runtime_checkable
class ProspectSource(Protocol):
    async def search(self, params: ProspectSearchParameters) -> list[Lead]: ...


@runtime_checkable
class ProfileResearcher(Protocol):
    async def research(self, linkedin_url: str, *, research_type: str = "profile") -> dict[str, Any]: ...


@runtime_checkable
class ReminderScheduler(Protocol):
    async def schedule(
        self,
        *,
        reminder_id: str,
        user_id: str,
        text: str,
        when: datetime,
        reminder_type: str = "general",
    ) -> ScheduledReminder: ...


@runtime_checkable
class Mailbox(Protocol):
    async def summarize(self, user_id: str, *, email_type: str | None = None) -> dict[str, Any]: ...


async def _post_json(base_url: str, path: str, payload: dict[str, Any], *, timeout_s: float) -> Any:
    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=timeout_s) as client:
            resp = await client.post(path, json=payload)
            resp.raise_for_status()
            return resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise IntegrationError(f"{path} failed: {type(e).__name__}") from e


class HttpProspectSource:
    """Lead search service reached over HTTP (`POST /search`)."""

    def __init__(self, base_url: str, *, timeout_s: float = 60.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    async def search(self, params: ProspectSearchParameters) -> list[Lead]:
        data = await _post_json(
            self._base_url,
            "/search",
            params.model_dump(exclude={"original_message"}),
            timeout_s=self._timeout_s,
        )
        rows = data.get("leads", []) if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise IntegrationError("/search returned an unexpected payload")
        return [Lead.model_validate(row) for row in rows if isinstance(row, dict) and row.get("name")]


class HttpProfileResearcher:
    """Profile research service reached over HTTP (`POST /research`)."""

    def __init__(self, base_url: str, *, timeout_s: float = 90.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    async def research(self, linkedin_url: str, *, research_type: str = "profile") -> dict[str, Any]:
        data = await _post_json(
            self._base_url,
            "/research",
            {"linkedin_url": linkedin_url, "research_type": research_type},
            timeout_s=self._timeout_s,
        )
        if not isinstance(data, dict):
            raise IntegrationError("/research returned an unexpected payload")
        return data


class InMemoryReminderScheduler:
    """Keeps reminders in process; keyed by reminder id so a retried run overwrites."""

    def __init__(self) -> None:
        self._reminders: dict[str, ScheduledReminder] = {}
        self._lock = asyncio.Lock()

    async def schedule(
        self,
        *,
        reminder_id: str,
        user_id: str,
        text: str,
        when: datetime,
        reminder_type: str = "general",
    ) -> ScheduledReminder:
        reminder = ScheduledReminder(
            reminder_id=reminder_id,
            user_id=user_id,
            text=text,
            scheduled_for=when,
            reminder_type=reminder_type,
        )
        async with self._lock:
            self._reminders[reminder_id] = reminder
        log.info("reminder_scheduled", reminder_id=reminder_id, scheduled_for=when.isoformat())
        return reminder

    def list_for(self, user_id: str) -> list[ScheduledReminder]:
        return sorted(
            (r for r in self._reminders.values() if r.user_id == user_id),
            key=lambda r: r.scheduled_for,
        )

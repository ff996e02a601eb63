"""Pydantic input models per task kind.

Parameters are decoded once, when the task is created (and again after a
confirmation merge), so workers read typed fields instead of ad-hoc dict keys.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskpilot.models.routing_models import WorkerType


class TaskParameters(BaseModel):
    """Fields shared by every task kind."""

    model_config = ConfigDict(extra="ignore")

    original_message: str = ""


class ProspectSearchParameters(TaskParameters):
    locations: list[str] = Field(default_factory=lambda: ["United States"])
    businesses: list[str] = Field(default_factory=lambda: ["Technology", "SaaS"])
    job_titles: list[str] = Field(default_factory=lambda: ["CEO", "Founder", "VP"])
    max_results: int = Field(default=100, ge=1, le=1000)

    @field_validator("locations", "businesses", "job_titles", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class ResearchParameters(TaskParameters):
    linkedin_url: str | None = None
    lead_id: str | None = None
    research_type: str = "profile"


class ReminderParameters(TaskParameters):
    reminder_text: str | None = None
    # ISO date (YYYY-MM-DD) or a relative expression ("tomorrow", "friday").
    reminder_date: str | None = None
    # 24-hour HH:MM once known.
    reminder_time: str | None = None
    reminder_type: Literal["general", "appointment", "birthday"] = "general"


class CommunicationParameters(TaskParameters):
    request_type: Literal["email_check", "auto_reply", "calendar_booking"] = "email_check"
    email_type: str | None = None
    requested_date: str | None = None
    requested_time: str | None = None


class GeneralParameters(TaskParameters):
    pass


PARAMETER_SCHEMAS: dict[str, type[TaskParameters]] = {
    "lead_generation": ProspectSearchParameters,
    "lead_research": ResearchParameters,
    "reminder": ReminderParameters,
    "email_check": CommunicationParameters,
    "auto_reply": CommunicationParameters,
    "calendar_booking": CommunicationParameters,
    "general": GeneralParameters,
}

# Used when parameter extraction fails or no completion service is configured.
DEFAULT_TASK_KIND: dict[WorkerType, str] = {
    WorkerType.router: "general",
    WorkerType.prospecting: "lead_generation",
    WorkerType.research: "lead_research",
    WorkerType.communication: "email_check",
}


def schema_for(task_kind: str) -> type[TaskParameters]:
    return PARAMETER_SCHEMAS.get(task_kind, GeneralParameters)


def decode_parameters(task_kind: str, raw: dict[str, Any]) -> TaskParameters:
    """Validate a raw parameter map against the schema for `task_kind`.

    Null values are dropped first so schema defaults apply to fields the
    extraction left empty.
    """
    cleaned = {k: v for k, v in raw.items() if v is not None}
    if schema_for(task_kind) is CommunicationParameters:
        cleaned.setdefault("request_type", task_kind)
    return schema_for(task_kind).model_validate(cleaned)


def default_parameters(task_kind: str, message: str) -> dict[str, Any]:
    """Deterministic default parameter set for a task kind."""
    return decode_parameters(task_kind, {"original_message": message}).model_dump()

"""Tagged outcome of a single worker run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from taskpilot.models.confirmation_models import SuggestedAnswer


@dataclass(frozen=True)
class Success:
    payload: Any


@dataclass(frozen=True)
class Failure:
    # Plain-language message; raw upstream error text belongs in logs only.
    message: str
    retryable: bool = True


@dataclass(frozen=True)
class NeedsConfirmation:
    question: str
    suggested_answers: list[SuggestedAnswer] = field(default_factory=list)
    partial_state: dict[str, Any] = field(default_factory=dict)
    # input_parameters key the user's answer fills in.
    answer_key: str = "answer"


@dataclass(frozen=True)
class Unavailable:
    """The worker's external dependency is not configured."""

    reason: str


Outcome = Union[Success, Failure, NeedsConfirmation, Unavailable]

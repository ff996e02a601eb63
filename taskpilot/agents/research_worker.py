"""Research worker: profile research through an injected `ProfileResearcher`."""

from __future__ import annotations

import structlog

from taskpilot.agents.base import BaseWorker, ProgressReporter
from taskpilot.agents.integrations import IntegrationError, ProfileResearcher
from taskpilot.core.settings import Settings
from taskpilot.models.outcomes import Failure, NeedsConfirmation, Outcome, Success, Unavailable
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import Task
from taskpilot.models.task_parameters import ResearchParameters

log = structlog.get_logger(__name__)


class ResearchWorker(BaseWorker):
    worker_type = WorkerType.research
    task_kinds = frozenset({"lead_research"})
    display_name = "Sage"

    def __init__(self, researcher: ProfileResearcher | None = None) -> None:
        self._researcher = researcher

    def check_available(self, settings: Settings | None) -> str | None:
        if self._researcher is None:
            return "no research service is configured"
        return None

    async def run(self, task: Task, progress: ProgressReporter) -> Outcome:
        if self._researcher is None:
            return Unavailable("no research service is configured")
        params = self.parameters(task, ResearchParameters)
        await progress(10, "validating_input")

        if not params.linkedin_url:
            return NeedsConfirmation(
                question="Which LinkedIn profile should I research? Please paste the profile URL.",
                answer_key="linkedin_url",
            )
        if "linkedin.com/" not in params.linkedin_url.lower():
            return Failure("That doesn't look like a LinkedIn profile URL.", retryable=False)

        await progress(40, "researching")
        try:
            report = await self._researcher.research(params.linkedin_url, research_type=params.research_type)
        except IntegrationError as e:
            log.warning("profile_research_failed", task_id=task.id, error=str(e))
            return Failure("The research service didn't respond. I'll try again shortly.")

        await progress(100, "completed")
        return Success({"linkedin_url": params.linkedin_url, "research_type": params.research_type, "report": report})

"""Prospecting worker: lead search through an injected `ProspectSource`."""

from __future__ import annotations

import structlog

from taskpilot.agents.base import BaseWorker, ProgressReporter
from taskpilot.agents.integrations import IntegrationError, ProspectSource
from taskpilot.core.settings import Settings
from taskpilot.models.outcomes import Failure, Outcome, Success, Unavailable
from taskpilot.models.routing_models import WorkerType
from taskpilot.models.task_models import Task
from taskpilot.models.task_parameters import ProspectSearchParameters

log = structlog.get_logger(__name__)


class ProspectingWorker(BaseWorker):
    worker_type = WorkerType.prospecting
    task_kinds = frozenset({"lead_generation"})
    display_name = "Falcon"

    def __init__(self, source: ProspectSource | None = None) -> None:
        self._source = source

    def check_available(self, settings: Settings | None) -> str | None:
        if self._source is None:
            return "no prospect source is configured"
        return None

    async def run(self, task: Task, progress: ProgressReporter) -> Outcome:
        if self._source is None:
            return Unavailable("no prospect source is configured")
        params = self.parameters(task, ProspectSearchParameters)
        await progress(10, "search_setup")
        log.info(
            "prospect_search_started",
            task_id=task.id,
            locations=params.locations,
            job_titles=params.job_titles,
            max_results=params.max_results,
        )

        await progress(30, "searching")
        try:
            leads = await self._source.search(params)
        except IntegrationError as e:
            log.warning("prospect_search_failed", task_id=task.id, error=str(e))
            return Failure("The lead search service didn't respond. I'll try again shortly.")

        await progress(80, "processing_results")
        leads = leads[: params.max_results]
        await progress(100, "completed")
        return Success(
            {
                "leads_found": len(leads),
                "leads": [lead.model_dump() for lead in leads],
                "search": params.model_dump(exclude={"original_message"}),
            }
        )

    def fallback_summary(self, succeeded: bool) -> str:
        if succeeded:
            return "Falcon finished your lead search. The results are ready."
        return super().fallback_summary(succeeded)

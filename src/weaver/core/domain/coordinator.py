"""
Analysis Coordinator

Drives each resource through the analysis stages (Research -> Plan -> Security)
with bounded concurrency across resources.

Guarantees:
- At most one pipeline per Resource.id is in flight. A second request for the
  same resource awaits the running pipeline and receives the same record.
- A failing resource never blocks or fails another one: stage failures,
  including unexpected exceptions raised by a stage, are recorded on the
  AnalysisRecord as a terminal status.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import replace
from typing import Any, Callable

import structlog

from weaver.core.domain.models import AnalysisRecord, AnalysisStatus, Resource
from weaver.core.domain.stages import AnalysisStage

logger = structlog.get_logger()

StartCallback = Callable[[Resource], None]


class AnalysisCoordinator:
    """
    Composes analysis stages and schedules pipelines per resource.

    Stages run strictly in order for one resource; pipelines of different
    resources run concurrently, at most `max_concurrent_resources` at a time.
    """

    def __init__(self, stages: list[AnalysisStage], max_concurrent_resources: int = 4):
        self.stages = list(stages)
        self.max_concurrent_resources = max(1, max_concurrent_resources)
        self._semaphore = asyncio.Semaphore(self.max_concurrent_resources)
        self._in_flight: dict[str, asyncio.Task[AnalysisRecord]] = {}
        self.logger = logger.bind(component="analysis_coordinator")

    def in_flight(self) -> list[str]:
        """Ids of resources whose analysis is currently running."""
        return list(self._in_flight)

    async def analyze(
        self,
        resource: Resource,
        user_intent: str = "",
        project_context: dict[str, Any] | None = None,
        on_start: StartCallback | None = None,
    ) -> AnalysisRecord:
        """
        Analyze one resource, or attach to its running analysis.

        Args:
            resource: Resource to analyze
            user_intent: What the user wants the integration to achieve
            project_context: Facts about the target project
            on_start: Called once the pipeline holds a concurrency slot
                (ignored when attaching to a running pipeline)

        Returns:
            The completed AnalysisRecord
        """
        task = self._in_flight.get(resource.id)
        if task is None:
            task = asyncio.create_task(
                self._run_pipeline(resource, user_intent, dict(project_context or {}), on_start),
                name=f"analysis:{resource.id}",
            )
            self._in_flight[resource.id] = task
            task.add_done_callback(lambda done, rid=resource.id: self._forget(rid, done))
        else:
            self.logger.info("analysis_attached", resource_id=resource.id)

        # One caller giving up must not cancel the pipeline other callers share.
        return await asyncio.shield(task)

    async def analyze_all(
        self,
        resources: Iterable[Resource],
        user_intent: str = "",
        project_context: dict[str, Any] | None = None,
        on_start: StartCallback | None = None,
    ) -> list[AnalysisRecord]:
        """
        Analyze many resources concurrently.

        Every resource runs to completion before an unexpected exception from
        any of them is re-raised.
        """
        results = await asyncio.gather(
            *(
                self.analyze(resource, user_intent, project_context, on_start)
                for resource in resources
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def drain(self) -> None:
        """Wait until no pipeline is in flight."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _run_pipeline(
        self,
        resource: Resource,
        user_intent: str,
        project_context: dict[str, Any],
        on_start: StartCallback | None,
    ) -> AnalysisRecord:
        async with self._semaphore:
            if on_start is not None:
                on_start(resource)

            self.logger.info("analysis_started", resource_id=resource.id, locator=resource.locator)
            record = AnalysisRecord(
                resource=resource,
                user_intent=user_intent,
                project_context=project_context,
            )

            for stage in self.stages:
                try:
                    record = await stage.run(record)
                except Exception as exc:
                    record = self._crashed(record, stage.name, exc)
                if record.status.is_terminal:
                    break

            if record.status is AnalysisStatus.IN_PROGRESS:
                record = replace(record, status=AnalysisStatus.COMPLETED)

            self.logger.info(
                "analysis_finished",
                resource_id=resource.id,
                status=record.status.value,
                verdict=(
                    record.security_verdict.decision.value if record.security_verdict else None
                ),
            )
            return record

    def _crashed(self, record: AnalysisRecord, stage: str, exc: Exception) -> AnalysisRecord:
        self.logger.error(
            "analysis_stage_crashed",
            resource_id=record.resource.id,
            stage=stage,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        status = (
            AnalysisStatus.RESEARCH_FAILED if stage == "research" else AnalysisStatus.PLAN_FAILED
        )
        entry = {"stage": stage, "error": type(exc).__name__, "kind": "Unexpected", "message": str(exc)}
        return replace(record, status=status, errors=record.errors + (entry,))

    def _forget(self, resource_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(resource_id) is task:
            del self._in_flight[resource_id]

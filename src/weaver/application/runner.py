"""
Application Layer - Integration Runner

Drives one session end to end, the way both the CLI and embedding
applications use it:

    discover -> analyze (concurrently) -> confirm -> execute (one plan at a time)

Confirmation is delegated to a callback. Without a callback, analyzed
resources stay in Analyzed and can be confirmed later (e.g. over the API).
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from weaver.core.domain.errors import ExecutionError
from weaver.core.domain.lifecycle import ResourceSnapshot, ResourceState
from weaver.core.domain.models import AnalysisRecord, Decision, Resource
from weaver.core.domain.session import OrchestrationSession

logger = structlog.get_logger()

ConfirmCallback = Callable[[AnalysisRecord], Decision | Awaitable[Decision]]


@dataclass
class ProgressUpdate:
    """Progress update during a run.

    Attributes:
        timestamp: When this update occurred
        event_type: Type of event (started, discovered, analyzed, awaiting_review,
            confirmed, executed, blocked, complete)
        message: Human-readable message describing the event
        details: Additional structured data about the event
    """

    timestamp: datetime
    event_type: str
    message: str
    details: dict


@dataclass
class RunSummary:
    """Outcome of one run: the final snapshot of every resource."""

    session_id: str
    resources: list[ResourceSnapshot] = field(default_factory=list)

    def count(self, state: ResourceState) -> int:
        return sum(1 for snapshot in self.resources if snapshot.state is state)

    @property
    def by_state(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for snapshot in self.resources:
            counts[snapshot.state.value] = counts.get(snapshot.state.value, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "by_state": self.by_state,
            "resources": [snapshot.to_dict() for snapshot in self.resources],
        }


class IntegrationRunner:
    """Service layer running a session from discovery to terminal states."""

    def __init__(self, session: OrchestrationSession):
        self.session = session
        self.logger = logger.bind(component="integration_runner", session_id=session.session_id)

    async def run(
        self,
        resources: Iterable[Resource],
        confirm_callback: ConfirmCallback | None = None,
        progress_callback: Callable[[ProgressUpdate], None] | None = None,
    ) -> RunSummary:
        """
        Run discovery, analysis, confirmation and execution.

        Args:
            resources: Discovered resources (duplicates are ignored)
            confirm_callback: Decides accept/reject for approved plans
            progress_callback: Receives ProgressUpdate events

        Returns:
            RunSummary with the final snapshot of every resource
        """

        def emit(event_type: str, message: str, **details: Any) -> None:
            if progress_callback:
                progress_callback(
                    ProgressUpdate(
                        timestamp=datetime.now(),
                        event_type=event_type,
                        message=message,
                        details=details,
                    )
                )

        session = self.session
        emit("started", "Run started", session_id=session.session_id)

        added = await session.discover(resources)
        emit("discovered", f"Discovered {len(added)} resource(s)", count=len(added))
        self.logger.info("run_started", resources=len(added))

        pending = [
            snapshot.resource.id
            for snapshot in session.states()
            if snapshot.state is ResourceState.DISCOVERED
        ]
        for finished in asyncio.as_completed([session.analyze(rid) for rid in pending]):
            record = await finished
            verdict = record.security_verdict.decision.value if record.security_verdict else None
            emit(
                "analyzed",
                f"{record.resource.locator}: {record.status.value}",
                resource_id=record.resource.id,
                status=record.status.value,
                verdict=verdict,
            )

        for snapshot in session.states():
            if snapshot.state is not ResourceState.ANALYZED:
                continue
            await self._confirm_and_execute(snapshot, confirm_callback, emit)

        summary = RunSummary(session_id=session.session_id, resources=session.states())
        self.logger.info("run_finished", by_state=summary.by_state)
        emit("complete", "Run finished", by_state=summary.by_state)
        return summary

    async def _confirm_and_execute(
        self,
        snapshot: ResourceSnapshot,
        confirm_callback: ConfirmCallback | None,
        emit: Callable[..., None],
    ) -> None:
        record = snapshot.analysis
        resource_id = snapshot.resource.id

        if record is None or not record.is_approved or confirm_callback is None:
            emit(
                "awaiting_review",
                f"{snapshot.resource.locator} awaits a decision",
                resource_id=resource_id,
                reasons=list(record.security_verdict.reasons)
                if record and record.security_verdict
                else [],
            )
            return

        decision = confirm_callback(record)
        if inspect.isawaitable(decision):
            decision = await decision
        decision = Decision(decision)

        await self.session.confirm(resource_id, decision)
        emit("confirmed", f"{snapshot.resource.locator}: {decision.value}", resource_id=resource_id)
        if decision is Decision.REJECT:
            return

        try:
            result = await self.session.execute(resource_id)
        except ExecutionError as error:
            emit("blocked", error.message, resource_id=resource_id, kind=error.kind.value)
            return

        emit(
            "executed",
            f"{snapshot.resource.locator}: {result.final_state.value}",
            resource_id=resource_id,
            final_state=result.final_state.value,
            failed_step_id=result.failed_step_id,
            applied_step_ids=list(result.applied_step_ids),
        )

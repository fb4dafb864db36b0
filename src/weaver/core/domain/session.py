"""
Orchestration Session

The session owns all mutable orchestration state of one run: the registry of
discovered resources and their lifecycle entries. It ties discovery, analysis,
confirmation and execution together and is the only writer of lifecycle
state.

Lifecycle:
    register_provider / open -> discover, analyze, confirm, execute -> drain -> close

Usable as an async context manager:

    async with session:
        await session.discover(resources)
        await session.analyze_pending()
        ...
"""

import asyncio
import uuid
from collections.abc import Iterable
from typing import Any

import structlog

from weaver.core.domain.cancellation import CancellationToken
from weaver.core.domain.coordinator import AnalysisCoordinator
from weaver.core.domain.errors import ExecutionError, InvalidTransitionError
from weaver.core.domain.executor import PlanExecutor
from weaver.core.domain.lifecycle import (
    EXECUTION_OUTCOMES,
    ResourceEntry,
    ResourceSnapshot,
    ResourceState,
)
from weaver.core.domain.models import (
    AnalysisRecord,
    AnalysisStatus,
    Decision,
    ExecutionResult,
    ImplementationPlan,
    Resource,
    ToolProvider,
    VerdictDecision,
    utcnow,
)
from weaver.core.domain.tool_client import ToolProtocolClient
from weaver.core.interfaces.state import SessionStoreProtocol
from weaver.core.interfaces.transport import ProviderTransportProtocol

logger = structlog.get_logger()


class OrchestrationSession:
    """
    Per-run registry of resources and their lifecycle.

    All state changes go through `_transition`, which validates them against
    the lifecycle table and records a timestamped reason. Readers get deep
    copies via `get_state` and `snapshot`.
    """

    def __init__(
        self,
        client: ToolProtocolClient,
        coordinator: AnalysisCoordinator,
        executor: PlanExecutor,
        session_id: str | None = None,
        store: SessionStoreProtocol | None = None,
        cancel_token: CancellationToken | None = None,
        user_intent: str = "",
        project_context: dict[str, Any] | None = None,
    ):
        self.client = client
        self.coordinator = coordinator
        self.executor = executor
        self.session_id = session_id or f"session-{uuid.uuid4().hex[:12]}"
        self.store = store
        self.cancel_token = cancel_token or CancellationToken()
        self.user_intent = user_intent
        self.project_context = dict(project_context or {})
        self.created_at = utcnow()

        self._entries: dict[str, ResourceEntry] = {}
        self._analyses: dict[str, asyncio.Task[AnalysisRecord]] = {}
        self._executions: dict[str, asyncio.Task[ExecutionResult]] = {}
        self._opened = False
        self._closed = False
        self.logger = logger.bind(component="orchestration_session", session_id=self.session_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register_provider(
        self, provider: ToolProvider, transport: ProviderTransportProtocol
    ) -> None:
        """Register a tool provider. Only allowed before the session is opened."""
        if self._opened:
            raise RuntimeError("Providers must be registered before the session is opened")
        self.client.register_provider(provider, transport)

    async def open(self) -> "OrchestrationSession":
        self._ensure_open_allowed()
        self._opened = True
        self.logger.info(
            "session_opened",
            providers=[provider.name for provider in self.client.providers()],
        )
        await self._persist()
        return self

    async def drain(self) -> None:
        """Wait for every in-flight analysis and execution."""
        while self._analyses or self._executions:
            await asyncio.gather(
                *self._analyses.values(), *self._executions.values(), return_exceptions=True
            )
        await self.coordinator.drain()

    async def close(self) -> None:
        if self._closed:
            return
        await self.drain()
        await self.client.close()
        self._closed = True
        await self._persist()
        self.logger.info("session_closed", resources=len(self._entries))

    def cancel(self, reason: str = "cancelled") -> None:
        """Trip the session-wide cancellation token."""
        self.logger.warning("session_cancelled", reason=reason)
        self.cancel_token.cancel(reason)

    async def __aenter__(self) -> "OrchestrationSession":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.cancel(f"session aborted: {exc_type.__name__}")
        await self.close()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self, resources: Iterable[Resource]) -> list[Resource]:
        """
        Register discovered resources.

        Resources already known to the session are ignored; use `requeue` to
        process a resource again.

        Returns:
            The resources that were newly registered
        """
        self._ensure_active()
        added: list[Resource] = []
        for resource in resources:
            if resource.id in self._entries:
                self.logger.info("resource_duplicate_ignored", resource_id=resource.id)
                continue
            self._entries[resource.id] = ResourceEntry(resource=resource)
            added.append(resource)
            self.logger.info(
                "resource_discovered",
                resource_id=resource.id,
                kind=resource.kind.value,
                locator=resource.locator,
            )

        if added:
            await self._persist()
        return added

    async def requeue(self, resource_id: str) -> ResourceSnapshot:
        """
        Start a new attempt for a resource in a terminal state.

        Raises:
            KeyError: If the resource is unknown
            InvalidTransitionError: If the resource is not in a terminal state
        """
        self._ensure_active()
        entry = self._entry(resource_id)
        record = entry.restart("requeued")
        self.logger.info(
            "resource_transition",
            resource_id=resource_id,
            from_state=record.from_state.value if record.from_state else None,
            to_state=record.to_state.value,
            attempt=entry.attempt,
            reason=record.reason,
        )
        await self._persist()
        return entry.snapshot()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(self, resource_id: str) -> AnalysisRecord:
        """
        Analyze one resource.

        Concurrent calls for the same resource share one pipeline and one record.
        The record is committed by the session even if every caller gives up
        waiting for it.

        Raises:
            KeyError: If the resource is unknown
            InvalidTransitionError: If the resource is past analysis
        """
        self._ensure_active()
        entry = self._entry(resource_id)
        task = self._analyses.get(resource_id)
        if task is None:
            if entry.state not in (ResourceState.DISCOVERED, ResourceState.ANALYZING):
                raise InvalidTransitionError(
                    resource_id, entry.state.value, ResourceState.ANALYZING.value
                )
            task = asyncio.create_task(
                self._run_analysis(entry), name=f"session-analysis:{resource_id}"
            )
            self._analyses[resource_id] = task

        return await asyncio.shield(task)

    async def analyze_pending(self) -> list[AnalysisRecord]:
        """Analyze every resource still in Discovered, concurrently."""
        pending = [
            entry.resource.id
            for entry in self._entries.values()
            if entry.state is ResourceState.DISCOVERED
        ]
        results = await asyncio.gather(
            *(self.analyze(resource_id) for resource_id in pending),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    # ------------------------------------------------------------------
    # Confirmation & execution
    # ------------------------------------------------------------------

    async def confirm(self, resource_id: str, decision: Decision | str) -> ResourceSnapshot:
        """
        Apply a human confirmation decision to an analyzed resource.

        Accepting requires an approved security verdict. A `needs_review`
        verdict can only be rejected.

        Raises:
            KeyError: If the resource is unknown
            InvalidTransitionError: If the resource is not Analyzed or the
                plan is not approved
        """
        self._ensure_active()
        decision = Decision(decision)
        entry = self._entry(resource_id)
        target = ResourceState.FAILED if decision is Decision.REJECT else ResourceState.PLAN_ACCEPTED
        if entry.state is not ResourceState.ANALYZED:
            raise InvalidTransitionError(resource_id, entry.state.value, target.value)

        if decision is Decision.REJECT:
            self._transition(entry, ResourceState.FAILED, "rejected by reviewer")
        else:
            analysis = entry.analysis
            if analysis is None or not analysis.is_approved:
                verdict = (
                    analysis.security_verdict.decision.value
                    if analysis and analysis.security_verdict
                    else "missing"
                )
                raise InvalidTransitionError(
                    resource_id,
                    entry.state.value,
                    ResourceState.PLAN_ACCEPTED.value,
                    detail=f"security verdict is {verdict}",
                )
            self._transition(entry, ResourceState.PLAN_ACCEPTED, "confirmed by reviewer")

        await self._persist()
        return entry.snapshot()

    async def execute(self, resource_id: str) -> ExecutionResult:
        """
        Execute the accepted plan of a resource.

        If the caller is cancelled, the execution is cancelled and rolled back
        as after a failed reversible step; its result is still committed.

        Raises:
            KeyError: If the resource is unknown
            InvalidTransitionError: If the plan is not accepted or already executing
            ExecutionError: LockContention; the resource stays PlanAccepted
        """
        self._ensure_active()
        entry = self._entry(resource_id)
        if entry.state is not ResourceState.PLAN_ACCEPTED or resource_id in self._executions:
            raise InvalidTransitionError(
                resource_id,
                entry.state.value,
                ResourceState.EXECUTING.value,
                detail="execution already requested" if resource_id in self._executions else "",
            )

        cancel_token = self.cancel_token.child()
        task = asyncio.create_task(
            self._run_execution(entry, cancel_token), name=f"execution:{resource_id}"
        )
        self._executions[resource_id] = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            cancel_token.cancel("execution caller cancelled")
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, resource_id: str) -> ResourceSnapshot:
        """
        Last committed state of a resource.

        Raises:
            KeyError: If the resource is unknown
        """
        return self._entry(resource_id).snapshot()

    def states(self) -> list[ResourceSnapshot]:
        return [entry.snapshot() for entry in self._entries.values()]

    def snapshot(self) -> dict[str, Any]:
        """Serializable snapshot of the whole session."""
        return {
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "project_id": self.executor.project_id,
            "user_intent": self.user_intent,
            "project_context": dict(self.project_context),
            "cancelled": self.cancel_token.cancelled,
            "closed": self._closed,
            "providers": [provider.to_dict() for provider in self.client.providers()],
            "resources": [snapshot.to_dict() for snapshot in self.states()],
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _entry(self, resource_id: str) -> ResourceEntry:
        try:
            return self._entries[resource_id]
        except KeyError:
            raise KeyError(f"Unknown resource: {resource_id}") from None

    async def _run_analysis(self, entry: ResourceEntry) -> AnalysisRecord:
        resource_id = entry.resource.id

        def on_start(resource: Resource) -> None:
            if entry.state is ResourceState.DISCOVERED:
                self._transition(entry, ResourceState.ANALYZING, "analysis started")

        try:
            record = await self.coordinator.analyze(
                entry.resource, self.user_intent, self.project_context, on_start=on_start
            )
        finally:
            self._analyses.pop(resource_id, None)

        entry.analysis = record
        self._transition(entry, ResourceState.ANALYZED, f"analysis {record.status.value}")

        if record.status in (AnalysisStatus.RESEARCH_FAILED, AnalysisStatus.PLAN_FAILED):
            self._transition(entry, ResourceState.FAILED, record.status.value)
        elif (
            record.security_verdict is not None
            and record.security_verdict.decision is VerdictDecision.REJECTED
        ):
            reasons = "; ".join(record.security_verdict.reasons)
            self._transition(entry, ResourceState.FAILED, f"security rejected: {reasons}")

        await self._persist()
        return record

    async def _run_execution(
        self, entry: ResourceEntry, cancel_token: CancellationToken
    ) -> ExecutionResult:
        resource_id = entry.resource.id

        def on_start(started: ImplementationPlan) -> None:
            self._transition(entry, ResourceState.EXECUTING, f"executing {started.plan_id}")

        try:
            result = await self.executor.execute(
                entry.analysis.plan, on_start=on_start, cancel_token=cancel_token
            )
        except ExecutionError as error:
            self.logger.warning(
                "resource_execution_not_started",
                resource_id=resource_id,
                kind=error.kind.value,
                error=error.message,
            )
            raise
        finally:
            self._executions.pop(resource_id, None)

        entry.execution = result
        reason = f"plan {result.final_state.value}"
        if result.error:
            reason = f"{reason}: {result.error}"
        self._transition(entry, EXECUTION_OUTCOMES[result.final_state], reason)
        await self._persist()
        return result

    def _transition(self, entry: ResourceEntry, to_state: ResourceState, reason: str) -> None:
        record = entry.transition(to_state, reason)
        self.logger.info(
            "resource_transition",
            resource_id=entry.resource.id,
            from_state=record.from_state.value if record.from_state else None,
            to_state=record.to_state.value,
            attempt=entry.attempt,
            reason=reason,
        )

    async def _persist(self) -> None:
        if self.store is None:
            return
        await self.store.save_session(self.session_id, self.snapshot())

    def _ensure_open_allowed(self) -> None:
        if self._closed:
            raise RuntimeError(f"Session {self.session_id} is closed")

    def _ensure_active(self) -> None:
        self._ensure_open_allowed()
        if not self._opened:
            raise RuntimeError(f"Session {self.session_id} is not open")

"""
Plan Executor

Applies an accepted ImplementationPlan to a target project, one step at a
time and strictly in plan order. Each step goes through ToolProtocolClient
and inherits its retry budget; a step fails only once that budget is spent.

Failure handling:
- reversible step fails: compensate every applied step in reverse order,
  final state `rolled_back`
- irreversible step fails: stop, leave prior steps applied, final state
  `partially_failed` with the failing step and the still-applied steps
- a compensation fails, or an irreversible step stays applied after
  rollback: `partially_failed`

A project-level lock serializes plans against the same project. The lock is
held for exactly one plan's execution.
"""

import asyncio
from typing import Any, Callable

import structlog

from weaver.core.domain.cancellation import CancellationToken
from weaver.core.domain.errors import (
    ExecutionError,
    ExecutionErrorKind,
    OrchestrationError,
    ToolError,
    ToolErrorKind,
)
from weaver.core.domain.models import (
    ExecutionResult,
    FinalState,
    ImplementationPlan,
    PlanStep,
    StepOutcome,
    StepStatus,
    utcnow,
)
from weaver.core.domain.planning import validate_plan
from weaver.core.domain.tool_client import ToolProtocolClient

logger = structlog.get_logger()


class ProjectLockRegistry:
    """
    Exclusive execution locks, one per target project.

    A project's lock exists only while a plan holds it or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    async def acquire(self, project_id: str, timeout: float | None = None) -> None:
        """
        Wait for the project's lock.

        Raises:
            TimeoutError: If the lock is still held after `timeout` seconds
        """
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        self._users[project_id] = self._users.get(project_id, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except BaseException:
            self._discard(project_id)
            raise

    def release(self, project_id: str) -> None:
        self._locks[project_id].release()
        self._discard(project_id)

    def is_locked(self, project_id: str) -> bool:
        lock = self._locks.get(project_id)
        return lock is not None and lock.locked()

    def _discard(self, project_id: str) -> None:
        self._users[project_id] -= 1
        if not self._users[project_id]:
            del self._users[project_id]
            del self._locks[project_id]


class PlanExecutor:
    """
    Executes implementation plans against one target project.

    Executors sharing a ProjectLockRegistry never run two plans against the
    same project at once; a second plan queues for up to `lock_wait_seconds`.
    """

    def __init__(
        self,
        client: ToolProtocolClient,
        project_id: str,
        locks: ProjectLockRegistry | None = None,
        lock_wait_seconds: float = 120.0,
        step_timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.client = client
        self.project_id = project_id
        self.locks = locks or ProjectLockRegistry()
        self.lock_wait_seconds = lock_wait_seconds
        self.step_timeout = step_timeout
        self.cancel_token = cancel_token
        self.logger = logger.bind(component="plan_executor", project_id=project_id)

    async def execute(
        self,
        plan: ImplementationPlan,
        on_start: Callable[[ImplementationPlan], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionResult:
        """
        Execute a plan.

        Args:
            plan: Plan with steps in execution order
            on_start: Called once the project lock is held, before the first step
            cancel_token: Token for this execution, replacing the executor's own

        Returns:
            ExecutionResult with the ordered outcome log

        Raises:
            PlanValidationError: If the plan violates ordering or reversibility rules
            ExecutionError: LockContention if the project stayed busy too long
        """
        validate_plan(plan)

        if self.locks.is_locked(self.project_id):
            self.logger.info(
                "plan_execution_queued",
                plan_id=plan.plan_id,
                max_wait_seconds=self.lock_wait_seconds,
            )

        try:
            await self.locks.acquire(self.project_id, timeout=self.lock_wait_seconds)
        except TimeoutError:
            self.logger.warning("plan_execution_lock_timeout", plan_id=plan.plan_id)
            raise ExecutionError(
                ExecutionErrorKind.LOCK_CONTENTION,
                f"Project '{self.project_id}' still busy after {self.lock_wait_seconds}s",
                plan_id=plan.plan_id,
            ) from None

        try:
            if on_start is not None:
                on_start(plan)
            return await self._run(plan, cancel_token or self.cancel_token)
        finally:
            self.locks.release(self.project_id)

    async def _run(
        self, plan: ImplementationPlan, cancel_token: CancellationToken | None
    ) -> ExecutionResult:
        log = self.logger.bind(plan_id=plan.plan_id, resource_id=plan.resource_id)
        log.info("plan_execution_started", steps=[step.id for step in plan.steps])

        outcomes: list[StepOutcome] = []
        applied: list[PlanStep] = []

        for step in plan.steps:
            if cancel_token is not None and cancel_token.cancelled:
                reason = cancel_token.reason or "cancelled"
                log.warning("plan_execution_cancelled", before_step=step.id, reason=reason)
                return await self._roll_back(
                    plan, applied, outcomes, failed_step_id=None,
                    error=f"Execution cancelled: {reason}", cancelled=True,
                )

            started_at = utcnow()
            try:
                result = await self.client.invoke(
                    step.provider,
                    step.operation,
                    step.parameters,
                    self.step_timeout,
                    # Irreversible steps run to completion; cancellation applies after.
                    cancel_token=cancel_token if step.reversible else None,
                    idempotency_key=f"{plan.plan_id}:{step.id}",
                )
            except (OrchestrationError, asyncio.CancelledError) as error:
                # A cancelled task still records the step and rolls back.
                if isinstance(error, asyncio.CancelledError):
                    error = ToolError(
                        ToolErrorKind.TIMEOUT,
                        "Execution task cancelled",
                        provider=step.provider,
                        operation=step.operation,
                        cancelled=True,
                    )
                cancelled = isinstance(error, ToolError) and error.cancelled
                outcomes.append(
                    StepOutcome(
                        step_id=step.id,
                        kind=step.kind,
                        status=StepStatus.FAILED,
                        error=str(error),
                        started_at=started_at,
                    )
                )
                failure = ExecutionError(
                    ExecutionErrorKind.STEP_FAILED,
                    f"Step '{step.id}' failed: {error}",
                    plan_id=plan.plan_id,
                )
                log.error(
                    "plan_step_failed",
                    step_id=step.id,
                    kind=step.kind.value,
                    reversible=step.reversible,
                    error=str(error),
                )

                if step.reversible:
                    return await self._roll_back(
                        plan, applied, outcomes, failed_step_id=step.id,
                        error=str(failure),
                        cancelled=cancelled,
                    )

                return ExecutionResult(
                    plan_id=plan.plan_id,
                    completed_steps=tuple(outcomes),
                    final_state=FinalState.PARTIALLY_FAILED,
                    failed_step_id=step.id,
                    applied_step_ids=tuple(done.id for done in applied),
                    error=str(failure),
                    cancelled=cancelled,
                )

            outcomes.append(
                StepOutcome(
                    step_id=step.id,
                    kind=step.kind,
                    status=StepStatus.APPLIED,
                    result=result,
                    started_at=started_at,
                )
            )
            applied.append(step)
            log.info("plan_step_applied", step_id=step.id, kind=step.kind.value)

        log.info("plan_execution_succeeded", steps=len(applied))
        return ExecutionResult(
            plan_id=plan.plan_id,
            completed_steps=tuple(outcomes),
            final_state=FinalState.SUCCEEDED,
            applied_step_ids=tuple(step.id for step in applied),
        )

    async def _roll_back(
        self,
        plan: ImplementationPlan,
        applied: list[PlanStep],
        outcomes: list[StepOutcome],
        failed_step_id: str | None,
        error: str,
        cancelled: bool = False,
    ) -> ExecutionResult:
        log = self.logger.bind(plan_id=plan.plan_id, resource_id=plan.resource_id)
        log.warning("plan_rollback_started", steps=[step.id for step in reversed(applied)])

        still_applied: set[str] = set()

        for step in reversed(applied):
            action = step.compensating_action
            if action is None:
                still_applied.add(step.id)
                continue

            started_at = utcnow()
            try:
                # Compensations ignore the cancellation token.
                result: Any = await self.client.invoke(
                    action.provider,
                    action.operation,
                    action.parameters,
                    self.step_timeout,
                    idempotency_key=f"{plan.plan_id}:{step.id}:compensate",
                )
            except OrchestrationError as compensation_error:
                outcomes.append(
                    StepOutcome(
                        step_id=step.id,
                        kind=step.kind,
                        status=StepStatus.COMPENSATION_FAILED,
                        error=str(compensation_error),
                        started_at=started_at,
                    )
                )
                still_applied.add(step.id)
                log.error(
                    "plan_compensation_failed",
                    step_id=step.id,
                    error=str(compensation_error),
                )
                continue

            outcomes.append(
                StepOutcome(
                    step_id=step.id,
                    kind=step.kind,
                    status=StepStatus.COMPENSATED,
                    result=result,
                    started_at=started_at,
                )
            )
            log.info("plan_step_compensated", step_id=step.id)

        final_state = FinalState.PARTIALLY_FAILED if still_applied else FinalState.ROLLED_BACK
        log.warning(
            "plan_rollback_finished",
            final_state=final_state.value,
            still_applied=sorted(still_applied),
        )
        return ExecutionResult(
            plan_id=plan.plan_id,
            completed_steps=tuple(outcomes),
            final_state=final_state,
            failed_step_id=failed_step_id,
            applied_step_ids=tuple(step.id for step in applied if step.id in still_applied),
            error=error,
            cancelled=cancelled,
        )

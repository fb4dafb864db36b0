"""
Core Domain Models

This module defines the data model shared by the orchestration core:
resources entering the pipeline, tool providers and the calls made to them,
analysis records built by the analysis stages, implementation plans and the
results of executing them.

Records that cross component boundaries (Resource, AnalysisRecord,
ImplementationPlan, PlanStep, ExecutionResult) are frozen. Stages and the
executor produce new values instead of mutating shared ones.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time used for every recorded timestamp."""
    return datetime.now(timezone.utc)


class ResourceKind(str, Enum):
    """Type of a discovered resource."""

    REPOSITORY = "repository"
    PACKAGE = "package"
    API = "api"


class ProviderHealth(str, Enum):
    """Health state of a tool provider as observed by the client."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class StepKind(str, Enum):
    """Kind of side effect a plan step applies to the target project."""

    INSTALL_DEPENDENCY = "installDependency"
    GENERATE_CODE = "generateCode"
    MODIFY_FILE = "modifyFile"
    GENERATE_TESTS = "generateTests"
    CREATE_BRANCH = "createBranch"


class AnalysisStatus(str, Enum):
    """Progress of a resource through the analysis stages."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    RESEARCH_FAILED = "research_failed"
    PLAN_FAILED = "plan_failed"

    @property
    def is_terminal(self) -> bool:
        return self is not AnalysisStatus.IN_PROGRESS


class VerdictDecision(str, Enum):
    """Outcome of the security stage."""

    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


class StepStatus(str, Enum):
    """Outcome of a single step attempt or compensation."""

    APPLIED = "applied"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


class FinalState(str, Enum):
    """Final state of a plan execution."""

    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    PARTIALLY_FAILED = "partially_failed"


class Decision(str, Enum):
    """Human confirmation decision for an analyzed plan."""

    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(frozen=True)
class Resource:
    """
    An externally discovered candidate for integration.

    Attributes:
        id: Stable identifier, unique within a session
        kind: repository, package or api
        locator: URL-like identifier (e.g. "github.com/example/lib")
        discovery_context: Free-form facts captured by the discovery step
    """

    id: str
    kind: ResourceKind
    locator: str
    discovery_context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "locator": self.locator,
            "discovery_context": dict(self.discovery_context),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Resource":
        """Build a Resource from a plain mapping (YAML, JSON, API payloads)."""
        kind = ResourceKind(str(data.get("kind", "repository")).lower())
        locator = str(data["locator"])
        return Resource(
            id=str(data.get("id") or f"{kind.value}:{locator}"),
            kind=kind,
            locator=locator,
            discovery_context=dict(data.get("discovery_context") or {}),
        )


@dataclass
class ToolProvider:
    """
    An external service exposing named operations.

    Health is owned by ToolProtocolClient. Everyone else only sees copies.
    """

    name: str
    supported_operations: frozenset[str]
    endpoint: str = ""
    health: ProviderHealth = ProviderHealth.HEALTHY

    def supports(self, operation: str) -> bool:
        return operation in self.supported_operations

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "supported_operations": sorted(self.supported_operations),
            "endpoint": self.endpoint,
            "health": self.health.value,
        }


@dataclass
class ToolCall:
    """
    A single invocation of a provider operation.

    Created per invoke() and owned by that call site only.

    Attributes:
        provider: Provider name
        operation: Operation name
        parameters: Operation parameters
        attempt: Number of attempts made so far
        deadline: Monotonic deadline of the current attempt
        idempotency_key: Caller-supplied key forwarded to the provider
    """

    provider: str
    operation: str
    parameters: dict[str, Any]
    attempt: int = 0
    deadline: float | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class ToolInvocation:
    """A provider operation with parameters, used for compensating actions."""

    provider: str
    operation: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "operation": self.operation,
            "parameters": dict(self.parameters),
        }


@dataclass(frozen=True)
class PlanStep:
    """
    One side-effecting step of an implementation plan.

    Attributes:
        id: Step identifier, unique within its plan
        kind: What the step does to the project
        provider: Provider that applies the step
        operation: Provider operation that applies the step
        parameters: Operation parameters
        reversible: Whether the step can be undone
        compensating_action: Undo action, present iff reversible
        depends_on: Ids of steps that must run before this one
        isolated_compensation: The compensating action stays valid even after
            a later irreversible step has run
    """

    id: str
    kind: StepKind
    provider: str
    operation: str
    parameters: dict[str, Any] = field(default_factory=dict)
    reversible: bool = True
    compensating_action: ToolInvocation | None = None
    depends_on: tuple[str, ...] = ()
    isolated_compensation: bool = False

    def __post_init__(self) -> None:
        if self.reversible and self.compensating_action is None:
            raise ValueError(f"Reversible step '{self.id}' needs a compensating action")
        if not self.reversible and self.compensating_action is not None:
            raise ValueError(f"Irreversible step '{self.id}' cannot have a compensating action")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "provider": self.provider,
            "operation": self.operation,
            "parameters": dict(self.parameters),
            "reversible": self.reversible,
            "compensating_action": (
                self.compensating_action.to_dict() if self.compensating_action else None
            ),
            "depends_on": list(self.depends_on),
            "isolated_compensation": self.isolated_compensation,
        }


@dataclass(frozen=True)
class ImplementationPlan:
    """
    Totally ordered steps integrating one resource.

    The dependency DAG is collapsed to this order when the plan is built
    (see planning.build_plan). The executor never reorders steps.
    """

    resource_id: str
    steps: tuple[PlanStep, ...]
    estimated_risk: float = 0.0
    plan_id: str = field(default_factory=lambda: f"plan-{uuid.uuid4().hex[:12]}")

    @property
    def has_irreversible_steps(self) -> bool:
        return any(not step.reversible for step in self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "resource_id": self.resource_id,
            "steps": [step.to_dict() for step in self.steps],
            "estimated_risk": self.estimated_risk,
        }


@dataclass(frozen=True)
class SecurityVerdict:
    """Security stage decision with the reasons that led to it."""

    decision: VerdictDecision
    reasons: tuple[str, ...] = ()

    @property
    def approved(self) -> bool:
        return self.decision is VerdictDecision.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {"decision": self.decision.value, "reasons": list(self.reasons)}


@dataclass(frozen=True)
class AnalysisRecord:
    """
    Result of running the analysis stages for one resource.

    Built incrementally: each stage returns a new record. Once `status` is
    terminal the record is final.
    """

    resource: Resource
    user_intent: str = ""
    project_context: dict[str, Any] = field(default_factory=dict)
    research_facts: dict[str, Any] = field(default_factory=dict)
    plan: ImplementationPlan | None = None
    security_verdict: SecurityVerdict | None = None
    status: AnalysisStatus = AnalysisStatus.IN_PROGRESS
    errors: tuple[dict[str, str], ...] = ()

    @property
    def research_failed(self) -> bool:
        return self.status is AnalysisStatus.RESEARCH_FAILED

    @property
    def is_approved(self) -> bool:
        return (
            self.status is AnalysisStatus.COMPLETED
            and self.plan is not None
            and self.security_verdict is not None
            and self.security_verdict.approved
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource.to_dict(),
            "user_intent": self.user_intent,
            "research_facts": dict(self.research_facts),
            "plan": self.plan.to_dict() if self.plan else None,
            "security_verdict": (
                self.security_verdict.to_dict() if self.security_verdict else None
            ),
            "status": self.status.value,
            "errors": [dict(error) for error in self.errors],
        }


@dataclass(frozen=True)
class StepOutcome:
    """Outcome of applying or compensating one plan step."""

    step_id: str
    kind: StepKind
    status: StepStatus
    result: Any = None
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
        }


@dataclass(frozen=True)
class ExecutionResult:
    """
    Result of executing an implementation plan.

    Attributes:
        plan_id: Executed plan
        completed_steps: Ordered log of step and compensation outcomes
        final_state: succeeded, rolled_back or partially_failed
        failed_step_id: Step whose failure stopped execution (if any)
        applied_step_ids: Steps whose effects remain in the project
        error: Description of the failure (if any)
        cancelled: True when execution stopped because of cancellation
    """

    plan_id: str
    completed_steps: tuple[StepOutcome, ...]
    final_state: FinalState
    failed_step_id: str | None = None
    applied_step_ids: tuple[str, ...] = ()
    error: str | None = None
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "completed_steps": [outcome.to_dict() for outcome in self.completed_steps],
            "final_state": self.final_state.value,
            "failed_step_id": self.failed_step_id,
            "applied_step_ids": list(self.applied_step_ids),
            "error": self.error,
            "cancelled": self.cancelled,
        }

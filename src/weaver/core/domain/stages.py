"""
Analysis Stages

The three stages a resource passes through before its plan can be confirmed.
Each stage implements the AnalysisStage protocol: it receives the current
AnalysisRecord and returns a new one. Stages never raise for provider or
inference failures; they record the failure on the record instead:

- ResearchStage: collects facts from research providers, `research_failed` on error
- PlanStage: asks inference for a step DAG and builds the plan, `plan_failed` on error
- SecurityStage: applies local policy plus an optional inference review and
  sets the verdict; failures degrade to `needs_review`

The coordinator composes stages in order and stops at the first terminal status.
"""

import asyncio
import re
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

import structlog

from weaver.core.domain.cancellation import CancellationToken
from weaver.core.domain.errors import (
    InferenceError,
    InferenceErrorKind,
    OrchestrationError,
)
from weaver.core.domain.models import (
    AnalysisRecord,
    AnalysisStatus,
    ImplementationPlan,
    PlanStep,
    SecurityVerdict,
    StepKind,
    ToolInvocation,
    VerdictDecision,
)
from weaver.core.domain.planning import build_plan
from weaver.core.domain.tool_client import ToolProtocolClient
from weaver.core.prompts.analysis_prompts import (
    PLAN_PROMPT,
    RESEARCH_SUMMARY_PROMPT,
    SECURITY_REVIEW_PROMPT,
)

logger = structlog.get_logger()


class AnalysisStage(Protocol):
    """One step of the analysis pipeline."""

    name: str

    async def run(self, record: AnalysisRecord) -> AnalysisRecord:
        """Return a new record extended with this stage's result."""
        ...


def _error_entry(stage: str, error: OrchestrationError) -> dict[str, str]:
    return {"stage": stage, **error.to_dict()}


def _fail(
    record: AnalysisRecord,
    stage: str,
    status: AnalysisStatus,
    error: OrchestrationError,
) -> AnalysisRecord:
    return replace(record, status=status, errors=record.errors + (_error_entry(stage, error),))


# ----------------------------------------------------------------------
# Research
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class ResearchOperation:
    """A provider operation that contributes research facts."""

    provider: str
    operation: str


class ResearchStage:
    """Collects facts about a resource from the configured research operations."""

    name = "research"

    def __init__(
        self,
        client: ToolProtocolClient,
        operations: list[ResearchOperation],
        max_concurrent_calls: int = 4,
        summarize: bool = False,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.client = client
        self.operations = list(operations)
        self.max_concurrent_calls = max(1, max_concurrent_calls)
        self.summarize = summarize
        self.timeout = timeout
        self.cancel_token = cancel_token
        self.logger = logger.bind(component="research_stage")

    async def run(self, record: AnalysisRecord) -> AnalysisRecord:
        resource = record.resource
        parameters = {
            "locator": resource.locator,
            "kind": resource.kind.value,
            "discovery_context": dict(resource.discovery_context),
        }
        semaphore = asyncio.Semaphore(self.max_concurrent_calls)

        async def call(operation: ResearchOperation) -> Any:
            async with semaphore:
                return await self.client.invoke(
                    operation.provider,
                    operation.operation,
                    parameters,
                    self.timeout,
                    cancel_token=self.cancel_token,
                )

        results = await asyncio.gather(
            *(call(operation) for operation in self.operations),
            return_exceptions=True,
        )

        facts = dict(record.research_facts)
        for operation, result in zip(self.operations, results):
            if isinstance(result, OrchestrationError):
                self.logger.warning(
                    "research_failed",
                    resource_id=resource.id,
                    provider=operation.provider,
                    operation=operation.operation,
                    error=str(result),
                )
                return _fail(record, self.name, AnalysisStatus.RESEARCH_FAILED, result)
            if isinstance(result, BaseException):
                raise result
            if isinstance(result, dict):
                facts.update(result)
            else:
                facts[operation.operation] = result

        if self.summarize:
            try:
                summary = await self.client.infer(
                    RESEARCH_SUMMARY_PROMPT,
                    {
                        "resource": resource.to_dict(),
                        "research_facts": facts,
                        "project_context": record.project_context,
                    },
                    self.timeout,
                    cancel_token=self.cancel_token,
                )
            except OrchestrationError as error:
                self.logger.warning(
                    "research_summary_failed", resource_id=resource.id, error=str(error)
                )
                return _fail(record, self.name, AnalysisStatus.RESEARCH_FAILED, error)
            facts["summary"] = summary.get("summary", summary)

        self.logger.info("research_completed", resource_id=resource.id, facts=sorted(facts))
        return replace(record, research_facts=facts)


# ----------------------------------------------------------------------
# Plan
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class StepTemplate:
    """
    How a step kind is applied.

    Attributes:
        provider: Provider applying steps of this kind
        operation: Operation applying the step
        compensation: Operation on the same provider that undoes the step,
            None if steps of this kind are irreversible
    """

    provider: str
    operation: str
    compensation: str | None = None


class StepCatalog:
    """Maps step kinds to the provider operations that apply and undo them."""

    def __init__(self, templates: dict[StepKind, StepTemplate]):
        self.templates = dict(templates)

    @classmethod
    def from_config(cls, config: dict[str, dict[str, Any]]) -> "StepCatalog":
        """
        Build a catalog from the `steps` configuration section.

        Raises:
            ValueError: If a kind is unknown or an entry lacks provider/operation
        """
        templates = {}
        for kind_name, entry in config.items():
            kind = StepKind(kind_name)
            if not entry.get("provider") or not entry.get("operation"):
                raise ValueError(f"Step kind '{kind_name}' needs provider and operation")
            templates[kind] = StepTemplate(
                provider=entry["provider"],
                operation=entry["operation"],
                compensation=entry.get("compensation"),
            )
        return cls(templates)

    def describe(self) -> list[dict[str, Any]]:
        """Step catalog as shown to the planning model."""
        return [
            {"kind": kind.value, "reversible": template.compensation is not None}
            for kind, template in self.templates.items()
        ]

    def build_step(self, raw: Any) -> PlanStep:
        """
        Turn one step of a plan response into a PlanStep.

        Raises:
            InferenceError: InvalidResponse if the step is malformed
        """
        if not isinstance(raw, dict) or not raw.get("id") or not raw.get("kind"):
            raise InferenceError(
                InferenceErrorKind.INVALID_RESPONSE, f"Malformed plan step: {raw!r}"
            )
        try:
            kind = StepKind(raw["kind"])
        except ValueError:
            raise InferenceError(
                InferenceErrorKind.INVALID_RESPONSE, f"Unknown step kind '{raw['kind']}'"
            ) from None

        template = self.templates.get(kind)
        if template is None:
            raise InferenceError(
                InferenceErrorKind.INVALID_RESPONSE,
                f"No provider configured for step kind '{kind.value}'",
            )

        parameters = raw.get("parameters") or {}
        depends_on = raw.get("depends_on") or []
        compensation_parameters = raw.get("compensation_parameters") or parameters
        if (
            not isinstance(parameters, dict)
            or not isinstance(depends_on, list)
            or not isinstance(compensation_parameters, dict)
        ):
            raise InferenceError(
                InferenceErrorKind.INVALID_RESPONSE, f"Malformed plan step '{raw['id']}'"
            )

        reversible = bool(raw.get("reversible", True)) and template.compensation is not None
        compensation = None
        if reversible:
            compensation = ToolInvocation(
                provider=template.provider,
                operation=template.compensation,
                parameters=dict(compensation_parameters),
            )

        return PlanStep(
            id=str(raw["id"]),
            kind=kind,
            provider=template.provider,
            operation=template.operation,
            parameters=dict(parameters),
            reversible=reversible,
            compensating_action=compensation,
            depends_on=tuple(str(dependency) for dependency in depends_on),
            isolated_compensation=bool(raw.get("isolated_compensation", False)),
        )


class PlanStage:
    """Asks the inference capability for a plan and validates it."""

    name = "plan"

    def __init__(
        self,
        client: ToolProtocolClient,
        catalog: StepCatalog,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.client = client
        self.catalog = catalog
        self.timeout = timeout
        self.cancel_token = cancel_token
        self.logger = logger.bind(component="plan_stage")

    async def run(self, record: AnalysisRecord) -> AnalysisRecord:
        context = {
            "resource": record.resource.to_dict(),
            "research_facts": record.research_facts,
            "user_intent": record.user_intent,
            "project_context": record.project_context,
            "step_catalog": self.catalog.describe(),
        }
        try:
            response = await self.client.infer(
                PLAN_PROMPT, context, self.timeout, cancel_token=self.cancel_token
            )
            plan = self._parse_plan(record.resource.id, response)
        except OrchestrationError as error:
            self.logger.warning(
                "plan_failed",
                resource_id=record.resource.id,
                kind=error.kind.value,
                error=error.message,
            )
            return _fail(record, self.name, AnalysisStatus.PLAN_FAILED, error)

        self.logger.info(
            "plan_created",
            resource_id=record.resource.id,
            plan_id=plan.plan_id,
            steps=[step.kind.value for step in plan.steps],
            estimated_risk=plan.estimated_risk,
        )
        return replace(record, plan=plan)

    def _parse_plan(self, resource_id: str, response: dict[str, Any]) -> ImplementationPlan:
        raw_steps = response.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise InferenceError(InferenceErrorKind.INVALID_RESPONSE, "Plan has no steps")

        steps = [self.catalog.build_step(raw) for raw in raw_steps]
        try:
            risk = float(response.get("estimated_risk", 0.0))
        except (TypeError, ValueError):
            raise InferenceError(
                InferenceErrorKind.INVALID_RESPONSE,
                f"Invalid estimated_risk: {response.get('estimated_risk')!r}",
            ) from None
        return build_plan(resource_id, steps, risk)


# ----------------------------------------------------------------------
# Security
# ----------------------------------------------------------------------


@dataclass
class SecurityPolicy:
    """
    Local checks applied before the security review.

    Attributes:
        blocked_locator_patterns: Regular expressions; a matching locator is rejected
        review_risk_threshold: Plans at or above this risk need human review
        allow_irreversible: Approve plans with irreversible steps without review
    """

    blocked_locator_patterns: list[str] = field(default_factory=list)
    review_risk_threshold: float = 0.7
    allow_irreversible: bool = False


_SEVERITY = {
    VerdictDecision.APPROVED: 0,
    VerdictDecision.NEEDS_REVIEW: 1,
    VerdictDecision.REJECTED: 2,
}


def _dominant(first: VerdictDecision, second: VerdictDecision) -> VerdictDecision:
    return first if _SEVERITY[first] >= _SEVERITY[second] else second


class SecurityStage:
    """Decides whether a plan may be offered for confirmation."""

    name = "security"

    def __init__(
        self,
        client: ToolProtocolClient,
        policy: SecurityPolicy | None = None,
        use_inference: bool = True,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.client = client
        self.policy = policy or SecurityPolicy()
        self.use_inference = use_inference
        self.timeout = timeout
        self.cancel_token = cancel_token
        self._blocked = [re.compile(pattern) for pattern in self.policy.blocked_locator_patterns]
        self.logger = logger.bind(component="security_stage")

    async def run(self, record: AnalysisRecord) -> AnalysisRecord:
        decision, reasons = self._apply_policy(record)
        errors = record.errors

        if self.use_inference and decision is not VerdictDecision.REJECTED:
            try:
                review = await self.client.infer(
                    SECURITY_REVIEW_PROMPT,
                    {
                        "resource": record.resource.to_dict(),
                        "plan": record.plan.to_dict() if record.plan else None,
                        "research_facts": record.research_facts,
                    },
                    self.timeout,
                    cancel_token=self.cancel_token,
                )
                review_decision, review_reasons = self._parse_review(review)
            except OrchestrationError as error:
                self.logger.warning(
                    "security_review_failed", resource_id=record.resource.id, error=str(error)
                )
                review_decision = VerdictDecision.NEEDS_REVIEW
                review_reasons = [f"Security review unavailable: {error}"]
                errors = errors + (_error_entry(self.name, error),)

            decision = _dominant(decision, review_decision)
            reasons.extend(review_reasons)

        verdict = SecurityVerdict(decision=decision, reasons=tuple(reasons))
        self.logger.info(
            "security_verdict",
            resource_id=record.resource.id,
            decision=decision.value,
            reasons=list(verdict.reasons),
        )
        return replace(
            record,
            security_verdict=verdict,
            status=AnalysisStatus.COMPLETED,
            errors=errors,
        )

    def _apply_policy(self, record: AnalysisRecord) -> tuple[VerdictDecision, list[str]]:
        decision = VerdictDecision.APPROVED
        reasons: list[str] = []
        plan = record.plan

        for pattern in self._blocked:
            if pattern.search(record.resource.locator):
                reasons.append(f"Locator matches blocked pattern '{pattern.pattern}'")
                decision = VerdictDecision.REJECTED

        if plan is None:
            reasons.append("No plan to review")
            return _dominant(decision, VerdictDecision.NEEDS_REVIEW), reasons

        if plan.estimated_risk >= self.policy.review_risk_threshold:
            reasons.append(
                f"Estimated risk {plan.estimated_risk:.2f} at or above "
                f"{self.policy.review_risk_threshold:.2f}"
            )
            decision = _dominant(decision, VerdictDecision.NEEDS_REVIEW)

        if plan.has_irreversible_steps and not self.policy.allow_irreversible:
            irreversible = [step.id for step in plan.steps if not step.reversible]
            reasons.append(f"Irreversible steps: {', '.join(irreversible)}")
            decision = _dominant(decision, VerdictDecision.NEEDS_REVIEW)

        return decision, reasons

    def _parse_review(self, review: dict[str, Any]) -> tuple[VerdictDecision, list[str]]:
        try:
            decision = VerdictDecision(str(review.get("decision", "")).lower())
        except ValueError:
            raise InferenceError(
                InferenceErrorKind.INVALID_RESPONSE,
                f"Unknown security decision: {review.get('decision')!r}",
            ) from None
        reasons = review.get("reasons") or []
        if isinstance(reasons, str):
            reasons = [reasons]
        if not isinstance(reasons, list):
            raise InferenceError(
                InferenceErrorKind.INVALID_RESPONSE, f"Malformed security reasons: {reasons!r}"
            )
        return decision, [str(reason) for reason in reasons]

"""
Plan Construction and Validation

Plans are built from a dependency DAG of steps and collapsed to a total order
here, once. Ordering is resolved with Kahn's algorithm; among steps that are
ready at the same time the declared order wins, so a plan whose steps are
already listed in a valid order keeps that order.

Validation is shared by plan creation and by the executor:
- every dependency of a step must precede it
- an irreversible step is either last, or every earlier reversible step must
  declare an isolated compensating action
"""

from collections.abc import Iterable, Sequence

import structlog

from weaver.core.domain.errors import PlanValidationError, PlanValidationErrorKind
from weaver.core.domain.models import ImplementationPlan, PlanStep

logger = structlog.get_logger()


def order_steps(steps: Sequence[PlanStep]) -> list[PlanStep]:
    """
    Collapse a step DAG into a total order.

    Args:
        steps: Steps in declared order

    Returns:
        Steps ordered so that every step follows its dependencies

    Raises:
        PlanValidationError: UnknownDependency for a dangling reference,
            CyclicDependency if no total order exists
    """
    by_id: dict[str, PlanStep] = {}
    for step in steps:
        if step.id in by_id:
            raise PlanValidationError(
                PlanValidationErrorKind.UNKNOWN_DEPENDENCY,
                f"Duplicate step id '{step.id}'",
                step_id=step.id,
            )
        by_id[step.id] = step

    position = {step.id: index for index, step in enumerate(steps)}
    remaining = {step.id: 0 for step in steps}
    dependents: dict[str, list[str]] = {step.id: [] for step in steps}

    for step in steps:
        for dependency in step.depends_on:
            if dependency not in by_id:
                raise PlanValidationError(
                    PlanValidationErrorKind.UNKNOWN_DEPENDENCY,
                    f"Step '{step.id}' depends on unknown step '{dependency}'",
                    step_id=step.id,
                )
            if dependency == step.id:
                raise PlanValidationError(
                    PlanValidationErrorKind.CYCLIC_DEPENDENCY,
                    f"Step '{step.id}' depends on itself",
                    step_id=step.id,
                )
            remaining[step.id] += 1
            dependents[dependency].append(step.id)

    ready = sorted((sid for sid, count in remaining.items() if count == 0), key=position.get)
    ordered: list[PlanStep] = []

    while ready:
        current = ready.pop(0)
        ordered.append(by_id[current])
        for dependent in dependents[current]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                ready.append(dependent)
        ready.sort(key=position.get)

    if len(ordered) != len(steps):
        stuck = sorted((sid for sid, count in remaining.items() if count > 0), key=position.get)
        raise PlanValidationError(
            PlanValidationErrorKind.CYCLIC_DEPENDENCY,
            f"Dependency cycle among steps: {', '.join(stuck)}",
            step_id=stuck[0],
        )

    return ordered


def validate_order(steps: Sequence[PlanStep]) -> None:
    """Check that every step's dependencies appear before it."""
    seen: set[str] = set()
    known = {step.id for step in steps}

    for step in steps:
        for dependency in step.depends_on:
            if dependency not in known:
                raise PlanValidationError(
                    PlanValidationErrorKind.UNKNOWN_DEPENDENCY,
                    f"Step '{step.id}' depends on unknown step '{dependency}'",
                    step_id=step.id,
                )
            if dependency not in seen:
                raise PlanValidationError(
                    PlanValidationErrorKind.UNORDERED_DEPENDENCY,
                    f"Step '{step.id}' runs before its dependency '{dependency}'",
                    step_id=step.id,
                )
        seen.add(step.id)


def validate_reversibility(steps: Sequence[PlanStep]) -> None:
    """
    Check the placement of irreversible steps.

    An irreversible step may run mid-plan only when no earlier compensating
    action can be invalidated by it.
    """
    for index, step in enumerate(steps):
        if step.reversible or index == len(steps) - 1:
            continue

        unsafe = [
            earlier.id
            for earlier in steps[:index]
            if earlier.reversible and not earlier.isolated_compensation
        ]
        if unsafe:
            raise PlanValidationError(
                PlanValidationErrorKind.IRREVERSIBLE_MID_PLAN,
                f"Irreversible step '{step.id}' would invalidate compensation of "
                f"{', '.join(unsafe)}",
                step_id=step.id,
            )


def validate_plan(plan: ImplementationPlan) -> None:
    """
    Validate ordering and reversibility of an already ordered plan.

    Raises:
        PlanValidationError: If the plan cannot be executed as ordered
    """
    validate_order(plan.steps)
    validate_reversibility(plan.steps)


def build_plan(
    resource_id: str,
    steps: Iterable[PlanStep],
    estimated_risk: float = 0.0,
) -> ImplementationPlan:
    """
    Build a validated, totally ordered plan from a step DAG.

    Args:
        resource_id: Resource the plan integrates
        steps: Steps with their declared dependencies
        estimated_risk: Risk score in [0, 1]

    Returns:
        ImplementationPlan with steps in execution order

    Raises:
        PlanValidationError: If the steps cannot form a valid plan
    """
    ordered = order_steps(list(steps))
    validate_reversibility(ordered)

    plan = ImplementationPlan(
        resource_id=resource_id,
        steps=tuple(ordered),
        estimated_risk=max(0.0, min(1.0, float(estimated_risk))),
    )
    logger.debug(
        "plan_built",
        plan_id=plan.plan_id,
        resource_id=resource_id,
        steps=[step.id for step in plan.steps],
        estimated_risk=plan.estimated_risk,
    )
    return plan

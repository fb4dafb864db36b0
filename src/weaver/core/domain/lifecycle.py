"""
Resource Lifecycle

Per-resource state machine of an orchestration session:

    Discovered -> Analyzing -> Analyzed -> PlanAccepted -> Executing
                                   |                          |
                                   v                          v
                                 Failed          Completed | Failed | RolledBack

Completed, Failed and RolledBack are terminal. A terminal resource can only be
requeued, which starts a new attempt at Discovered and keeps the history.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from weaver.core.domain.errors import InvalidTransitionError
from weaver.core.domain.models import (
    AnalysisRecord,
    ExecutionResult,
    FinalState,
    Resource,
    utcnow,
)


class ResourceState(str, Enum):
    """Lifecycle state of a resource within a session."""

    DISCOVERED = "Discovered"
    ANALYZING = "Analyzing"
    ANALYZED = "Analyzed"
    PLAN_ACCEPTED = "PlanAccepted"
    EXECUTING = "Executing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {ResourceState.COMPLETED, ResourceState.FAILED, ResourceState.ROLLED_BACK}
)

ALLOWED_TRANSITIONS: dict[ResourceState, frozenset[ResourceState]] = {
    ResourceState.DISCOVERED: frozenset({ResourceState.ANALYZING}),
    ResourceState.ANALYZING: frozenset({ResourceState.ANALYZED}),
    ResourceState.ANALYZED: frozenset({ResourceState.PLAN_ACCEPTED, ResourceState.FAILED}),
    ResourceState.PLAN_ACCEPTED: frozenset({ResourceState.EXECUTING}),
    ResourceState.EXECUTING: frozenset(
        {ResourceState.COMPLETED, ResourceState.ROLLED_BACK, ResourceState.FAILED}
    ),
    ResourceState.COMPLETED: frozenset(),
    ResourceState.FAILED: frozenset(),
    ResourceState.ROLLED_BACK: frozenset(),
}

EXECUTION_OUTCOMES = {
    FinalState.SUCCEEDED: ResourceState.COMPLETED,
    FinalState.ROLLED_BACK: ResourceState.ROLLED_BACK,
    FinalState.PARTIALLY_FAILED: ResourceState.FAILED,
}


@dataclass(frozen=True)
class Transition:
    """One recorded lifecycle transition."""

    from_state: ResourceState | None
    to_state: ResourceState
    at: datetime
    reason: str
    attempt: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_state.value if self.from_state else None,
            "to": self.to_state.value,
            "at": self.at.isoformat(),
            "reason": self.reason,
            "attempt": self.attempt,
        }


@dataclass(frozen=True)
class ResourceSnapshot:
    """Read-only copy of a resource's last committed state."""

    resource: Resource
    state: ResourceState
    attempt: int
    analysis: AnalysisRecord | None
    execution: ExecutionResult | None
    transitions: tuple[Transition, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource.to_dict(),
            "state": self.state.value,
            "attempt": self.attempt,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "execution": self.execution.to_dict() if self.execution else None,
            "transitions": [transition.to_dict() for transition in self.transitions],
        }


@dataclass
class ResourceEntry:
    """
    Mutable lifecycle entry owned by the session.

    Only OrchestrationSession touches entries; everyone else reads snapshots.
    """

    resource: Resource
    state: ResourceState = ResourceState.DISCOVERED
    attempt: int = 1
    analysis: AnalysisRecord | None = None
    execution: ExecutionResult | None = None
    transitions: list[Transition] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.transitions:
            self.transitions.append(
                Transition(None, self.state, utcnow(), "discovered", self.attempt)
            )

    def transition(self, to_state: ResourceState, reason: str) -> Transition:
        """
        Move to a new state.

        Raises:
            InvalidTransitionError: If the state machine forbids the move
        """
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.resource.id, self.state.value, to_state.value)

        record = Transition(self.state, to_state, utcnow(), reason, self.attempt)
        self.state = to_state
        self.transitions.append(record)
        return record

    def restart(self, reason: str) -> Transition:
        """
        Start a new attempt from a terminal state.

        Raises:
            InvalidTransitionError: If the entry is not terminal
        """
        if not self.state.is_terminal:
            raise InvalidTransitionError(
                self.resource.id,
                self.state.value,
                ResourceState.DISCOVERED.value,
                detail="only terminal resources can be requeued",
            )

        previous = self.state
        self.attempt += 1
        self.state = ResourceState.DISCOVERED
        self.analysis = None
        self.execution = None
        record = Transition(previous, self.state, utcnow(), reason, self.attempt)
        self.transitions.append(record)
        return record

    def snapshot(self) -> ResourceSnapshot:
        return copy.deepcopy(
            ResourceSnapshot(
                resource=self.resource,
                state=self.state,
                attempt=self.attempt,
                analysis=self.analysis,
                execution=self.execution,
                transitions=tuple(self.transitions),
            )
        )

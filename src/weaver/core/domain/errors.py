"""
Error Taxonomy

Typed failures raised by the orchestration core. Every error carries a `kind`
so callers can branch on the failure class without string matching:

- ToolError: a tool provider call failed (Timeout, Unreachable, Rejected, InvalidOperation)
- InferenceError: the inference capability failed (RateLimited, Unavailable, InvalidResponse)
- PlanValidationError: a plan cannot be accepted or executed as ordered
- ExecutionError: plan execution could not proceed (StepFailed, LockContention)
- InvalidTransitionError: a resource lifecycle transition is not allowed

Transient kinds are retried inside ToolProtocolClient; everything else is
surfaced to the owning stage or caller immediately.
"""

from enum import Enum


class ToolErrorKind(str, Enum):
    """Failure classes of a tool provider call."""

    TIMEOUT = "Timeout"
    UNREACHABLE = "Unreachable"
    REJECTED = "Rejected"
    INVALID_OPERATION = "InvalidOperation"


class InferenceErrorKind(str, Enum):
    """Failure classes of an inference call."""

    RATE_LIMITED = "RateLimited"
    UNAVAILABLE = "Unavailable"
    INVALID_RESPONSE = "InvalidResponse"


class PlanValidationErrorKind(str, Enum):
    """Reasons a plan is refused."""

    CYCLIC_DEPENDENCY = "CyclicDependency"
    IRREVERSIBLE_MID_PLAN = "IrreversibleMidPlan"
    UNKNOWN_DEPENDENCY = "UnknownDependency"
    UNORDERED_DEPENDENCY = "UnorderedDependency"


class ExecutionErrorKind(str, Enum):
    """Reasons plan execution could not proceed."""

    STEP_FAILED = "StepFailed"
    LOCK_CONTENTION = "LockContention"


TRANSIENT_KINDS = frozenset(
    {
        ToolErrorKind.TIMEOUT,
        ToolErrorKind.UNREACHABLE,
        InferenceErrorKind.RATE_LIMITED,
        InferenceErrorKind.UNAVAILABLE,
    }
)


class OrchestrationError(Exception):
    """Base class for all typed orchestration failures."""

    def __init__(self, kind: Enum, message: str = ""):
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"{kind.value}: {self.message}")

    def to_dict(self) -> dict[str, str]:
        """Serialize for records, logs and API responses."""
        return {
            "error": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
        }


class ToolError(OrchestrationError):
    """
    A tool provider call failed.

    Attributes:
        provider: Name of the provider that was called
        operation: Operation name that was invoked
        cancelled: True when the call was aborted by a cancellation token
            (surfaced as Timeout, never retried)
    """

    def __init__(
        self,
        kind: ToolErrorKind,
        message: str = "",
        provider: str | None = None,
        operation: str | None = None,
        cancelled: bool = False,
    ):
        super().__init__(kind, message)
        self.provider = provider
        self.operation = operation
        self.cancelled = cancelled

    @property
    def reason(self) -> str:
        """Rejection reason reported by the provider."""
        return self.message


class InferenceError(OrchestrationError):
    """The inference capability failed."""

    def __init__(self, kind: InferenceErrorKind, message: str = ""):
        super().__init__(kind, message)


class PlanValidationError(OrchestrationError):
    """A plan violates ordering or reversibility rules."""

    def __init__(self, kind: PlanValidationErrorKind, message: str = "", step_id: str | None = None):
        super().__init__(kind, message)
        self.step_id = step_id


class ExecutionError(OrchestrationError):
    """Plan execution could not proceed."""

    def __init__(self, kind: ExecutionErrorKind, message: str = "", plan_id: str | None = None):
        super().__init__(kind, message)
        self.plan_id = plan_id


class InvalidTransitionError(Exception):
    """A lifecycle transition was requested that the state machine forbids."""

    def __init__(self, resource_id: str, current: str, requested: str, detail: str = ""):
        self.resource_id = resource_id
        self.current = current
        self.requested = requested
        message = f"Resource {resource_id}: cannot go from {current} to {requested}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


def is_transient(error: Exception) -> bool:
    """
    Decide whether an error may be retried.

    Cancelled calls are never retried, even though they surface as Timeout.
    """
    if isinstance(error, ToolError) and error.cancelled:
        return False
    if isinstance(error, OrchestrationError):
        return error.kind in TRANSIENT_KINDS
    return False


_WIRE_KINDS: dict[str, Enum] = {
    **{kind.value: kind for kind in ToolErrorKind},
    **{kind.value: kind for kind in InferenceErrorKind},
}


def error_from_wire(
    kind: str | None,
    message: str,
    provider: str | None = None,
    operation: str | None = None,
) -> OrchestrationError:
    """
    Build a typed error from a wire-level `{status: "error", kind, message}` reply.

    Unknown kinds are treated as a rejection by the provider.
    """
    resolved = _WIRE_KINDS.get(kind or "")
    if isinstance(resolved, InferenceErrorKind):
        return InferenceError(resolved, message)
    if isinstance(resolved, ToolErrorKind):
        return ToolError(resolved, message, provider=provider, operation=operation)
    detail = f"{kind}: {message}" if kind else message
    return ToolError(ToolErrorKind.REJECTED, detail, provider=provider, operation=operation)


def error_to_wire(error: OrchestrationError) -> dict[str, str]:
    """Encode a typed error as a wire-level error reply."""
    return {"status": "error", "kind": error.kind.value, "message": error.message}

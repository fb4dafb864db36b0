"""
Shared fixtures.

Provides in-memory stand-ins for the external collaborators of the
orchestration core:
- ScriptedTransport: a provider transport replaying scripted replies/failures
- FakeProject: a target project whose workspace operations apply and undo
  observable changes
- FakeInference: an inference capability answering the analysis prompts
"""

import asyncio
import copy
from typing import Any

import pytest

from weaver.core.domain.errors import InferenceError, InferenceErrorKind
from weaver.core.domain.health import CircuitBreakerPolicy
from weaver.core.domain.tool_client import RetryPolicy, ToolProtocolClient
from weaver.core.prompts.analysis_prompts import (
    PLAN_PROMPT,
    RESEARCH_SUMMARY_PROMPT,
    SECURITY_REVIEW_PROMPT,
)
from weaver.infrastructure.tools.local_transport import LocalProviderTransport


class ScriptedTransport:
    """
    Provider transport replaying a script.

    Each script item is consumed by one send(): an exception (instance or
    class) is raised, a dict is returned as the wire reply. When the script
    is exhausted `default` is returned.
    """

    def __init__(self, script: list[Any] | None = None, default: dict | None = None):
        self.script = list(script or [])
        self.default = default if default is not None else {"status": "ok", "result": {}}
        self.calls: list[dict[str, Any]] = []
        self.ping_result = True
        self.pings = 0
        self.closed = False
        self.gate: asyncio.Event | None = None

    async def send(self, operation, parameters, idempotency_key=None):
        self.calls.append(
            {"operation": operation, "parameters": parameters, "idempotency_key": idempotency_key}
        )
        if self.gate is not None:
            await self.gate.wait()
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException) or (
            isinstance(item, type) and issubclass(item, BaseException)
        ):
            raise item
        return item

    async def ping(self):
        self.pings += 1
        return self.ping_result

    async def close(self):
        self.closed = True


class FakeProject:
    """
    Target project with observable state.

    Workspace operations mutate `state`; their compensations restore it.
    `fail` maps an operation name to the number of times it fails with a
    transport timeout (use a large number for "always").
    """

    OPERATIONS = [
        "install_dependency",
        "uninstall_dependency",
        "write_file",
        "revert_file",
        "generate_code",
        "generate_tests",
        "remove_tests",
        "create_branch",
        "delete_branch",
    ]

    def __init__(self):
        self.state: dict[str, Any] = {"dependencies": set(), "files": {}, "tests": set(), "branches": set()}
        self._file_history: dict[str, list[str | None]] = {}
        self.fail: dict[str, int] = {}
        self.reject: set[str] = set()
        self.log: list[tuple[str, str | None]] = []
        self.active = 0
        self.max_active = 0
        self.delay = 0.0

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.state)

    async def _apply(self, operation: str, parameters: dict[str, Any]) -> Any:
        if self.fail.get(operation, 0) > 0:
            self.fail[operation] -= 1
            raise TimeoutError(f"{operation} timed out")
        if operation in self.reject:
            return {"status": "error", "kind": "Rejected", "message": f"{operation} refused"}

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self._mutate(operation, parameters)
        finally:
            self.active -= 1
        return {"status": "ok", "result": result}

    def _mutate(self, operation: str, parameters: dict[str, Any]) -> Any:
        name = parameters.get("name") or parameters.get("path") or "default"
        if operation == "install_dependency":
            self.state["dependencies"].add(name)
        elif operation == "uninstall_dependency":
            self.state["dependencies"].discard(name)
        elif operation in ("write_file", "generate_code"):
            self._file_history.setdefault(name, []).append(self.state["files"].get(name))
            self.state["files"][name] = parameters.get("content", "generated")
        elif operation == "revert_file":
            previous = self._file_history.get(name, [None]).pop()
            if previous is None:
                self.state["files"].pop(name, None)
            else:
                self.state["files"][name] = previous
        elif operation == "generate_tests":
            self.state["tests"].add(name)
        elif operation == "remove_tests":
            self.state["tests"].discard(name)
        elif operation == "create_branch":
            self.state["branches"].add(name)
        elif operation == "delete_branch":
            self.state["branches"].discard(name)
        return {"operation": operation, "target": name}

    def transport(self) -> "ProjectTransport":
        return ProjectTransport(self)


class ProjectTransport:
    """Transport delivering workspace operations to a FakeProject."""

    def __init__(self, project: FakeProject):
        self.project = project

    async def send(self, operation, parameters, idempotency_key=None):
        self.project.log.append((operation, idempotency_key))
        return await self.project._apply(operation, dict(parameters))

    async def ping(self):
        return True

    async def close(self):
        return None


class FakeInference:
    """
    Inference capability answering the analysis prompts.

    `plan`, `review` and `summary` are the replies to the plan, security and
    summary prompts; set one to an InferenceError to make that call fail.
    """

    def __init__(self, plan=None, review=None, summary=None):
        self.plan = plan if plan is not None else default_plan_reply()
        self.review = review if review is not None else {"decision": "approved", "reasons": []}
        self.summary = summary if summary is not None else {"summary": "A small library."}
        self.prompts: list[str] = []
        self.contexts: list[dict[str, Any]] = []

    async def infer(self, prompt, context):
        self.prompts.append(prompt)
        self.contexts.append(context)
        if prompt == PLAN_PROMPT:
            reply = self.plan
        elif prompt == SECURITY_REVIEW_PROMPT:
            reply = self.review
        elif prompt == RESEARCH_SUMMARY_PROMPT:
            reply = self.summary
        else:
            raise InferenceError(InferenceErrorKind.INVALID_RESPONSE, "unexpected prompt")
        if isinstance(reply, BaseException):
            raise reply
        return copy.deepcopy(reply)


def default_plan_reply() -> dict[str, Any]:
    """Three-step plan: install a dependency, modify a file, generate tests."""
    return {
        "steps": [
            {"id": "install", "kind": "installDependency", "parameters": {"name": "example-lib"}},
            {
                "id": "modify",
                "kind": "modifyFile",
                "parameters": {"path": "app.py", "content": "import example_lib"},
                "depends_on": ["install"],
            },
            {
                "id": "tests",
                "kind": "generateTests",
                "parameters": {"name": "test_app.py"},
                "depends_on": ["modify"],
            },
        ],
        "estimated_risk": 0.2,
    }


STEP_CATALOG_CONFIG = {
    "installDependency": {
        "provider": "workspace",
        "operation": "install_dependency",
        "compensation": "uninstall_dependency",
    },
    "modifyFile": {"provider": "workspace", "operation": "write_file", "compensation": "revert_file"},
    "generateCode": {"provider": "workspace", "operation": "generate_code", "compensation": "revert_file"},
    "generateTests": {
        "provider": "workspace",
        "operation": "generate_tests",
        "compensation": "remove_tests",
    },
    "createBranch": {"provider": "vcs", "operation": "create_branch"},
}


def orchestration_config(**overrides: Any) -> dict[str, Any]:
    """Profile dictionary wiring research, workspace and vcs providers."""
    config = {
        "profile": "test",
        "session": {"max_concurrent_resources": 4, "persistence": {"type": "memory"}},
        "tool_client": {
            "timeout_seconds": 5,
            "retry_policy": {"max_attempts": 3, "base_backoff": 0.0, "jitter": 0.0},
            "circuit_breaker": {
                "failure_threshold": 50,
                "grace_period_seconds": 30,
                "probe_interval_seconds": 60,
            },
        },
        "analysis": {
            "max_concurrent_calls": 2,
            "research_operations": [{"provider": "research", "operation": "repository_facts"}],
            "security": {"review_risk_threshold": 0.7},
        },
        "execution": {"lock_wait_seconds": 5},
        "providers": [
            {"name": "research", "type": "local", "operations": ["repository_facts"]},
            {"name": "workspace", "type": "local", "operations": FakeProject.OPERATIONS},
            {"name": "vcs", "type": "local", "operations": ["create_branch", "delete_branch"]},
        ],
        "steps": copy.deepcopy(STEP_CATALOG_CONFIG),
    }
    config.update(overrides)
    return config


@pytest.fixture
def fast_retry():
    """Retry policy without backoff delays."""
    return RetryPolicy(max_attempts=3, base_backoff=0.0, jitter=0.0)


@pytest.fixture
def breaker_policy():
    """Breaker that opens after three failures with no grace period."""
    return CircuitBreakerPolicy(failure_threshold=3, grace_period_seconds=0.0, probe_interval_seconds=60.0)


@pytest.fixture
def clock():
    """Controllable monotonic clock."""

    class Clock:
        def __init__(self):
            self.now = 1000.0

        def __call__(self):
            return self.now

        def advance(self, seconds: float):
            self.now += seconds

    return Clock()


@pytest.fixture
def client(fast_retry, breaker_policy, clock):
    """ToolProtocolClient with fast retries and a controllable clock."""
    return ToolProtocolClient(
        retry_policy=fast_retry,
        breaker_policy=breaker_policy,
        default_timeout=1.0,
        clock=clock,
    )


@pytest.fixture
def scripted_transport():
    """Factory for ScriptedTransport instances."""
    return ScriptedTransport


@pytest.fixture
def project():
    """Fresh FakeProject."""
    return FakeProject()


@pytest.fixture
def fake_inference():
    """FakeInference answering with the default three-step plan."""
    return FakeInference()


@pytest.fixture
def inference_factory():
    """Factory for FakeInference instances with custom replies."""
    return FakeInference


@pytest.fixture
def research_transport():
    """Research provider reporting facts about any resource."""
    return LocalProviderTransport(
        {"repository_facts": lambda params: {"language": "x", "hasTests": True}},
        name="research",
    )


@pytest.fixture
def config_factory():
    """Factory for orchestration profile dictionaries."""
    return orchestration_config


@pytest.fixture
def step_catalog_config():
    return copy.deepcopy(STEP_CATALOG_CONFIG)

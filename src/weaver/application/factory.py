"""
Application Layer - Orchestrator Factory

Wires an OrchestrationSession from a configuration profile.

Key Responsibilities:
- Load configuration profiles (configs/<profile>.yaml)
- Build the ToolProtocolClient with its retry and circuit breaker policies
- Instantiate provider transports (http, local) and the inference adapter
- Compose the analysis stages, the coordinator and the plan executor
- Select the session store
"""

import importlib
import os
from dataclasses import fields
from pathlib import Path
from typing import Any

import structlog
import yaml

from weaver.core.domain.cancellation import CancellationToken
from weaver.core.domain.coordinator import AnalysisCoordinator
from weaver.core.domain.executor import PlanExecutor, ProjectLockRegistry
from weaver.core.domain.health import CircuitBreakerPolicy
from weaver.core.domain.models import ToolProvider
from weaver.core.domain.session import OrchestrationSession
from weaver.core.domain.stages import (
    AnalysisStage,
    PlanStage,
    ResearchOperation,
    ResearchStage,
    SecurityPolicy,
    SecurityStage,
    StepCatalog,
)
from weaver.core.domain.tool_client import RetryPolicy, ToolProtocolClient
from weaver.core.interfaces.inference import InferenceProtocol
from weaver.core.interfaces.state import SessionStoreProtocol
from weaver.core.interfaces.transport import ProviderTransportProtocol
from weaver.infrastructure.llm.inference_transport import InferenceTransport
from weaver.infrastructure.llm.litellm_inference import LiteLLMInference
from weaver.infrastructure.persistence.file_session_store import (
    FileSessionStore,
    InMemorySessionStore,
)
from weaver.infrastructure.tools.dry_run import create_dry_run_handlers
from weaver.infrastructure.tools.http_transport import HttpProviderTransport
from weaver.infrastructure.tools.local_transport import LocalProviderTransport


def _build_policy(policy_cls: type, section: dict[str, Any] | None) -> Any:
    """Instantiate a policy dataclass from a config section, rejecting unknown keys."""
    section = dict(section or {})
    known = {field.name for field in fields(policy_cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(f"Unknown {policy_cls.__name__} settings: {', '.join(unknown)}")
    return policy_cls(**section)


class OrchestratorFactory:
    """
    Factory for creating orchestration sessions with dependency injection.

    Transports and the inference capability can be injected to replace
    configured ones (tests, embedding applications).
    """

    def __init__(self, config_dir: str = "configs"):
        """
        Initialize OrchestratorFactory with configuration directory.

        Args:
            config_dir: Path to directory containing profile YAML files
        """
        self.config_dir = Path(config_dir)
        self.logger = structlog.get_logger().bind(component="orchestrator_factory")

    def create_session(
        self,
        profile: str = "dev",
        project_id: str = "default",
        user_intent: str = "",
        project_context: dict[str, Any] | None = None,
        session_id: str | None = None,
        locks: ProjectLockRegistry | None = None,
        store: SessionStoreProtocol | None = None,
        inference: InferenceProtocol | None = None,
        transports: dict[str, ProviderTransportProtocol] | None = None,
    ) -> OrchestrationSession:
        """
        Create a session from a configuration profile.

        Args:
            profile: Configuration profile name (dev/prod/...)
            project_id: Target project; plans against it are serialized
            user_intent: What the integration should achieve
            project_context: Facts about the target project
            session_id: Optional session id (generated if omitted)
            locks: Shared project lock registry (one per process)
            store: Session store override
            inference: Inference capability override
            transports: Transport overrides by provider name

        Returns:
            Unopened OrchestrationSession

        Raises:
            FileNotFoundError: If profile YAML not found
            ValueError: If configuration is invalid
        """
        config = self._load_profile(profile)
        return self.build_session(
            config,
            project_id=project_id,
            user_intent=user_intent,
            project_context=project_context,
            session_id=session_id,
            locks=locks,
            store=store,
            inference=inference,
            transports=transports,
        )

    def build_session(
        self,
        config: dict[str, Any],
        project_id: str = "default",
        user_intent: str = "",
        project_context: dict[str, Any] | None = None,
        session_id: str | None = None,
        locks: ProjectLockRegistry | None = None,
        store: SessionStoreProtocol | None = None,
        inference: InferenceProtocol | None = None,
        transports: dict[str, ProviderTransportProtocol] | None = None,
    ) -> OrchestrationSession:
        """Create a session from an already loaded configuration dictionary."""
        cancel_token = CancellationToken()
        client = self._create_client(config)
        self._register_providers(client, config, transports or {})
        self._register_inference(client, config, inference)

        analysis = config.get("analysis", {})
        session_config = config.get("session", {})
        execution = config.get("execution", {})

        coordinator = AnalysisCoordinator(
            self._create_stages(client, config, cancel_token),
            max_concurrent_resources=session_config.get("max_concurrent_resources", 4),
        )
        executor = PlanExecutor(
            client,
            project_id,
            locks=locks,
            lock_wait_seconds=execution.get("lock_wait_seconds", 120.0),
            step_timeout=execution.get("step_timeout_seconds"),
            cancel_token=cancel_token,
        )

        self.logger.info(
            "creating_session",
            profile=config.get("profile"),
            project_id=project_id,
            providers=[provider.name for provider in client.providers()],
            research_operations=len(analysis.get("research_operations", [])),
        )

        return OrchestrationSession(
            client,
            coordinator,
            executor,
            session_id=session_id,
            store=store if store is not None else self._create_store(config),
            cancel_token=cancel_token,
            user_intent=user_intent,
            project_context=project_context,
        )

    def _load_profile(self, profile: str) -> dict:
        """
        Load configuration profile from YAML file.

        Args:
            profile: Profile name (dev/prod)

        Returns:
            Configuration dictionary

        Raises:
            FileNotFoundError: If profile YAML not found
        """
        profile_path = self.config_dir / f"{profile}.yaml"

        if not profile_path.exists():
            self.logger.error(
                "profile_not_found",
                profile=profile,
                path=str(profile_path),
                hint="Ensure profile YAML exists in configs directory",
            )
            raise FileNotFoundError(f"Profile not found: {profile_path}")

        with open(profile_path) as f:
            config = yaml.safe_load(f) or {}

        self.logger.debug("profile_loaded", profile=profile, config_keys=list(config.keys()))
        return config

    def _create_client(self, config: dict) -> ToolProtocolClient:
        tool_config = config.get("tool_client", {})
        return ToolProtocolClient(
            retry_policy=_build_policy(RetryPolicy, tool_config.get("retry_policy")),
            breaker_policy=_build_policy(CircuitBreakerPolicy, tool_config.get("circuit_breaker")),
            default_timeout=tool_config.get("timeout_seconds", 30.0),
        )

    def _register_providers(
        self,
        client: ToolProtocolClient,
        config: dict,
        overrides: dict[str, ProviderTransportProtocol],
    ) -> None:
        timeout = config.get("tool_client", {}).get("timeout_seconds", 30.0)

        for entry in config.get("providers", []):
            name = entry.get("name")
            operations = entry.get("operations") or []
            if not name or not operations:
                raise ValueError(f"Provider entry needs name and operations: {entry}")

            transport = overrides.get(name) or self._create_transport(entry, timeout)
            client.register_provider(
                ToolProvider(
                    name=name,
                    supported_operations=frozenset(operations),
                    endpoint=entry.get("url", f"local:{name}"),
                ),
                transport,
            )

    def _create_transport(self, entry: dict, timeout: float) -> ProviderTransportProtocol:
        provider_type = entry.get("type", "http")

        if provider_type == "http":
            if not entry.get("url"):
                raise ValueError(f"HTTP provider '{entry['name']}' needs a url")
            return HttpProviderTransport(
                entry["url"],
                headers=self._resolve_headers(entry.get("headers", {})),
                timeout=timeout,
            )

        if provider_type == "local":
            handlers_ref = entry.get("handlers")
            if handlers_ref:
                module_name, _, attribute = handlers_ref.partition(":")
                handler_factory = getattr(importlib.import_module(module_name), attribute)
                handlers = handler_factory(list(entry["operations"]))
            else:
                handlers = create_dry_run_handlers(list(entry["operations"]))
            return LocalProviderTransport(handlers, name=entry["name"])

        raise ValueError(f"Unknown provider type: {provider_type}")

    def _resolve_headers(self, headers: dict[str, str]) -> dict[str, str]:
        """Resolve `<Header>_env: VAR` entries from the environment."""
        resolved = {}
        for key, value in headers.items():
            if not key.endswith("_env"):
                resolved[key] = str(value)
                continue
            env_value = os.getenv(value)
            if env_value is None:
                raise ValueError(f"Header value not found in environment variable: {value}")
            resolved[key[: -len("_env")]] = env_value
        return resolved

    def _register_inference(
        self,
        client: ToolProtocolClient,
        config: dict,
        inference: InferenceProtocol | None,
    ) -> None:
        inference_config = config.get("inference")
        if inference is None and not inference_config:
            self.logger.warning("inference_not_configured")
            return

        if inference is None:
            inference = LiteLLMInference(
                model=inference_config.get("model", "gpt-4.1-mini"),
                params=inference_config.get("params"),
                timeout=inference_config.get("timeout_seconds", 60.0),
            )
        endpoint = (inference_config or {}).get("model", "injected")
        client.register_provider(InferenceTransport.provider(endpoint), InferenceTransport(inference))

    def _create_stages(
        self,
        client: ToolProtocolClient,
        config: dict,
        cancel_token: CancellationToken,
    ) -> list[AnalysisStage]:
        analysis = config.get("analysis", {})
        security = dict(analysis.get("security", {}))
        use_inference = security.pop("review_with_inference", True)

        research = ResearchStage(
            client,
            [
                ResearchOperation(provider=op["provider"], operation=op["operation"])
                for op in analysis.get("research_operations", [])
            ],
            max_concurrent_calls=analysis.get("max_concurrent_calls", 4),
            summarize=analysis.get("research_summary", False),
            cancel_token=cancel_token,
        )
        plan = PlanStage(
            client,
            StepCatalog.from_config(config.get("steps", {})),
            cancel_token=cancel_token,
        )
        review = SecurityStage(
            client,
            _build_policy(SecurityPolicy, security),
            use_inference=use_inference,
            cancel_token=cancel_token,
        )
        return [research, plan, review]

    def _create_store(self, config: dict) -> SessionStoreProtocol | None:
        persistence = config.get("session", {}).get("persistence", {})
        store_type = persistence.get("type", "memory")

        if store_type == "file":
            return FileSessionStore(work_dir=persistence.get("work_dir", ".weaver"))
        if store_type == "memory":
            return InMemorySessionStore()
        if store_type == "none":
            return None
        raise ValueError(f"Unknown persistence type: {store_type}")

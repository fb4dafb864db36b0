"""
Tool Protocol Client

Uniform client for invoking a named operation on a named tool provider.

The client owns the call policy for every provider:
- fail fast with InvalidOperation for unknown providers or operations
- per-attempt timeouts
- exponential backoff with jitter for transient failures, capped at
  RetryPolicy.max_attempts
- circuit breaking per provider (see health.CircuitBreaker), short-circuiting
  calls to unreachable providers without I/O
- cancellation: a CancellationToken aborts the in-flight attempt, which then
  surfaces as a non-retryable Timeout

The client does not deduplicate calls. Callers that mutate state pass an
idempotency key which transports forward to the provider.

The inference capability is registered as the provider "inference" with a
single operation "infer" and goes through the same path, sharing retry and
circuit breaking with every other provider.
"""

import asyncio
import dataclasses
import random
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from weaver.core.domain.cancellation import CancellationToken
from weaver.core.domain.errors import (
    InferenceError,
    InferenceErrorKind,
    OrchestrationError,
    ToolError,
    ToolErrorKind,
    error_from_wire,
    is_transient,
)
from weaver.core.domain.health import CircuitBreaker, CircuitBreakerPolicy
from weaver.core.domain.models import ProviderHealth, ToolCall, ToolProvider
from weaver.core.interfaces.transport import ProviderTransportProtocol

logger = structlog.get_logger()

INFERENCE_PROVIDER = "inference"
INFER_OPERATION = "infer"


@dataclass
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 3
    base_backoff: float = 0.5
    backoff_multiplier: float = 2.0
    max_backoff: float = 10.0
    jitter: float = 0.25

    def backoff(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: Number of the attempt that just failed (1-indexed)
            rng: Source of uniform randoms in [0, 1)

        Returns:
            Delay in seconds, jittered by +/- `jitter` of the base delay
        """
        delay = min(self.max_backoff, self.base_backoff * self.backoff_multiplier ** (attempt - 1))
        if delay <= 0:
            return 0.0
        spread = delay * self.jitter
        return max(0.0, delay - spread + rng() * 2 * spread)


class ToolProtocolClient:
    """
    Invokes provider operations with retry, timeout and circuit breaking.

    Providers are registered once at session start. Their health state is
    updated here and nowhere else; `providers()` hands out copies.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        breaker_policy: CircuitBreakerPolicy | None = None,
        default_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.breaker_policy = breaker_policy or CircuitBreakerPolicy()
        self.default_timeout = default_timeout
        self._clock = clock
        self._rng = rng
        self._providers: dict[str, ToolProvider] = {}
        self._transports: dict[str, ProviderTransportProtocol] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self.logger = logger.bind(component="tool_client")

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_provider(
        self, provider: ToolProvider, transport: ProviderTransportProtocol
    ) -> None:
        """
        Register a provider and the transport that reaches it.

        Raises:
            ValueError: If a provider with the same name is already registered
        """
        if provider.name in self._providers:
            raise ValueError(f"Provider already registered: {provider.name}")

        self._providers[provider.name] = ToolProvider(
            name=provider.name,
            supported_operations=frozenset(provider.supported_operations),
            endpoint=provider.endpoint,
            health=ProviderHealth.HEALTHY,
        )
        self._transports[provider.name] = transport
        self._breakers[provider.name] = CircuitBreaker(
            provider.name, self.breaker_policy, clock=self._clock
        )
        self.logger.info(
            "provider_registered",
            provider=provider.name,
            operations=sorted(provider.supported_operations),
            endpoint=provider.endpoint,
        )

    def providers(self) -> list[ToolProvider]:
        """Copies of all registered providers with their current health."""
        return [dataclasses.replace(provider) for provider in self._providers.values()]

    def get_provider(self, name: str) -> ToolProvider | None:
        provider = self._providers.get(name)
        return dataclasses.replace(provider) if provider else None

    def health(self, name: str) -> ProviderHealth:
        """
        Current health of a provider.

        Raises:
            KeyError: If the provider is not registered
        """
        breaker = self._breakers[name]
        self._sync_health(name)
        return breaker.state

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(
        self,
        provider: str,
        operation: str,
        parameters: dict[str, Any] | None = None,
        timeout: float | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """
        Invoke an operation on a provider.

        Args:
            provider: Registered provider name
            operation: Operation advertised by the provider
            parameters: Operation parameters
            timeout: Per-attempt timeout in seconds (defaults to client timeout)
            cancel_token: Aborts the in-flight attempt when cancelled
            idempotency_key: Forwarded to the provider for deduplication

        Returns:
            The provider's result value

        Raises:
            ToolError: Timeout, Unreachable, Rejected or InvalidOperation
            InferenceError: RateLimited, Unavailable or InvalidResponse
        """
        target = self._providers.get(provider)
        if target is None:
            raise ToolError(
                ToolErrorKind.INVALID_OPERATION,
                f"Unknown provider '{provider}'",
                provider=provider,
                operation=operation,
            )
        if not target.supports(operation):
            raise ToolError(
                ToolErrorKind.INVALID_OPERATION,
                f"Provider '{provider}' does not support '{operation}'",
                provider=provider,
                operation=operation,
            )

        call = ToolCall(
            provider=provider,
            operation=operation,
            parameters=dict(parameters or {}),
            idempotency_key=idempotency_key,
        )
        attempt_timeout = timeout if timeout is not None else self.default_timeout
        log = self.logger.bind(provider=provider, operation=operation)
        breaker = self._breakers[provider]

        while True:
            call.attempt += 1

            if not breaker.allow_request():
                self._sync_health(provider)
                log.warning("tool_call_short_circuited", attempt=call.attempt)
                raise ToolError(
                    ToolErrorKind.UNREACHABLE,
                    f"Provider '{provider}' is unreachable (circuit open)",
                    provider=provider,
                    operation=operation,
                )

            try:
                result = await self._attempt(call, attempt_timeout, cancel_token)
            except OrchestrationError as error:
                if not is_transient(error) or call.attempt >= self.retry_policy.max_attempts:
                    log.error(
                        "tool_call_failed",
                        attempts=call.attempt,
                        kind=error.kind.value,
                        error=error.message[:200],
                    )
                    raise

                delay = self.retry_policy.backoff(call.attempt, self._rng)
                log.warning(
                    "tool_call_retry",
                    attempt=call.attempt,
                    kind=error.kind.value,
                    backoff_seconds=round(delay, 3),
                )
                await self._backoff(delay, cancel_token, call)
                continue

            if call.attempt > 1:
                log.info("tool_call_recovered", attempts=call.attempt)
            return result

    async def infer(
        self,
        prompt: str,
        context: dict[str, Any],
        timeout: float | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, Any]:
        """
        Run an inference request through the registered inference provider.

        Raises:
            InferenceError: If the model fails or returns a non-object result
            ToolError: If the inference provider is missing or unreachable
        """
        result = await self.invoke(
            INFERENCE_PROVIDER,
            INFER_OPERATION,
            {"prompt": prompt, "context": context},
            timeout,
            cancel_token=cancel_token,
        )
        if not isinstance(result, dict):
            raise InferenceError(
                InferenceErrorKind.INVALID_RESPONSE,
                f"Expected an object from inference, got {type(result).__name__}",
            )
        return result

    async def probe(self, provider: str) -> bool:
        """
        Probe a provider's liveness, bypassing the open circuit.

        A successful probe returns the provider to healthy.
        """
        if provider not in self._providers:
            raise ToolError(
                ToolErrorKind.INVALID_OPERATION,
                f"Unknown provider '{provider}'",
                provider=provider,
            )

        breaker = self._breakers[provider]
        try:
            alive = bool(
                await asyncio.wait_for(self._transports[provider].ping(), self.default_timeout)
            )
        except (TimeoutError, ConnectionError) as exc:
            self.logger.warning("provider_probe_error", provider=provider, error=str(exc))
            alive = False

        if alive:
            breaker.record_success()
        else:
            breaker.record_failure()
        self._sync_health(provider)
        self.logger.info("provider_probed", provider=provider, alive=alive)
        return alive

    async def close(self) -> None:
        """Close every registered transport."""
        for name, transport in self._transports.items():
            await transport.close()
            self.logger.debug("transport_closed", provider=name)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _attempt(
        self,
        call: ToolCall,
        timeout: float,
        cancel_token: CancellationToken | None,
    ) -> Any:
        breaker = self._breakers[call.provider]
        transport = self._transports[call.provider]
        call.deadline = self._clock() + timeout

        try:
            reply = await self._send(transport, call, timeout, cancel_token)
        except ToolError:
            # Cancellation says nothing about the provider.
            breaker.release_probe()
            raise
        except TimeoutError:
            breaker.record_failure()
            self._sync_health(call.provider)
            raise ToolError(
                ToolErrorKind.TIMEOUT,
                f"No reply within {timeout}s",
                provider=call.provider,
                operation=call.operation,
            ) from None
        except ConnectionError as exc:
            breaker.record_failure()
            self._sync_health(call.provider)
            raise ToolError(
                ToolErrorKind.UNREACHABLE,
                str(exc) or "Connection failed",
                provider=call.provider,
                operation=call.operation,
            ) from exc
        except BaseException:
            breaker.release_probe()
            raise

        if not isinstance(reply, dict) or reply.get("status") not in ("ok", "error"):
            breaker.record_success()
            self._sync_health(call.provider)
            raise ToolError(
                ToolErrorKind.REJECTED,
                "Malformed provider reply",
                provider=call.provider,
                operation=call.operation,
            )

        if reply["status"] == "ok":
            breaker.record_success()
            self._sync_health(call.provider)
            return reply.get("result")

        error = error_from_wire(
            reply.get("kind"),
            str(reply.get("message", "")),
            provider=call.provider,
            operation=call.operation,
        )
        # Any reply proves the provider is alive; only availability failures count.
        if is_transient(error):
            breaker.record_failure()
        else:
            breaker.record_success()
        self._sync_health(call.provider)
        raise error

    async def _send(
        self,
        transport: ProviderTransportProtocol,
        call: ToolCall,
        timeout: float,
        cancel_token: CancellationToken | None,
    ) -> Any:
        if cancel_token is not None and cancel_token.cancelled:
            raise self._cancelled_error(call, cancel_token)

        send = asyncio.wait_for(
            transport.send(call.operation, call.parameters, call.idempotency_key),
            timeout,
        )
        if cancel_token is None:
            return await send

        request = asyncio.ensure_future(send)
        waiter = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {request, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not request.done():
                request.cancel()

        if request in done:
            return request.result()

        await asyncio.gather(request, return_exceptions=True)
        raise self._cancelled_error(call, cancel_token)

    async def _backoff(
        self,
        delay: float,
        cancel_token: CancellationToken | None,
        call: ToolCall,
    ) -> None:
        if cancel_token is None:
            if delay > 0:
                await asyncio.sleep(delay)
            return

        if cancel_token.cancelled:
            raise self._cancelled_error(call, cancel_token)
        try:
            await asyncio.wait_for(cancel_token.wait(), timeout=delay)
        except TimeoutError:
            return
        raise self._cancelled_error(call, cancel_token)

    def _cancelled_error(self, call: ToolCall, cancel_token: CancellationToken) -> ToolError:
        return ToolError(
            ToolErrorKind.TIMEOUT,
            f"Call aborted: {cancel_token.reason or 'cancelled'}",
            provider=call.provider,
            operation=call.operation,
            cancelled=True,
        )

    def _sync_health(self, name: str) -> None:
        self._providers[name].health = self._breakers[name].state

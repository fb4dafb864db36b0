"""
Provider Health Tracking

Per-provider circuit breaker driving the ToolProvider health state:

    healthy --(N consecutive availability failures)--> degraded
    degraded --(grace period without a success)--> unreachable
    unreachable --(one successful probe)--> healthy

While unreachable, calls are short-circuited without any I/O. Once
`probe_interval_seconds` have passed since the provider became unreachable,
one call is let through as a probe (half-open); its outcome decides whether
the provider recovers or stays unreachable.
"""

import time
from dataclasses import dataclass
from typing import Callable

import structlog

from weaver.core.domain.models import ProviderHealth

logger = structlog.get_logger()


@dataclass
class CircuitBreakerPolicy:
    """Circuit breaker configuration."""

    failure_threshold: int = 5
    grace_period_seconds: float = 30.0
    probe_interval_seconds: float = 60.0


class CircuitBreaker:
    """Tracks consecutive availability failures of one provider."""

    def __init__(
        self,
        provider: str,
        policy: CircuitBreakerPolicy,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.policy = policy
        self._clock = clock
        self.state = ProviderHealth.HEALTHY
        self.consecutive_failures = 0
        self._degraded_at: float | None = None
        self._unreachable_at: float | None = None
        self._probe_in_flight = False
        self.logger = logger.bind(component="circuit_breaker", provider=provider)

    def allow_request(self) -> bool:
        """
        Decide whether a call may reach the provider.

        Returns False when the circuit is open; the caller must fail the call
        with Unreachable without attempting I/O.
        """
        self._expire_grace_period()

        if self.state is not ProviderHealth.UNREACHABLE:
            return True

        if self._probe_in_flight:
            return False

        elapsed = self._clock() - (self._unreachable_at or 0.0)
        if elapsed >= self.policy.probe_interval_seconds:
            self._probe_in_flight = True
            self.logger.info("circuit_half_open_probe", elapsed_seconds=round(elapsed, 3))
            return True
        return False

    def record_success(self) -> None:
        self._probe_in_flight = False
        self.consecutive_failures = 0
        self._degraded_at = None
        self._unreachable_at = None
        self._set_state(ProviderHealth.HEALTHY)

    def record_failure(self) -> None:
        self.consecutive_failures += 1

        if self.state is ProviderHealth.UNREACHABLE:
            # Failed probe: restart the probe interval.
            self._probe_in_flight = False
            self._unreachable_at = self._clock()
            return

        if (
            self.state is ProviderHealth.HEALTHY
            and self.consecutive_failures >= self.policy.failure_threshold
        ):
            self._degraded_at = self._clock()
            self._set_state(ProviderHealth.DEGRADED)

        self._expire_grace_period()

    def release_probe(self) -> None:
        """Give the probe slot back when a probe call ended without an outcome."""
        self._probe_in_flight = False

    def _expire_grace_period(self) -> None:
        if self.state is not ProviderHealth.DEGRADED or self._degraded_at is None:
            return
        if self._clock() - self._degraded_at >= self.policy.grace_period_seconds:
            self._unreachable_at = self._clock()
            self._set_state(ProviderHealth.UNREACHABLE)

    def _set_state(self, state: ProviderHealth) -> None:
        if state is self.state:
            return
        previous = self.state
        self.state = state
        self.logger.warning(
            "provider_health_changed",
            previous=previous.value,
            current=state.value,
            consecutive_failures=self.consecutive_failures,
        )

"""Resilience registry — the process-wide breakers, limiters and retry policies.

One circuit breaker and one rate limiter exist per external dependency
("search_api", "sec_edgar", ...), shared by every item in flight. Rather
than module-level globals looked up by name from arbitrary call sites, the
registry is an explicit object: constructed once at startup, usually with
``ResilienceRegistry.from_settings()``, and handed to the StepExecutor.

Example::

    registry = ResilienceRegistry.from_settings(get_settings())
    executor = StepExecutor(checkpoints, registry)

    registry.breaker("search_api").get_time_until_close()
    await registry.rate_limiter("sec_edgar").acquire()
"""

from __future__ import annotations

import threading
from typing import Any

from batchspine.core.logging import get_logger
from batchspine.core.settings import BatchSettings

from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from .rate_limit import RateLimiter, create_rate_limiter
from .retry import BATCH_RETRY_POLICIES, DEFAULT_POLICY, RetryPolicy, policy_from_config

logger = get_logger(__name__)


class ResilienceRegistry:
    """Breakers, limiters and retry policies keyed by dependency name."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry | None = None,
        default_policy: RetryPolicy = DEFAULT_POLICY,
    ):
        self.breakers = breakers or CircuitBreakerRegistry()
        self._limiters: dict[str, RateLimiter] = {}
        self._policies: dict[str, RetryPolicy] = dict(BATCH_RETRY_POLICIES)
        self._default_policy = default_policy
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: BatchSettings) -> ResilienceRegistry:
        """Build every configured breaker, limiter and policy once."""
        registry = cls()
        for name, config in settings.circuit_breakers.items():
            registry.register_breaker(
                CircuitBreaker(
                    name=name,
                    failure_threshold=config.failure_threshold,
                    success_threshold=config.success_threshold,
                    recovery_timeout=config.recovery_timeout,
                )
            )
        for name, config in settings.rate_limiters.items():
            registry.register_rate_limiter(name, create_rate_limiter(name, config))
        for name, config in settings.retry_policies.items():
            registry.register_retry_policy(name, policy_from_config(config))
        if "default" in settings.retry_policies:
            registry._default_policy = registry._policies["default"]

        logger.debug(
            "registry.built",
            breakers=registry.breakers.list_all(),
            limiters=sorted(registry._limiters),
            policies=sorted(registry._policies),
        )
        return registry

    # ── Registration ─────────────────────────────────────────────────

    def register_breaker(self, breaker: CircuitBreaker) -> CircuitBreaker:
        return self.breakers.register(breaker)

    def register_rate_limiter(self, name: str, limiter: RateLimiter) -> RateLimiter:
        with self._lock:
            self._limiters[name] = limiter
            return limiter

    def register_retry_policy(self, name: str, policy: RetryPolicy) -> RetryPolicy:
        with self._lock:
            self._policies[name] = policy
            return policy

    # ── Lookup ───────────────────────────────────────────────────────

    def breaker(self, name: str | None) -> CircuitBreaker | None:
        if name is None:
            return None
        return self.breakers.get(name)

    def rate_limiter(self, name: str | None) -> RateLimiter | None:
        if name is None:
            return None
        with self._lock:
            return self._limiters.get(name)

    def retry_policy(self, name: str | None) -> RetryPolicy:
        """Named policy, falling back to the default for unknown names."""
        if name is None:
            return self._default_policy
        with self._lock:
            return self._policies.get(name, self._default_policy)

    @property
    def default_policy(self) -> RetryPolicy:
        return self._default_policy

    # ── Health ───────────────────────────────────────────────────────

    def get_health(self) -> dict[str, Any]:
        """Breaker states and limiter stats for health reporting."""
        with self._lock:
            limiters = {name: lim.get_stats().to_dict() for name, lim in self._limiters.items()}
        breakers = self.breakers.get_all_status()
        return {
            "healthy": all(b["state"] != "open" for b in breakers.values()),
            "circuit_breakers": breakers,
            "rate_limiters": limiters,
        }

    def reset(self) -> None:
        """Close every breaker and refill every limiter."""
        self.breakers.reset_all()
        with self._lock:
            for limiter in self._limiters.values():
                limiter.reset()

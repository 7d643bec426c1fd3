"""Circuit breaker pattern for fault tolerance.

Prevents a failing external dependency (a search provider, an LLM gateway)
from dragging every in-flight item down with it. One breaker guards one
dependency for the lifetime of the process, independent of any single item.

States:
    CLOSED: Normal operation, calls pass through, consecutive failures counted
    OPEN: Failing fast, calls rejected with CircuitOpenError until the
        recovery timeout elapses
    HALF_OPEN: Exactly one probe call is admitted at a time; success closes
        the breaker, failure reopens it with a fresh timer

Example:
    >>> from batchspine.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker(name="search_api", failure_threshold=3, recovery_timeout=30.0)
    >>> result = await breaker.execute(search, query="acme corp")
"""

from __future__ import annotations

import inspect
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from batchspine.core.errors import CircuitOpenError
from batchspine.core.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Rejecting requests
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "rejected_requests": self.rejected_requests,
            "state_changes": self.state_changes,
            "failure_rate": self.failure_rate,
        }


@dataclass
class CircuitBreaker:
    """Circuit breaker for one protected dependency.

    Attributes:
        name: Dependency name, used in errors and logs
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to stay OPEN before admitting a probe
        success_threshold: Probe successes needed in HALF_OPEN to close
        clock: Monotonic time source in seconds
    """

    name: str = "default"
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 1
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    # Internal state
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _opened_at: float | None = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            self._check_state_transition()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    def _check_state_transition(self) -> None:
        """Move OPEN to HALF_OPEN once the recovery timeout has elapsed."""
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.recovery_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state."""
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = utcnow()

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
        elif new_state == CircuitState.OPEN:
            self._opened_at = self.clock()
            self._success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
        self._probe_in_flight = False

        logger.info(
            "circuit_breaker.transition",
            breaker=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def is_open(self) -> bool:
        """True while OPEN with cooldown remaining."""
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """Check if a call may proceed, reserving the probe slot in HALF_OPEN."""
        with self._lock:
            self._check_state_transition()
            self._stats.total_requests += 1

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return True

            self._stats.rejected_requests += 1
            return False

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = utcnow()

            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call.

        Rejections by this or any other breaker are never counted.
        """
        if isinstance(error, CircuitOpenError):
            return

        with self._lock:
            self._check_state_transition()
            self._failure_count += 1
            self._stats.failed_requests += 1
            self._stats.last_failure_time = utcnow()

            if self._state == CircuitState.CLOSED:
                if self._failure_count >= self.failure_threshold:
                    logger.warning(
                        "circuit_breaker.opened",
                        breaker=self.name,
                        failures=self._failure_count,
                        error=str(error) if error else None,
                    )
                    self._transition_to(CircuitState.OPEN)

            elif self._state == CircuitState.HALF_OPEN:
                # Any failure in half-open reopens the circuit
                self._transition_to(CircuitState.OPEN)

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    def get_time_until_close(self) -> float:
        """Seconds of cooldown left before a probe is admitted (0 if not OPEN)."""
        with self._lock:
            self._check_state_transition()
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0.0
            return max(0.0, self.recovery_timeout - (self.clock() - self._opened_at))

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)

    def force_open(self) -> None:
        """Force circuit to open state (maintenance, tests)."""
        with self._lock:
            self._transition_to(CircuitState.OPEN)

    async def execute(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute a call through the circuit breaker.

        Raises:
            CircuitOpenError: If the call was rejected; ``func`` is not invoked
        """
        if not self.allow_request():
            raise CircuitOpenError(self.name, retry_after=self.get_time_until_close())

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self.record_failure(e)
            raise
        except BaseException:
            # Cancelled probes must not hold the half-open slot forever
            self._release_probe()
            raise

        self.record_success()
        return result

    def get_status(self) -> dict[str, Any]:
        """Snapshot for health endpoints and logs."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "time_until_close": self.get_time_until_close(),
            "stats": self._stats.to_dict(),
        }


class CircuitBreakerRegistry:
    """Named circuit breakers, one per protected dependency."""

    def __init__(self):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> CircuitBreaker | None:
        """Get a circuit breaker by name, returns None if not found."""
        with self._lock:
            return self._breakers.get(name)

    def get_or_create(self, name: str, **kwargs: Any) -> CircuitBreaker:
        """Get or create a circuit breaker by name."""
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name=name, **kwargs)
            return self._breakers[name]

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        """Add (or replace) a breaker under its own name."""
        with self._lock:
            self._breakers[breaker.name] = breaker
            return breaker

    def list_all(self) -> list[str]:
        """List all registered circuit breaker names."""
        with self._lock:
            return list(self._breakers.keys())

    def remove(self, name: str) -> None:
        """Remove a circuit breaker by name."""
        with self._lock:
            self._breakers.pop(name, None)

    def clear(self) -> None:
        """Remove all circuit breakers."""
        with self._lock:
            self._breakers.clear()

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {name: b.get_status() for name, b in self._breakers.items()}

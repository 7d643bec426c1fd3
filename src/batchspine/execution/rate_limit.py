"""Rate Limiting — token-bucket and sliding-window admission control.

Manifesto:
External APIs (SEC EDGAR, FEC, search providers, LLM gateways) enforce
rate limits.  Exceeding them gets 429s or bans.  A limiter shared by every
in-flight item throttles outgoing calls *before* the upstream does.

ARCHITECTURE
────────────
::

    RateLimiter (ABC)
      ├── TokenBucketLimiter     ─ burst capacity, refill N tokens per interval
      └── SlidingWindowLimiter   ─ exact count in a trailing window

    try_acquire(n)  → bool      non-blocking
    acquire(n)      → seconds   suspends until admitted
    execute(fn, n)              acquire then call
    get_stats()                 RateLimiterStats

    Refill/debit (and cleanup/append) run under one Lock with no await
    inside, so concurrent tasks never double-spend a token.

BEST PRACTICES
──────────────
- Use ``TokenBucketLimiter`` when the upstream publishes "N per interval"
  with burst allowance.
- Use ``SlidingWindowLimiter`` for strict per-window caps.
- Pair with ``CircuitBreaker`` for full resilience.

Related modules:
    circuit_breaker.py — fail-fast on sustained failures
    retry.py           — backoff on transient failures
    registry.py        — one limiter per dependency name

Example::

    limiter = TokenBucketLimiter(max_tokens=10, refill_rate=2, refill_interval=12.0)
    waited = await limiter.acquire()
    result = await limiter.execute(lambda: client.search(query))

Tags:
    batchspine, execution, rate-limit, throttle, token-bucket
"""

from __future__ import annotations

import asyncio
import inspect
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from batchspine.core.errors import RateLimitError
from batchspine.core.logging import get_logger
from batchspine.core.settings import RateLimiterConfig

logger = get_logger(__name__)


class RateLimitExceeded(RateLimitError):
    """Raised when admission would take longer than the caller is willing to wait."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: float | None = None,
    ):
        super().__init__(message, retry_after=retry_after)


@dataclass
class RateLimiterStats:
    """Point-in-time view of a limiter."""

    name: str
    strategy: str
    available: float
    capacity: int
    total_acquired: int = 0
    total_waited: float = 0.0
    wait_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "strategy": self.strategy,
            "available": self.available,
            "capacity": self.capacity,
            "total_acquired": self.total_acquired,
            "total_waited": round(self.total_waited, 3),
            "wait_count": self.wait_count,
        }


class RateLimiter(ABC):
    """Abstract base for rate limiters.

    Subclasses implement the two lock-held primitives ``_try_take`` and
    ``_wait_time``; the suspending ``acquire`` loop is shared.
    """

    name: str
    _lock: threading.Lock
    _total_acquired: int
    _total_waited: float
    _wait_count: int

    @property
    @abstractmethod
    def capacity(self) -> int:
        """Largest request that can ever be admitted."""
        ...

    @abstractmethod
    def _try_take(self, tokens: int, now: float) -> bool:
        """Admit and debit if possible. Caller holds the lock."""
        ...

    @abstractmethod
    def _wait_time(self, tokens: int, now: float) -> float:
        """Seconds until ``tokens`` could be admitted. Caller holds the lock."""
        ...

    @abstractmethod
    def reset(self) -> None:
        """Restore the initial (fully available) state."""
        ...

    @abstractmethod
    def get_stats(self) -> RateLimiterStats:
        ...

    def _now(self) -> float:
        return self.clock()  # type: ignore[attr-defined]

    def try_acquire(self, tokens: int = 1) -> bool:
        """Attempt to acquire tokens without waiting."""
        if tokens > self.capacity:
            return False
        with self._lock:
            if self._try_take(tokens, self._now()):
                self._total_acquired += tokens
                return True
            return False

    def get_wait_time(self, tokens: int = 1) -> float:
        """Seconds to wait before ``tokens`` are available (0 if available now)."""
        if tokens > self.capacity:
            return math.inf
        with self._lock:
            return self._wait_time(tokens, self._now())

    async def acquire(self, tokens: int = 1, max_wait: float | None = None) -> float:
        """Suspend until ``tokens`` are admitted.

        Args:
            tokens: Number of tokens (requests) to acquire
            max_wait: Give up with RateLimitExceeded instead of waiting longer

        Returns:
            Seconds spent waiting

        Raises:
            ValueError: ``tokens`` exceeds capacity and could never be admitted
            RateLimitExceeded: Admission would exceed ``max_wait``
        """
        if tokens > self.capacity:
            raise ValueError(
                f"Cannot acquire {tokens} tokens from '{self.name}' with capacity {self.capacity}"
            )

        waited = 0.0
        while True:
            with self._lock:
                now = self._now()
                if self._try_take(tokens, now):
                    self._total_acquired += tokens
                    if waited > 0:
                        self._wait_count += 1
                        self._total_waited += waited
                    return waited
                wait = self._wait_time(tokens, now)

            if max_wait is not None and waited + wait > max_wait:
                raise RateLimitExceeded(
                    f"Rate limit '{self.name}' needs {wait:.2f}s more",
                    retry_after=wait,
                )

            logger.debug("rate_limit.waiting", limiter=self.name, tokens=tokens, wait=round(wait, 3))
            await asyncio.sleep(wait)
            waited += wait

    async def execute(self, func: Callable[[], Any], tokens: int = 1) -> Any:
        """Acquire ``tokens`` then call ``func`` (awaiting its result if needed)."""
        await self.acquire(tokens)
        result = func()
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass
class TokenBucketLimiter(RateLimiter):
    """Token bucket rate limiter with interval-discrete refill.

    The bucket starts full. Every ``refill_interval`` seconds that have
    elapsed since the last refill adds ``refill_rate`` tokens, up to
    ``max_tokens``. Refill is computed lazily on each access; a partial
    interval carries over to the next access.

    Attributes:
        max_tokens: Maximum tokens (burst size)
        refill_rate: Tokens added per interval
        refill_interval: Interval length in seconds
    """

    max_tokens: int
    refill_rate: int = 1
    refill_interval: float = 1.0
    name: str = "token_bucket"
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _tokens: float = field(default=0.0, init=False)
    _last_refill: float = field(default=0.0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _total_acquired: int = field(default=0, init=False)
    _total_waited: float = field(default=0.0, init=False)
    _wait_count: int = field(default=0, init=False)

    def __post_init__(self):
        if self.max_tokens <= 0 or self.refill_rate <= 0 or self.refill_interval <= 0:
            raise ValueError("max_tokens, refill_rate and refill_interval must be positive")
        self._tokens = float(self.max_tokens)
        self._last_refill = self.clock()

    @property
    def capacity(self) -> int:
        return self.max_tokens

    def _refill(self, now: float) -> None:
        """Add tokens for every whole interval elapsed."""
        intervals = math.floor((now - self._last_refill) / self.refill_interval)
        if intervals > 0:
            self._tokens = min(
                float(self.max_tokens),
                self._tokens + intervals * self.refill_rate,
            )
            self._last_refill += intervals * self.refill_interval

    def _try_take(self, tokens: int, now: float) -> bool:
        self._refill(now)
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def _wait_time(self, tokens: int, now: float) -> float:
        self._refill(now)
        if self._tokens >= tokens:
            return 0.0
        intervals_needed = math.ceil((tokens - self._tokens) / self.refill_rate)
        until_next = self._last_refill + self.refill_interval - now
        return max(0.0, until_next + (intervals_needed - 1) * self.refill_interval)

    @property
    def available_tokens(self) -> float:
        """Get current available tokens."""
        with self._lock:
            self._refill(self.clock())
            return self._tokens

    def reset(self) -> None:
        with self._lock:
            self._tokens = float(self.max_tokens)
            self._last_refill = self.clock()

    def get_stats(self) -> RateLimiterStats:
        return RateLimiterStats(
            name=self.name,
            strategy="token_bucket",
            available=self.available_tokens,
            capacity=self.max_tokens,
            total_acquired=self._total_acquired,
            total_waited=self._total_waited,
            wait_count=self._wait_count,
        )


@dataclass
class SlidingWindowLimiter(RateLimiter):
    """Sliding window rate limiter.

    Counts admitted requests in a trailing window. More accurate than fixed
    windows, prevents boundary bursts.

    Attributes:
        max_requests: Maximum requests per window
        window_seconds: Window size in seconds
    """

    max_requests: int
    window_seconds: float
    name: str = "sliding_window"
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _timestamps: deque[float] = field(default_factory=deque, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _total_acquired: int = field(default=0, init=False)
    _total_waited: float = field(default=0.0, init=False)
    _wait_count: int = field(default=0, init=False)

    def __post_init__(self):
        if self.max_requests <= 0 or self.window_seconds <= 0:
            raise ValueError("max_requests and window_seconds must be positive")

    @property
    def capacity(self) -> int:
        return self.max_requests

    def _cleanup(self, now: float) -> None:
        """Remove timestamps outside the window."""
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _try_take(self, tokens: int, now: float) -> bool:
        self._cleanup(now)
        if len(self._timestamps) + tokens <= self.max_requests:
            self._timestamps.extend([now] * tokens)
            return True
        return False

    def _wait_time(self, tokens: int, now: float) -> float:
        self._cleanup(now)
        overflow = len(self._timestamps) + tokens - self.max_requests
        if overflow <= 0:
            return 0.0
        # The overflow-th oldest entry has to leave the window
        return max(0.0, self._timestamps[overflow - 1] + self.window_seconds - now)

    @property
    def current_count(self) -> int:
        """Requests admitted within the current window."""
        with self._lock:
            self._cleanup(self.clock())
            return len(self._timestamps)

    def reset(self) -> None:
        with self._lock:
            self._timestamps.clear()

    def get_stats(self) -> RateLimiterStats:
        return RateLimiterStats(
            name=self.name,
            strategy="sliding_window",
            available=float(self.max_requests - self.current_count),
            capacity=self.max_requests,
            total_acquired=self._total_acquired,
            total_waited=self._total_waited,
            wait_count=self._wait_count,
        )


def create_rate_limiter(name: str, config: RateLimiterConfig) -> RateLimiter:
    """Build the limiter described by a settings preset."""
    if config.strategy == "sliding_window":
        return SlidingWindowLimiter(
            max_requests=config.max_requests,
            window_seconds=config.window_seconds,
            name=name,
        )
    return TokenBucketLimiter(
        max_tokens=config.max_tokens,
        refill_rate=config.refill_rate,
        refill_interval=config.refill_interval,
        name=name,
    )

"""Retry policies with exponential backoff, jitter and error classification.

A retry policy is pure configuration; ``execute_with_retry`` is the only
thing that sleeps. Each attempt's error is classified before deciding to
try again: rate limits, timeouts, connection drops and 5xx/gateway errors
are transient, everything else fails fast.

Circuit breaker rejections are never retried by any policy. Retrying a
``CircuitOpenError`` would just spin against a breaker that is protecting
the dependency on purpose.

Example:
    >>> from batchspine.execution.retry import RetryPolicy, execute_with_retry
    >>>
    >>> policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0)
    >>> for attempt in range(3):
    ...     print(f"Attempt {attempt}: wait ~{policy.next_delay(attempt):.2f}s")
    >>>
    >>> result = await execute_with_retry(lambda: fetch_profile(item), policy)
    >>> result.success, result.attempts
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from batchspine.core.errors import (
    BatchSpineError,
    CircuitOpenError,
    NetworkError,
    RateLimitError,
    RetryAbortedError,
)
from batchspine.core.logging import get_logger
from batchspine.core.settings import RetryPolicyConfig

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

RATE_LIMIT_PATTERNS = ("429", "rate limit", "too many requests")
TIMEOUT_PATTERNS = ("timeout", "timed out", "etimedout")
CONNECTION_PATTERNS = ("econnreset", "econnrefused", "enotfound", "network", "socket hang up")
SERVER_ERROR_PATTERNS = (
    "500",
    "internal server error",
    "502",
    "503",
    "504",
    "bad gateway",
    "service unavailable",
)
TEMPORARY_PATTERNS = ("temporarily", "try again")

DEFAULT_RETRYABLE_PATTERNS = (
    RATE_LIMIT_PATTERNS
    + TIMEOUT_PATTERNS
    + CONNECTION_PATTERNS
    + SERVER_ERROR_PATTERNS
    + TEMPORARY_PATTERNS
)

_RETRY_AFTER_RE = re.compile(r"retry[-_ ]after[:=\s]*(\d+(?:\.\d+)?)", re.IGNORECASE)


def _message(error: BaseException) -> str:
    return str(error).lower()


def _never_retry(error: BaseException) -> bool:
    return isinstance(error, (CircuitOpenError, RetryAbortedError))


def is_rate_limit_error(error: BaseException) -> bool:
    """429 / rate limit errors."""
    if isinstance(error, RateLimitError):
        return True
    message = _message(error)
    return any(p in message for p in RATE_LIMIT_PATTERNS)


def is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, TimeoutError):
        return True
    message = _message(error)
    return any(p in message for p in TIMEOUT_PATTERNS)


def is_connection_error(error: BaseException) -> bool:
    if isinstance(error, (ConnectionError, NetworkError)):
        return True
    message = _message(error)
    return any(p in message for p in CONNECTION_PATTERNS)


def extract_retry_after(error: BaseException) -> float | None:
    """Seconds the upstream asked us to wait, if the error says so."""
    value = getattr(error, "retry_after", None)
    if isinstance(value, int | float) and value > 0:
        return float(value)
    match = _RETRY_AFTER_RE.search(str(error))
    if match:
        return float(match.group(1))
    return None


def default_is_retryable(error: BaseException, attempt: int = 0) -> bool:
    """Classify an error as transient.

    Typed errors answer for themselves; anything else is classified by
    message content.
    """
    if _never_retry(error):
        return False
    if isinstance(error, BatchSpineError) and error.retryable is not None:
        return bool(error.retryable)
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    message = _message(error)
    return any(p in message for p in DEFAULT_RETRYABLE_PATTERNS)


def selective_retry(
    patterns: tuple[str, ...] | list[str],
    exclude: tuple[str, ...] | list[str] = (),
) -> Callable[[BaseException, int], bool]:
    """Build an ``is_retryable`` that only retries on the given message substrings.

    Example:
        >>> only_429 = selective_retry(["429", "rate limit"])
        >>> policy = RetryPolicy(is_retryable=only_429)
    """
    lowered = tuple(p.lower() for p in patterns)
    excluded = tuple(p.lower() for p in exclude)

    def _is_retryable(error: BaseException, attempt: int = 0) -> bool:
        if _never_retry(error):
            return False
        message = _message(error)
        if any(p in message for p in excluded):
            return False
        return any(p in message for p in lowered)

    return _is_retryable


# =============================================================================
# POLICY
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with optional jitter.

    Delay = min(max_delay, base_delay * multiplier ** attempt), perturbed by
    +/- jitter_range when jitter is on, floored at 0 and never above max_delay.

    Attributes:
        max_retries: Retries after the first attempt (total calls <= max_retries + 1)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to prevent thundering herd
        jitter_range: Fraction of the delay used for jitter
        is_retryable: ``(error, attempt) -> bool`` classification
        respect_retry_after: Wait at least the upstream's retry-after hint
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    is_retryable: Callable[[BaseException, int], bool] = field(
        default=default_is_retryable, compare=False, repr=False
    )
    respect_retry_after: bool = False

    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retrying after zero-based ``attempt`` failed."""
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** attempt))

        if self.jitter:
            delay *= random.uniform(1 - self.jitter_range, 1 + self.jitter_range)

        return min(self.max_delay, max(0.0, delay))

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Check if another attempt is allowed after ``attempt`` failed."""
        if attempt >= self.max_retries:
            return False
        if _never_retry(error):
            return False
        return self.is_retryable(error, attempt)

    def with_overrides(self, **changes: Any) -> RetryPolicy:
        """Copy of this policy with some fields replaced."""
        return replace(self, **changes)


def policy_from_config(config: RetryPolicyConfig) -> RetryPolicy:
    return RetryPolicy(
        max_retries=config.max_retries,
        base_delay=config.base_delay,
        max_delay=config.max_delay,
        multiplier=config.multiplier,
        jitter=config.jitter,
    )


DEFAULT_POLICY = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0)
AGGRESSIVE_POLICY = RetryPolicy(max_retries=5, base_delay=0.5, max_delay=60.0)
QUICK_POLICY = RetryPolicy(max_retries=2, base_delay=0.2, max_delay=2.0)
NO_RETRY = RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0, jitter=False)

# Per dependency class: slow/patient for LLM gateways, quick for search
BATCH_RETRY_POLICIES: Mapping[str, RetryPolicy] = {
    "primary_llm": DEFAULT_POLICY.with_overrides(base_delay=2.0),
    "secondary_llm": DEFAULT_POLICY.with_overrides(max_retries=2, base_delay=1.0),
    "search_api": QUICK_POLICY,
    "verification_api": RetryPolicy(max_retries=3, base_delay=3.0, max_delay=15.0),
    "database": QUICK_POLICY.with_overrides(max_retries=3, base_delay=0.1),
}


# =============================================================================
# EXECUTION
# =============================================================================


@dataclass
class RetryResult:
    """Outcome of ``execute_with_retry``.

    Attributes:
        success: Whether any attempt succeeded
        data: Return value of the successful attempt
        error: Final error when ``success`` is False
        attempts: Number of times the function was invoked
        total_time: Seconds from first attempt to outcome, sleeps included
        retry_errors: Every error raised along the way, in order
    """

    success: bool
    data: Any = None
    error: BaseException | None = None
    attempts: int = 0
    total_time: float = 0.0
    retry_errors: list[BaseException] = field(default_factory=list)


async def _sleep(delay: float, abort: asyncio.Event | None) -> bool:
    """Sleep for ``delay`` seconds; False if ``abort`` fired first."""
    if abort is None:
        await asyncio.sleep(delay)
        return True
    try:
        await asyncio.wait_for(abort.wait(), timeout=delay)
    except TimeoutError:
        return True
    return False


async def execute_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    name: str | None = None,
    abort: asyncio.Event | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> RetryResult:
    """Call ``fn`` until it succeeds, the policy gives up, or ``abort`` fires.

    Args:
        fn: Zero-argument callable returning a value or an awaitable
        policy: Backoff and classification settings
        name: Operation name for logs
        abort: Event that cancels pending backoff sleeps
        on_retry: Called with (next_attempt_number, error, delay) before sleeping

    Returns:
        RetryResult; this function does not raise for failures of ``fn``
    """
    started = time.monotonic()
    errors: list[BaseException] = []
    attempt = 0
    operation = name or getattr(fn, "__name__", "operation")

    while True:
        if abort is not None and abort.is_set():
            return RetryResult(
                success=False,
                error=RetryAbortedError(f"'{operation}' aborted before attempt {attempt + 1}"),
                attempts=attempt,
                total_time=time.monotonic() - started,
                retry_errors=errors,
            )

        try:
            data = fn()
            if inspect.isawaitable(data):
                data = await data
        except Exception as e:
            errors.append(e)

            if not policy.should_retry(attempt, e):
                if attempt > 0:
                    logger.warning(
                        "retry.exhausted",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                return RetryResult(
                    success=False,
                    error=e,
                    attempts=attempt + 1,
                    total_time=time.monotonic() - started,
                    retry_errors=errors,
                )

            delay = policy.next_delay(attempt)
            if policy.respect_retry_after:
                hint = extract_retry_after(e)
                if hint is not None:
                    delay = min(policy.max_delay, max(delay, hint))

            logger.warning(
                "retry.scheduled",
                operation=operation,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay=round(delay, 3),
                error=str(e),
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)

            if not await _sleep(delay, abort):
                return RetryResult(
                    success=False,
                    error=RetryAbortedError(
                        f"'{operation}' aborted during backoff", cause=e
                    ),
                    attempts=attempt + 1,
                    total_time=time.monotonic() - started,
                    retry_errors=errors,
                )
            attempt += 1
            continue

        return RetryResult(
            success=True,
            data=data,
            attempts=attempt + 1,
            total_time=time.monotonic() - started,
            retry_errors=errors,
        )


async def execute_with_retry_or_raise(
    fn: Callable[[], Any],
    policy: RetryPolicy = DEFAULT_POLICY,
    **kwargs: Any,
) -> Any:
    """Like ``execute_with_retry`` but returns the data or raises the final error."""
    result = await execute_with_retry(fn, policy, **kwargs)
    if result.success:
        return result.data
    if result.error is None:
        raise BatchSpineError("Retry failed without an error")
    raise result.error


def with_retry(
    policy: RetryPolicy | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator factory adding retry logic to an async function.

    Example:
        >>> @with_retry(QUICK_POLICY)
        ... async def lookup(name):
        ...     return await search_client.get(name)
    """
    effective = policy or DEFAULT_POLICY

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await execute_with_retry_or_raise(
                lambda: func(*args, **kwargs),
                effective,
                name=func.__name__,
                on_retry=on_retry,
            )

        return wrapper

    return decorator

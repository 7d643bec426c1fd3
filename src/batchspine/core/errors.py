"""
Structured error types for batch execution.

Errors in a batch run must answer three questions for the layers above
them: should the retry loop try again, should the circuit breaker count it,
and should the item be routed to the dead letter queue. The hierarchy below
carries that information explicitly instead of leaving callers to guess from
exception messages.

Architecture:
    ::

        BatchSpineError (category, retryable, retry_after, cause)
          │
          ├── TransientError (retryable=True)
          │     ├── NetworkError
          │     ├── RateLimitError ── RateLimitExceeded (execution.rate_limit)
          │     └── StepTimeoutError (also builtin TimeoutError)
          │
          ├── CircuitOpenError      never retried, never counted
          ├── RetryAbortedError     abort signal fired during a retry loop
          ├── StepFailedError       step *returned* a failed StepResult
          ├── RequiredStepError     required step failed, item run aborted
          ├── RunAbortedError       abort signal fired between steps
          └── PipelineDefinitionError (also ValueError)

Examples:
    >>> err = RateLimitError("429 from search provider", retry_after=12)
    >>> err.retryable, err.retry_after
    (True, 12)
    >>> is_retryable(CircuitOpenError("search_api", retry_after=3.5))
    False

Tags:
    exception, error-hierarchy, retry-logic, batchspine
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing and retry heuristics."""

    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    DEPENDENCY = "DEPENDENCY"
    STEP = "STEP"
    PIPELINE = "PIPELINE"
    STORAGE = "STORAGE"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


class BatchSpineError(Exception):
    """
    Base class for all batchspine errors.

    Attributes:
        message: Human-readable message
        category: ErrorCategory for routing
        retryable: Whether the retry layer may try again
        retry_after: Suggested delay in seconds before retrying
        cause: Underlying exception, also chained via ``__cause__``
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (retryable)
# =============================================================================


class TransientError(BatchSpineError):
    """Temporary error that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Connection reset, refused, DNS failure."""

    pass


class RateLimitError(TransientError):
    """Upstream or local rate limit hit."""

    default_category = ErrorCategory.RATE_LIMIT


class StepTimeoutError(TransientError, TimeoutError):
    """A step did not finish within its timeout.

    Inherits from built-in TimeoutError so generic ``except TimeoutError``
    handlers still see it.
    """

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, timeout: float, step: str = "step", elapsed: float | None = None):
        self.timeout = timeout
        self.step = step
        self.elapsed = elapsed
        super().__init__(f"Step execution timed out after {timeout}s")


# =============================================================================
# DEPENDENCY / CONTROL-FLOW ERRORS (never retried)
# =============================================================================


class CircuitOpenError(BatchSpineError):
    """Circuit breaker rejected the call without invoking it.

    Never retryable and never counted as a new failure against the breaker.
    ``retry_after`` carries the remaining cooldown in seconds.
    """

    default_category = ErrorCategory.DEPENDENCY

    def __init__(self, breaker: str, retry_after: float | None = None):
        self.breaker = breaker
        message = f"Circuit breaker '{breaker}' is open"
        if retry_after:
            message += f", retry in {retry_after:.1f}s"
        super().__init__(message, retryable=False, retry_after=retry_after)


class RetryAbortedError(BatchSpineError):
    """An abort signal interrupted a retry loop."""

    default_category = ErrorCategory.PIPELINE


class StepFailedError(BatchSpineError):
    """A step function returned a failed StepResult instead of raising."""

    default_category = ErrorCategory.STEP
    # None lets the retry layer fall back to message classification
    default_retryable = None  # type: ignore[assignment]

    def __init__(self, step: str, error: str):
        self.step = step
        super().__init__(error or f"Step '{step}' failed")


class RequiredStepError(BatchSpineError):
    """A required step failed terminally; the item's run is aborted.

    Attributes:
        step: Name of the failed step
        results: Results recorded for this run up to (and including) the failure
    """

    default_category = ErrorCategory.PIPELINE

    def __init__(
        self,
        step: str,
        results: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        self.step = step
        self.results = results or {}
        reason = str(cause) if cause is not None else "unknown error"
        super().__init__(f"Required step '{step}' failed: {reason}", cause=cause)


class RunAbortedError(BatchSpineError):
    """The run's abort signal was set before the next step started."""

    default_category = ErrorCategory.PIPELINE


class PipelineDefinitionError(BatchSpineError, ValueError):
    """Invalid step graph: duplicate names, unknown dependencies or cycles."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable by type alone."""
    if isinstance(error, BatchSpineError):
        return bool(error.retryable)
    return isinstance(error, (ConnectionError, TimeoutError))


def get_retry_after(error: BaseException) -> float | None:
    """Get retry delay from error, if specified."""
    if isinstance(error, BatchSpineError):
        return error.retry_after
    return getattr(error, "retry_after", None)


__all__ = [
    "ErrorCategory",
    "BatchSpineError",
    "TransientError",
    "NetworkError",
    "RateLimitError",
    "StepTimeoutError",
    "CircuitOpenError",
    "RetryAbortedError",
    "StepFailedError",
    "RequiredStepError",
    "RunAbortedError",
    "PipelineDefinitionError",
    "is_retryable",
    "get_retry_after",
]

"""batchspine.execution -- resilience primitives and durable stores.

    circuit_breaker.py  per-dependency fail-fast gate
    retry.py            backoff policies and execute_with_retry
    rate_limit.py       token bucket and sliding window limiters
    timeout.py          race a step call against a timer
    registry.py         explicit registry of breakers, limiters, policies
    models.py           checkpoint and dead letter records
    checkpoints.py      per-(item, step) checkpoint store
    dlq.py              dead letter queue with resolution workflow
"""

from .checkpoints import (
    DEFAULT_STALE_THRESHOLD,
    CheckpointStore,
    InMemoryCheckpointStore,
    SQLCheckpointStore,
)
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState, CircuitStats
from .dlq import DeadLetterQueue, InMemoryDeadLetterQueue, SQLDeadLetterQueue
from .models import (
    CheckpointRecord,
    CheckpointStatus,
    CompletionStatus,
    DeadLetterItem,
    DLQResolution,
    DLQStats,
    LastError,
)
from .rate_limit import (
    RateLimiter,
    RateLimiterStats,
    RateLimitExceeded,
    SlidingWindowLimiter,
    TokenBucketLimiter,
    create_rate_limiter,
)
from .registry import ResilienceRegistry
from .retry import (
    AGGRESSIVE_POLICY,
    BATCH_RETRY_POLICIES,
    DEFAULT_POLICY,
    NO_RETRY,
    QUICK_POLICY,
    RetryPolicy,
    RetryResult,
    default_is_retryable,
    execute_with_retry,
    execute_with_retry_or_raise,
    extract_retry_after,
    is_connection_error,
    is_rate_limit_error,
    is_timeout_error,
    selective_retry,
    with_retry,
)
from .timeout import race_with_timeout

__all__ = [
    "DEFAULT_STALE_THRESHOLD",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SQLCheckpointStore",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStats",
    "DeadLetterQueue",
    "InMemoryDeadLetterQueue",
    "SQLDeadLetterQueue",
    "CheckpointRecord",
    "CheckpointStatus",
    "CompletionStatus",
    "DeadLetterItem",
    "DLQResolution",
    "DLQStats",
    "LastError",
    "RateLimiter",
    "RateLimiterStats",
    "RateLimitExceeded",
    "SlidingWindowLimiter",
    "TokenBucketLimiter",
    "create_rate_limiter",
    "ResilienceRegistry",
    "AGGRESSIVE_POLICY",
    "BATCH_RETRY_POLICIES",
    "DEFAULT_POLICY",
    "NO_RETRY",
    "QUICK_POLICY",
    "RetryPolicy",
    "RetryResult",
    "default_is_retryable",
    "execute_with_retry",
    "execute_with_retry_or_raise",
    "extract_retry_after",
    "is_connection_error",
    "is_rate_limit_error",
    "is_timeout_error",
    "selective_retry",
    "with_retry",
    "race_with_timeout",
]

"""Settings for the batch execution core.

The core consumes configuration, it does not own it: per-dependency rate
limiter parameters, breaker thresholds, retry policies, concurrency limits
and the stale-processing threshold are pure data supplied by the batch-job
driver. ``BatchSettings`` is where that data is validated.

Manifesto:
    - **Pydantic validation:** bad presets fail at startup, not mid-batch
    - **Environment-driven:** ``BATCHSPINE_*`` env vars and ``.env`` files
    - **Sensible defaults:** the presets below work out of the box

Examples:
    >>> from batchspine.core.settings import BatchSettings
    >>> settings = BatchSettings()
    >>> settings.concurrency_for("pro")
    5
    >>> settings.rate_limiters["sec_edgar"].max_tokens
    10

    Overriding a nested value from the environment::

        BATCHSPINE_DEFAULT_STEP_TIMEOUT=90
        BATCHSPINE_CIRCUIT_BREAKERS__SEARCH_API__FAILURE_THRESHOLD=5

Tags:
    settings, configuration, pydantic, environment, batchspine
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimiterConfig(BaseModel):
    """Parameters for one rate-limited dependency.

    Token bucket uses ``max_tokens``/``refill_rate``/``refill_interval``;
    sliding window uses ``max_requests``/``window_seconds``.
    """

    strategy: Literal["token_bucket", "sliding_window"] = "token_bucket"
    max_tokens: int = Field(default=10, gt=0)
    refill_rate: int = Field(default=1, gt=0)
    refill_interval: float = Field(default=1.0, gt=0)
    max_requests: int = Field(default=10, gt=0)
    window_seconds: float = Field(default=60.0, gt=0)


class CircuitBreakerConfig(BaseModel):
    """Thresholds for one protected dependency."""

    failure_threshold: int = Field(default=5, gt=0)
    success_threshold: int = Field(default=1, gt=0)
    recovery_timeout: float = Field(default=60.0, gt=0, description="Seconds spent OPEN before probing")


class RetryPolicyConfig(BaseModel):
    """Backoff parameters for one class of step."""

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: bool = True


def _default_rate_limiters() -> dict[str, RateLimiterConfig]:
    return {
        "perplexity": RateLimiterConfig(max_tokens=10, refill_rate=2, refill_interval=12.0),
        "openrouter": RateLimiterConfig(max_tokens=30, refill_rate=5, refill_interval=10.0),
        "linkup": RateLimiterConfig(max_tokens=5, refill_rate=1, refill_interval=12.0),
        "sec_edgar": RateLimiterConfig(max_tokens=10, refill_rate=10, refill_interval=1.0),
        "fec": RateLimiterConfig(max_tokens=5, refill_rate=5, refill_interval=1.0),
        "propublica": RateLimiterConfig(max_tokens=2, refill_rate=2, refill_interval=1.0),
    }


def _default_circuit_breakers() -> dict[str, CircuitBreakerConfig]:
    return {
        "primary_llm": CircuitBreakerConfig(failure_threshold=5, success_threshold=2, recovery_timeout=60.0),
        "secondary_llm": CircuitBreakerConfig(failure_threshold=3, success_threshold=2, recovery_timeout=45.0),
        "search_api": CircuitBreakerConfig(failure_threshold=3, success_threshold=2, recovery_timeout=30.0),
        "verification_api": CircuitBreakerConfig(failure_threshold=5, success_threshold=1, recovery_timeout=120.0),
    }


def _default_retry_policies() -> dict[str, RetryPolicyConfig]:
    return {
        "default": RetryPolicyConfig(),
        "aggressive": RetryPolicyConfig(max_retries=5, base_delay=0.5, max_delay=60.0),
        "quick": RetryPolicyConfig(max_retries=2, base_delay=0.2, max_delay=2.0),
        "no_retry": RetryPolicyConfig(max_retries=0),
        "primary_llm": RetryPolicyConfig(max_retries=3, base_delay=2.0),
        "secondary_llm": RetryPolicyConfig(max_retries=2, base_delay=1.0),
        "search_api": RetryPolicyConfig(max_retries=2, base_delay=0.2, max_delay=2.0),
        "verification_api": RetryPolicyConfig(max_retries=3, base_delay=3.0, max_delay=15.0),
        "database": RetryPolicyConfig(max_retries=3, base_delay=0.1, max_delay=2.0),
    }


class BatchSettings(BaseSettings):
    """Configuration surface consumed by the batch execution core.

    Fields
    ──────
    log_level / json_logs        : structlog configuration
    database_path                : SQLite file for checkpoint and DLQ tables
    default_step_timeout         : seconds, used when a step sets none
    cancel_on_timeout            : True (default) cancels the step task when its
                                   timeout fires; False only stops waiting and
                                   lets the abandoned task run to completion
    stale_processing_threshold   : seconds before a ``processing`` row is stale (5 min)
    dlq_retention_days           : resolved DLQ entries older than this are purged
    concurrency_limits           : simultaneous items per subscription tier
    rate_limiters / circuit_breakers / retry_policies : per-dependency presets
    """

    model_config = SettingsConfigDict(
        env_prefix="BATCHSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Storage ──────────────────────────────────────────────────
    database_path: Path = Field(
        default_factory=lambda: Path.home() / ".batchspine" / "batch.db",
        description="SQLite database holding checkpoints and dead letters",
    )

    # ── Execution ────────────────────────────────────────────────
    default_step_timeout: float = Field(default=60.0, gt=0)
    # Cancel by default; False abandons the timed-out task instead
    cancel_on_timeout: bool = True
    stale_processing_threshold: float = Field(default=300.0, gt=0)
    dlq_retention_days: int = Field(default=30, gt=0)

    # ── Concurrency ──────────────────────────────────────────────
    concurrency_limits: dict[str, int] = Field(
        default_factory=lambda: {"growth": 3, "pro": 5, "scale": 8}
    )
    default_concurrency: int = Field(default=3, gt=0)

    # ── Dependency presets ───────────────────────────────────────
    rate_limiters: dict[str, RateLimiterConfig] = Field(default_factory=_default_rate_limiters)
    circuit_breakers: dict[str, CircuitBreakerConfig] = Field(default_factory=_default_circuit_breakers)
    retry_policies: dict[str, RetryPolicyConfig] = Field(default_factory=_default_retry_policies)

    def concurrency_for(self, tier: str | None) -> int:
        """Concurrent item limit for a subscription tier."""
        if tier is None:
            return self.default_concurrency
        return self.concurrency_limits.get(tier.lower(), self.default_concurrency)


@lru_cache
def get_settings() -> BatchSettings:
    """Process-wide settings instance (cached)."""
    return BatchSettings()


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()

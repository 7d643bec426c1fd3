"""Tests for BatchSettings."""

import pytest
from pydantic import ValidationError

from batchspine.core.settings import (
    BatchSettings,
    CircuitBreakerConfig,
    RateLimiterConfig,
    get_settings,
    reset_settings,
)


class TestDefaults:
    def test_execution_defaults(self):
        settings = BatchSettings()
        assert settings.default_step_timeout == 60.0
        assert settings.cancel_on_timeout is True
        assert settings.stale_processing_threshold == 300.0
        assert settings.dlq_retention_days == 30

    def test_presets_present(self):
        settings = BatchSettings()
        assert settings.rate_limiters["perplexity"].max_tokens == 10
        assert settings.rate_limiters["perplexity"].refill_interval == 12.0
        assert settings.circuit_breakers["search_api"].failure_threshold == 3
        assert settings.retry_policies["quick"].max_retries == 2


class TestConcurrency:
    def test_tier_limits(self):
        settings = BatchSettings()
        assert settings.concurrency_for("growth") == 3
        assert settings.concurrency_for("pro") == 5
        assert settings.concurrency_for("scale") == 8

    def test_tier_is_case_insensitive(self):
        assert BatchSettings().concurrency_for("PRO") == 5

    def test_unknown_or_missing_tier_uses_default(self):
        settings = BatchSettings(default_concurrency=4)
        assert settings.concurrency_for("enterprise") == 4
        assert settings.concurrency_for(None) == 4


class TestEnvironment:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("BATCHSPINE_DEFAULT_STEP_TIMEOUT", "90")
        monkeypatch.setenv("BATCHSPINE_CANCEL_ON_TIMEOUT", "false")
        settings = BatchSettings()
        assert settings.default_step_timeout == 90.0
        assert settings.cancel_on_timeout is False

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("BATCHSPINE_DLQ_RETENTION_DAYS", "7")
        reset_settings()
        assert get_settings().dlq_retention_days == 7


class TestValidation:
    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            BatchSettings(default_step_timeout=0)

    def test_rejects_bad_rate_limiter(self):
        with pytest.raises(ValidationError):
            RateLimiterConfig(max_tokens=0)

    def test_rejects_bad_strategy(self):
        with pytest.raises(ValidationError):
            RateLimiterConfig(strategy="leaky_bucket")

    def test_rejects_bad_breaker(self):
        with pytest.raises(ValidationError):
            CircuitBreakerConfig(recovery_timeout=-1)

"""Tests for ResilienceRegistry."""

from batchspine.core.settings import BatchSettings, CircuitBreakerConfig, RetryPolicyConfig
from batchspine.execution.circuit_breaker import CircuitBreaker
from batchspine.execution.rate_limit import TokenBucketLimiter
from batchspine.execution.registry import ResilienceRegistry
from batchspine.execution.retry import BATCH_RETRY_POLICIES, DEFAULT_POLICY, QUICK_POLICY


class TestFromSettings:
    def test_builds_configured_dependencies(self):
        registry = ResilienceRegistry.from_settings(BatchSettings())

        breaker = registry.breaker("search_api")
        assert breaker is not None
        assert breaker.failure_threshold == 3
        assert breaker.success_threshold == 2
        assert breaker.recovery_timeout == 30.0

        limiter = registry.rate_limiter("perplexity")
        assert isinstance(limiter, TokenBucketLimiter)
        assert limiter.max_tokens == 10

        assert registry.retry_policy("quick").max_retries == 2

    def test_custom_settings(self):
        settings = BatchSettings(
            circuit_breakers={"crm": CircuitBreakerConfig(failure_threshold=2)},
            rate_limiters={},
            retry_policies={"default": RetryPolicyConfig(max_retries=1, jitter=False)},
        )
        registry = ResilienceRegistry.from_settings(settings)

        assert registry.breakers.list_all() == ["crm"]
        assert registry.rate_limiter("perplexity") is None
        assert registry.default_policy.max_retries == 1
        assert registry.retry_policy("unknown").max_retries == 1

    def test_same_instance_every_lookup(self):
        registry = ResilienceRegistry.from_settings(BatchSettings())
        assert registry.breaker("primary_llm") is registry.breaker("primary_llm")
        assert registry.rate_limiter("fec") is registry.rate_limiter("fec")


class TestLookup:
    def test_none_dependency(self):
        registry = ResilienceRegistry()
        assert registry.breaker(None) is None
        assert registry.rate_limiter(None) is None
        assert registry.retry_policy(None) is DEFAULT_POLICY

    def test_builtin_policies_available(self):
        registry = ResilienceRegistry()
        assert registry.retry_policy("search_api") == BATCH_RETRY_POLICIES["search_api"]

    def test_register(self):
        registry = ResilienceRegistry()
        breaker = registry.register_breaker(CircuitBreaker(name="crm"))
        limiter = registry.register_rate_limiter("crm", TokenBucketLimiter(max_tokens=3))
        registry.register_retry_policy("crm", QUICK_POLICY)

        assert registry.breaker("crm") is breaker
        assert registry.rate_limiter("crm") is limiter
        assert registry.retry_policy("crm") is QUICK_POLICY


class TestHealth:
    def test_health_reports_open_breakers(self):
        registry = ResilienceRegistry()
        registry.register_breaker(CircuitBreaker(name="crm"))
        registry.register_rate_limiter("crm", TokenBucketLimiter(max_tokens=3))

        health = registry.get_health()
        assert health["healthy"] is True
        assert health["rate_limiters"]["crm"]["capacity"] == 3

        registry.breaker("crm").force_open()
        health = registry.get_health()
        assert health["healthy"] is False
        assert health["circuit_breakers"]["crm"]["state"] == "open"

    def test_reset(self):
        registry = ResilienceRegistry()
        registry.register_breaker(CircuitBreaker(name="crm")).force_open()
        limiter = registry.register_rate_limiter("crm", TokenBucketLimiter(max_tokens=2))
        limiter.try_acquire(2)

        registry.reset()

        assert registry.breaker("crm").is_open() is False
        assert limiter.available_tokens == 2

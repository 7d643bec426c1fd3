"""Tests for rate limiting."""

import asyncio
import math

import pytest

from batchspine.core.errors import RateLimitError
from batchspine.core.settings import RateLimiterConfig
from batchspine.execution.rate_limit import (
    RateLimitExceeded,
    SlidingWindowLimiter,
    TokenBucketLimiter,
    create_rate_limiter,
)


class TestTokenBucketLimiter:
    """Tests for TokenBucketLimiter with a controlled clock."""

    def test_starts_full(self, clock):
        limiter = TokenBucketLimiter(max_tokens=5, clock=clock)
        assert limiter.available_tokens == 5
        assert limiter.capacity == 5

    def test_five_per_bucket_one_per_second(self, clock):
        limiter = TokenBucketLimiter(max_tokens=5, refill_rate=1, refill_interval=1.0, clock=clock)

        assert [limiter.try_acquire() for _ in range(5)] == [True] * 5
        assert limiter.try_acquire() is False

        clock.advance(1.0)
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False

    def test_partial_interval_does_not_refill(self, clock):
        limiter = TokenBucketLimiter(max_tokens=2, refill_rate=1, refill_interval=1.0, clock=clock)
        limiter.try_acquire(2)

        clock.advance(0.6)
        assert limiter.try_acquire() is False
        clock.advance(0.6)
        assert limiter.try_acquire() is True

    def test_refill_never_exceeds_capacity(self, clock):
        limiter = TokenBucketLimiter(max_tokens=3, refill_rate=2, refill_interval=1.0, clock=clock)
        limiter.try_acquire(3)
        clock.advance(100)
        assert limiter.available_tokens == 3

    def test_wait_time(self, clock):
        limiter = TokenBucketLimiter(max_tokens=5, refill_rate=1, refill_interval=1.0, clock=clock)
        assert limiter.get_wait_time() == 0.0

        limiter.try_acquire(5)
        assert limiter.get_wait_time() == pytest.approx(1.0)
        clock.advance(0.4)
        assert limiter.get_wait_time() == pytest.approx(0.6)
        assert limiter.get_wait_time(3) == pytest.approx(2.6)

    def test_wait_time_over_capacity_is_infinite(self, clock):
        limiter = TokenBucketLimiter(max_tokens=2, clock=clock)
        assert math.isinf(limiter.get_wait_time(3))
        assert limiter.try_acquire(3) is False

    def test_rejects_invalid_configuration(self):
        with pytest.raises(ValueError):
            TokenBucketLimiter(max_tokens=0)

    def test_reset(self, clock):
        limiter = TokenBucketLimiter(max_tokens=2, clock=clock)
        limiter.try_acquire(2)
        limiter.reset()
        assert limiter.available_tokens == 2


class TestTokenBucketAcquire:
    """Suspending acquire."""

    @pytest.mark.asyncio
    async def test_acquire_immediate(self):
        limiter = TokenBucketLimiter(max_tokens=2, refill_interval=0.05)
        assert await limiter.acquire() == 0.0

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_acquire_waits_for_refill(self):
        limiter = TokenBucketLimiter(max_tokens=1, refill_rate=1, refill_interval=0.05)
        await limiter.acquire()

        waited = await limiter.acquire()

        assert waited > 0
        stats = limiter.get_stats()
        assert stats.total_acquired == 2
        assert stats.wait_count == 1

    @pytest.mark.asyncio
    async def test_acquire_more_than_capacity_raises(self, clock):
        limiter = TokenBucketLimiter(max_tokens=2, clock=clock)
        with pytest.raises(ValueError):
            await limiter.acquire(3)

    @pytest.mark.asyncio
    async def test_acquire_max_wait_exceeded(self, clock):
        limiter = TokenBucketLimiter(max_tokens=1, refill_interval=10.0, clock=clock)
        limiter.try_acquire()

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.acquire(max_wait=0.01)
        assert isinstance(exc_info.value, RateLimitError)
        assert exc_info.value.retry_after == pytest.approx(10.0)

    @pytest.mark.asyncio
    async def test_execute(self, clock):
        limiter = TokenBucketLimiter(max_tokens=1, clock=clock)

        async def call():
            return "done"

        assert await limiter.execute(call) == "done"
        assert limiter.available_tokens == 0


class TestSlidingWindowLimiter:
    def test_admits_up_to_limit_in_window(self, clock):
        limiter = SlidingWindowLimiter(max_requests=3, window_seconds=10.0, clock=clock)
        assert [limiter.try_acquire() for _ in range(3)] == [True] * 3
        assert limiter.try_acquire() is False
        assert limiter.current_count == 3

    def test_window_slides(self, clock):
        limiter = SlidingWindowLimiter(max_requests=2, window_seconds=10.0, clock=clock)
        limiter.try_acquire()
        clock.advance(5)
        limiter.try_acquire()

        assert limiter.get_wait_time() == pytest.approx(5.0)
        clock.advance(5)
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False

    def test_wait_time_for_several(self, clock):
        limiter = SlidingWindowLimiter(max_requests=3, window_seconds=10.0, clock=clock)
        limiter.try_acquire()
        clock.advance(2)
        limiter.try_acquire()
        clock.advance(2)
        limiter.try_acquire()

        assert limiter.get_wait_time(2) == pytest.approx(8.0)

    def test_over_capacity(self, clock):
        limiter = SlidingWindowLimiter(max_requests=2, window_seconds=1.0, clock=clock)
        assert math.isinf(limiter.get_wait_time(5))

    def test_stats(self, clock):
        limiter = SlidingWindowLimiter(max_requests=4, window_seconds=1.0, name="fec", clock=clock)
        limiter.try_acquire()
        stats = limiter.get_stats().to_dict()
        assert stats["name"] == "fec"
        assert stats["strategy"] == "sliding_window"
        assert stats["available"] == 3.0
        assert stats["capacity"] == 4


class TestFactory:
    def test_token_bucket_from_config(self):
        limiter = create_rate_limiter(
            "perplexity",
            RateLimiterConfig(max_tokens=10, refill_rate=2, refill_interval=12.0),
        )
        assert isinstance(limiter, TokenBucketLimiter)
        assert limiter.name == "perplexity"
        assert limiter.refill_interval == 12.0

    def test_sliding_window_from_config(self):
        limiter = create_rate_limiter(
            "fec",
            RateLimiterConfig(strategy="sliding_window", max_requests=5, window_seconds=1.0),
        )
        assert isinstance(limiter, SlidingWindowLimiter)
        assert limiter.capacity == 5


# =============================================================================
# Shared limiter under concurrent callers
# =============================================================================


def _bucket():
    return TokenBucketLimiter(max_tokens=5, refill_rate=1, refill_interval=3600.0)


def _window():
    return SlidingWindowLimiter(max_requests=5, window_seconds=3600.0)


@pytest.mark.parametrize("factory", [_bucket, _window], ids=["token_bucket", "sliding_window"])
class TestConcurrentAdmission:
    @pytest.mark.asyncio
    async def test_try_acquire_from_many_tasks(self, factory):
        limiter = factory()

        async def attempt() -> bool:
            await asyncio.sleep(0)
            return limiter.try_acquire()

        admitted = await asyncio.gather(*[attempt() for _ in range(50)])

        assert admitted.count(True) == 5
        assert limiter.get_stats().total_acquired == 5

    @pytest.mark.asyncio
    async def test_try_acquire_from_many_threads(self, factory):
        limiter = factory()

        admitted = await asyncio.gather(*[asyncio.to_thread(limiter.try_acquire) for _ in range(50)])

        assert admitted.count(True) == 5
        assert limiter.try_acquire() is False

    @pytest.mark.asyncio
    async def test_acquire_from_many_tasks(self, factory):
        limiter = factory()

        outcomes = await asyncio.gather(
            *[limiter.acquire(max_wait=0.0) for _ in range(50)],
            return_exceptions=True,
        )

        assert sum(1 for o in outcomes if o == 0.0) == 5
        assert sum(1 for o in outcomes if isinstance(o, RateLimitExceeded)) == 45
        assert limiter.get_stats().total_acquired == 5

"""Tests for race_with_timeout."""

import asyncio

import pytest

from batchspine.core.errors import StepTimeoutError
from batchspine.execution.timeout import race_with_timeout


class TestRaceWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_result_when_fast(self):
        async def fast():
            return "done"

        assert await race_with_timeout(fast(), 1.0) == "done"

    @pytest.mark.asyncio
    async def test_propagates_errors(self):
        async def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await race_with_timeout(broken(), 1.0)

    @pytest.mark.asyncio
    async def test_times_out_with_message(self):
        async def slow():
            await asyncio.sleep(5)

        with pytest.raises(StepTimeoutError) as exc_info:
            await race_with_timeout(slow(), 0.02, operation="search")

        err = exc_info.value
        assert str(err) == "Step execution timed out after 0.02s"
        assert err.step == "search"
        assert err.elapsed is not None and err.elapsed >= 0.02 - 0.01

    @pytest.mark.asyncio
    async def test_cancels_by_default(self):
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(StepTimeoutError):
            await race_with_timeout(slow(), 0.02)

        await asyncio.wait_for(cancelled.wait(), timeout=1.0)
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_abandons_when_cancel_disabled(self):
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.05)
            finished.set()
            return "late"

        with pytest.raises(StepTimeoutError):
            await race_with_timeout(slow(), 0.01, cancel=False)

        await asyncio.wait_for(finished.wait(), timeout=1.0)
        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_rejects_non_positive_timeout(self):
        async def fast():
            return 1

        with pytest.raises(ValueError):
            await race_with_timeout(fast(), 0)

"""Timeout enforcement for step calls.

A step call is raced against a timer. When the timer wins the orchestrator
stops waiting and raises ``StepTimeoutError``. What happens to the call
itself depends on ``cancel``:

- ``cancel=True`` (default): the task is cancelled. Well-behaved async
  clients release their sockets on ``CancelledError``.
- ``cancel=False``: the call is abandoned and keeps running in the
  background; its eventual result is discarded. This leaks whatever the
  call holds until it finishes, so prefer cancellation, or thread the
  context's abort signal into the step.

Example:
    >>> from batchspine.execution.timeout import race_with_timeout
    >>> data = await race_with_timeout(fetch_filings(cik), 30.0, operation="sec_filings")

Tags:
    timeout, deadline, resilience, execution, batchspine
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable
from typing import Any

from batchspine.core.errors import StepTimeoutError
from batchspine.core.logging import get_logger

logger = get_logger(__name__)


def _discard_outcome(task: asyncio.Future) -> None:
    """Retrieve an abandoned task's outcome so asyncio does not warn about it."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("timeout.abandoned_call_failed", error=str(error))


async def race_with_timeout(
    awaitable: Awaitable[Any],
    timeout: float,
    *,
    operation: str = "step",
    cancel: bool = True,
) -> Any:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    Args:
        awaitable: Coroutine or future to run
        timeout: Seconds before giving up
        operation: Name for error messages and logs
        cancel: Cancel the underlying task on timeout instead of abandoning it

    Returns:
        Result of the awaitable

    Raises:
        StepTimeoutError: If the timer wins
        ValueError: If timeout <= 0
        Exception: Anything raised by the awaitable
    """
    if timeout <= 0:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise ValueError(f"Timeout must be positive, got {timeout}")

    task = asyncio.ensure_future(awaitable)
    start = time.monotonic()

    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    elapsed = time.monotonic() - start
    if cancel:
        task.cancel()
    else:
        task.add_done_callback(_discard_outcome)

    logger.warning(
        "timeout.expired",
        operation=operation,
        timeout=timeout,
        elapsed=round(elapsed, 3),
        cancelled=cancel,
    )
    raise StepTimeoutError(timeout, step=operation, elapsed=elapsed)

"""Step Executor — runs pipeline steps for one item with full protection.

WHY
───
A step is a call into an unreliable, rate-limited external service.  The
executor wraps every call in the same harness so step authors only write
business logic: checkpoint cache, skip conditions, circuit breaker, rate
limiter, timeout, retry with backoff, and a checkpoint write for every
outcome.

ARCHITECTURE
────────────
::

    execute_step(step, context)
      1. completed checkpoint?          → cached result (from_cache=True)
      2. skip_condition(context)?       → skipped "skip_condition_met"
      3. breaker open?                  → required: raise CircuitOpenError
                                          optional: skipped "circuit_breaker_open"
      4. mark_processing, then execute_with_retry(
             limiter.acquire → breaker.execute(race_with_timeout(step.execute)))
      5. success                        → save_result (tokens, duration)
      6. failure                        → breaker.record_failure, mark_failed,
                                          required: raise / optional: failed result

    execute_steps(steps, context)            sequential, depends_on checked
    execute_steps_parallel(steps, context)   gather, results merged

    Per (item, step):
      not-started → cache-hit | skip-condition-met | circuit-open
                  → processing → completed | failed

Related modules:
    steps.py        — PipelineStepDefinition, StepContext
    pipeline.py     — item runner, DLQ routing, batch fan-out
    execution/*     — breaker, limiter, retry, timeout, checkpoint store

Example::

    executor = StepExecutor(checkpoints, registry, default_timeout=60.0)
    results = await executor.execute_steps(pipeline.steps, context)
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from batchspine.core.errors import (
    BatchSpineError,
    CircuitOpenError,
    RequiredStepError,
    RetryAbortedError,
    RunAbortedError,
    StepFailedError,
)
from batchspine.core.logging import get_logger
from batchspine.core.settings import BatchSettings
from batchspine.execution.checkpoints import CheckpointStore
from batchspine.execution.circuit_breaker import CircuitBreaker
from batchspine.execution.registry import ResilienceRegistry
from batchspine.execution.retry import (
    BATCH_RETRY_POLICIES,
    DEFAULT_POLICY,
    RetryPolicy,
    execute_with_retry,
)
from batchspine.execution.timeout import race_with_timeout

from .step_result import (
    ALREADY_COMPLETED,
    SKIP_CIRCUIT_OPEN,
    SKIP_CONDITION_MET,
    StepResult,
    unmet_dependencies_reason,
)
from .steps import PipelineStepDefinition, StepContext, dependents_of

logger = get_logger(__name__)


@dataclass
class StepExecutionResult:
    """Outcome of ``execute_step``.

    Attributes:
        result: The step's result (cached, skipped, completed or failed)
        from_cache: True when served from a completed checkpoint
        duration_ms: Time spent in this call, retries included
        tokens_used: Tokens consumed by this call (0 for cache hits)
        error: Final error for a failed optional step
    """

    result: StepResult
    from_cache: bool = False
    duration_ms: int = 0
    tokens_used: int = 0
    error: BaseException | None = None


class StepExecutor:
    """Executes pipeline steps against a checkpoint store and a resilience registry.

    Parameters
    ----------
    checkpoints : CheckpointStore
        Resume and caching authority.
    registry : ResilienceRegistry | None
        Source of breakers/limiters (by ``step.dependency``) and named policies.
    default_timeout : float
        Seconds per attempt for steps that set no timeout.
    default_retry_policy : RetryPolicy | None
        Policy for steps that name none (registry default if omitted).
    cancel_on_timeout : bool
        Cancel a timed-out step task instead of abandoning it.
    on_step_start / on_step_complete / on_step_fail / on_step_skip
        Optional observers, called with (step_name, item_id, ...).
    """

    def __init__(
        self,
        checkpoints: CheckpointStore,
        registry: ResilienceRegistry | None = None,
        *,
        default_timeout: float = 60.0,
        default_retry_policy: RetryPolicy | None = None,
        cancel_on_timeout: bool = True,
        on_step_start: Callable[[str, str], None] | None = None,
        on_step_complete: Callable[[str, str, StepResult, int], None] | None = None,
        on_step_fail: Callable[[str, str, BaseException], None] | None = None,
        on_step_skip: Callable[[str, str, str], None] | None = None,
    ) -> None:
        self._checkpoints = checkpoints
        self._registry = registry
        self._default_timeout = default_timeout
        if default_retry_policy is None:
            default_retry_policy = registry.default_policy if registry else DEFAULT_POLICY
        self._default_policy = default_retry_policy
        self._cancel_on_timeout = cancel_on_timeout
        self._on_step_start = on_step_start
        self._on_step_complete = on_step_complete
        self._on_step_fail = on_step_fail
        self._on_step_skip = on_step_skip

    @classmethod
    def from_settings(
        cls,
        checkpoints: CheckpointStore,
        registry: ResilienceRegistry,
        settings: BatchSettings,
        **callbacks: Any,
    ) -> StepExecutor:
        return cls(
            checkpoints,
            registry,
            default_timeout=settings.default_step_timeout,
            cancel_on_timeout=settings.cancel_on_timeout,
            **callbacks,
        )

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    # ── Helpers ──────────────────────────────────────────────────────

    def _notify(self, callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.warning("step.callback_failed", callback=getattr(callback, "__name__", "?"), exc_info=True)

    def _resolve_policy(self, step: PipelineStepDefinition, override: RetryPolicy | None) -> RetryPolicy:
        if override is not None:
            return override
        if isinstance(step.retry_policy, RetryPolicy):
            return step.retry_policy
        if isinstance(step.retry_policy, str):
            if self._registry is not None:
                return self._registry.retry_policy(step.retry_policy)
            return BATCH_RETRY_POLICIES.get(step.retry_policy, self._default_policy)
        return self._default_policy

    def _resolve_breaker(
        self, step: PipelineStepDefinition, override: CircuitBreaker | None
    ) -> CircuitBreaker | None:
        if override is not None:
            return override
        if self._registry is None:
            return None
        return self._registry.breaker(step.dependency)

    def _skip(self, step: PipelineStepDefinition, context: StepContext, reason: str) -> StepExecutionResult:
        self._checkpoints.mark_skipped(context.item_id, step.name, reason)
        result = StepResult.skip(reason)
        context.previous_results[step.name] = result
        logger.info("step.skipped", item_id=context.item_id, step=step.name, reason=reason)
        self._notify(self._on_step_skip, step.name, context.item_id, reason)
        return StepExecutionResult(result=result)

    async def _should_skip(self, step: PipelineStepDefinition, context: StepContext) -> bool:
        if step.skip_condition is None:
            return False
        try:
            outcome = step.skip_condition(context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            logger.warning(
                "step.skip_condition_failed",
                item_id=context.item_id,
                step=step.name,
                error=str(e),
            )
            return False
        return bool(outcome)

    # ── Single step ──────────────────────────────────────────────────

    async def execute_step(
        self,
        step: PipelineStepDefinition,
        context: StepContext,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        force_execute: bool = False,
    ) -> StepExecutionResult:
        """Execute one step for one item.

        Raises:
            CircuitOpenError: required step whose breaker is open
            Exception: final error of a required step that failed
        """
        item_id = context.item_id
        started = time.monotonic()

        if not force_execute:
            cached = self._checkpoints.get_result(item_id, step.name)
            if cached is not None:
                result = StepResult.from_dict(cached)
                context.previous_results[step.name] = result
                logger.debug("step.cache_hit", item_id=item_id, step=step.name)
                self._notify(self._on_step_skip, step.name, item_id, ALREADY_COMPLETED)
                return StepExecutionResult(result=result, from_cache=True)

        if await self._should_skip(step, context):
            return self._skip(step, context, SKIP_CONDITION_MET)

        breaker = self._resolve_breaker(step, circuit_breaker)
        if breaker is not None and breaker.is_open():
            if not step.required:
                return self._skip(step, context, SKIP_CIRCUIT_OPEN)
            error = CircuitOpenError(breaker.name, retry_after=breaker.get_time_until_close())
            self._checkpoints.mark_failed(item_id, step.name, error)
            context.previous_results[step.name] = StepResult.fail(error)
            logger.error("step.circuit_open", item_id=item_id, step=step.name, breaker=breaker.name)
            self._notify(self._on_step_fail, step.name, item_id, error)
            raise error

        limiter = self._registry.rate_limiter(step.dependency) if self._registry else None
        policy = self._resolve_policy(step, retry_policy)
        timeout = step.timeout or self._default_timeout

        self._checkpoints.mark_processing(item_id, step.name)
        logger.debug("step.started", item_id=item_id, step=step.name, timeout=timeout)
        self._notify(self._on_step_start, step.name, item_id)

        async def _call() -> StepResult:
            outcome = step.execute(context)
            if inspect.isawaitable(outcome):
                outcome = await race_with_timeout(
                    outcome,
                    timeout,
                    operation=step.name,
                    cancel=self._cancel_on_timeout,
                )
            result = StepResult.from_value(outcome)
            if result.failed:
                raise StepFailedError(step.name, result.error or "")
            return result

        async def _attempt() -> StepResult:
            if limiter is not None:
                await limiter.acquire(step.tokens)
            if breaker is not None:
                return await breaker.execute(_call)
            return await _call()

        retry = await execute_with_retry(
            _attempt,
            policy,
            name=step.name,
            abort=context.abort_signal,
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        if retry.success:
            result: StepResult = retry.data
            result.duration_ms = duration_ms
            context.previous_results[step.name] = result

            if result.skipped:
                reason = result.reason or "skipped_by_step"
                self._checkpoints.mark_skipped(item_id, step.name, reason)
                logger.info("step.skipped", item_id=item_id, step=step.name, reason=reason)
                self._notify(self._on_step_skip, step.name, item_id, reason)
                return StepExecutionResult(result=result, duration_ms=duration_ms)

            self._checkpoints.save_result(
                item_id,
                step.name,
                result.to_dict(),
                tokens_used=result.tokens_used,
                duration_ms=duration_ms,
            )
            logger.info(
                "step.completed",
                item_id=item_id,
                step=step.name,
                duration_ms=duration_ms,
                attempts=retry.attempts,
                tokens_used=result.tokens_used,
            )
            self._notify(self._on_step_complete, step.name, item_id, result, duration_ms)
            return StepExecutionResult(
                result=result,
                duration_ms=duration_ms,
                tokens_used=result.tokens_used,
            )

        error = retry.error
        if error is None:
            raise BatchSpineError(f"Retry for step '{step.name}' failed without an error")

        # Rejected mid-run, e.g. a half-open breaker whose probe slot is taken
        if isinstance(error, CircuitOpenError) and not step.required:
            return self._skip(step, context, SKIP_CIRCUIT_OPEN)

        if breaker is not None and not isinstance(error, (CircuitOpenError, RetryAbortedError)):
            breaker.record_failure(error)
        self._checkpoints.mark_failed(item_id, step.name, error, duration_ms=duration_ms)

        failed = StepResult.fail(error)
        failed.duration_ms = duration_ms
        context.previous_results[step.name] = failed

        logger.error(
            "step.failed",
            item_id=item_id,
            step=step.name,
            required=step.required,
            attempts=retry.attempts,
            duration_ms=duration_ms,
            error=str(error),
        )
        self._notify(self._on_step_fail, step.name, item_id, error)

        if step.required:
            raise error
        return StepExecutionResult(result=failed, duration_ms=duration_ms, error=error)

    # ── Step sets ────────────────────────────────────────────────────

    def _is_satisfied(self, dep: str, results: Mapping[str, StepResult], context: StepContext) -> bool:
        result = results.get(dep) or context.previous_results.get(dep)
        if result is not None:
            return result.success
        return self._checkpoints.has_completed(context.item_id, dep)

    def _unmet(self, step: PipelineStepDefinition, results: Mapping[str, StepResult], context: StepContext) -> list[str]:
        return [dep for dep in step.depends_on if not self._is_satisfied(dep, results, context)]

    def _check_abort(self, context: StepContext, step_name: str) -> None:
        if context.is_aborted:
            logger.warning("run.aborted", item_id=context.item_id, before_step=step_name)
            raise RunAbortedError(f"Run for item '{context.item_id}' aborted before step '{step_name}'")

    def skip_dependents(
        self,
        steps: Sequence[PipelineStepDefinition],
        remaining: Sequence[PipelineStepDefinition],
        failed: str,
        results: dict[str, StepResult],
        context: StepContext,
    ) -> None:
        """Record every later step that depends on ``failed`` as skipped."""
        blocked = dependents_of(steps, failed)
        for step in remaining:
            if step.name in blocked:
                reason = unmet_dependencies_reason(self._unmet(step, results, context))
                results[step.name] = self._skip(step, context, reason).result

    async def execute_steps(
        self,
        steps: Sequence[PipelineStepDefinition],
        context: StepContext,
        *,
        circuit_breakers: Mapping[str, CircuitBreaker] | None = None,
    ) -> dict[str, StepResult]:
        """Run steps sequentially in list order.

        A step with an unmet dependency is recorded as skipped without being
        invoked. When a required step fails, the later steps that depend on
        it are recorded as skipped, the loop stops, and RequiredStepError is
        raised carrying the partial results.

        Raises:
            RequiredStepError: a required step failed
            RunAbortedError: the context's abort signal was set
        """
        breakers = circuit_breakers or {}
        results: dict[str, StepResult] = {}

        for index, step in enumerate(steps):
            self._check_abort(context, step.name)

            unmet = self._unmet(step, results, context)
            if unmet:
                results[step.name] = self._skip(step, context, unmet_dependencies_reason(unmet)).result
                continue

            try:
                outcome = await self.execute_step(step, context, circuit_breaker=breakers.get(step.name))
            except RetryAbortedError as e:
                results[step.name] = context.previous_results.get(step.name) or StepResult.fail(e)
                raise RunAbortedError(f"Run for item '{context.item_id}' aborted during step '{step.name}'", cause=e)
            except Exception as e:
                results[step.name] = context.previous_results.get(step.name) or StepResult.fail(e)
                self.skip_dependents(steps, steps[index + 1:], step.name, results, context)
                raise RequiredStepError(step.name, results, cause=e)

            results[step.name] = outcome.result

        return results

    async def execute_steps_parallel(
        self,
        steps: Sequence[PipelineStepDefinition],
        context: StepContext,
        *,
        circuit_breakers: Mapping[str, CircuitBreaker] | None = None,
    ) -> dict[str, StepResult]:
        """Run a set of mutually independent steps concurrently.

        Each step is still individually checkpointed and protected. All steps
        settle before a required failure is raised as RequiredStepError.
        """
        breakers = circuit_breakers or {}
        results: dict[str, StepResult] = {}
        runnable: list[PipelineStepDefinition] = []

        for step in steps:
            self._check_abort(context, step.name)
            unmet = self._unmet(step, results, context)
            if unmet:
                results[step.name] = self._skip(step, context, unmet_dependencies_reason(unmet)).result
            else:
                runnable.append(step)

        outcomes = await asyncio.gather(
            *[
                self.execute_step(step, context, circuit_breaker=breakers.get(step.name))
                for step in runnable
            ],
            return_exceptions=True,
        )

        first_failure: tuple[str, BaseException] | None = None
        for step, outcome in zip(runnable, outcomes):
            if isinstance(outcome, BaseException):
                results[step.name] = context.previous_results.get(step.name) or StepResult.fail(outcome)
                if first_failure is None:
                    first_failure = (step.name, outcome)
            else:
                results[step.name] = outcome.result

        if first_failure is not None:
            name, error = first_failure
            if isinstance(error, RetryAbortedError):
                raise RunAbortedError(f"Run for item '{context.item_id}' aborted during step '{name}'", cause=error)
            raise RequiredStepError(name, results, cause=error)

        return results

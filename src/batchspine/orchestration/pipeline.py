"""Pipeline Runner — runs a pipeline per item, routes failures to the DLQ.

WHY
───
The executor knows how to run steps for one item.  Something still has to
build the per-item context, decide what a failed run means (quarantine in
the dead letter queue), fan out over a batch with a concurrency cap, and
give operators a way to reprocess quarantined items and recover items
whose runner crashed mid-step.

ARCHITECTURE
────────────
::

    Pipeline(name, steps, mode)       validated DAG
      SEQUENTIAL → executor.execute_steps(steps)
      PARALLEL   → per topological level: executor.execute_steps_parallel(level)

    PipelineRunner
      ├── .run_item(item)             completed | failed (→ DLQ) | aborted
      ├── .run_batch(items)           Semaphore + gather → BatchRunResult
      ├── .retry_dead_letter(dlq_id)  mark retried, rerun from prospect_data
      └── .recover_stale()            processing rows older than threshold → pending

Example::

    runner = PipelineRunner(pipeline, executor, checkpoints, dlq)
    batch = await runner.run_batch(items, tier="pro")
    print(batch.succeeded, batch.failed)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from batchspine.core.errors import RequiredStepError, RunAbortedError
from batchspine.core.logging import LogContext, get_logger
from batchspine.core.settings import BatchSettings, get_settings
from batchspine.execution.checkpoints import CheckpointStore
from batchspine.execution.dlq import DeadLetterQueue

from .executor import StepExecutor
from .step_result import StepResult
from .steps import PipelineStepDefinition, StepContext, topological_levels, validate_steps

logger = get_logger(__name__)


class ExecutionMode(str, Enum):
    """How a pipeline's steps are scheduled for one item."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ItemStatus(str, Enum):
    """Final status of one item run."""

    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class Pipeline:
    """A named, validated list of steps.

    Raises:
        PipelineDefinitionError: if the step graph is invalid
    """

    def __init__(
        self,
        name: str,
        steps: Sequence[PipelineStepDefinition],
        mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
    ):
        validate_steps(steps)
        self.name = name
        self.steps = list(steps)
        self.mode = ExecutionMode(mode)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    @property
    def required_steps(self) -> list[str]:
        return [s.name for s in self.steps if s.required]

    async def execute(self, executor: StepExecutor, context: StepContext) -> dict[str, StepResult]:
        """Run every step for one item with ``executor``."""
        if self.mode == ExecutionMode.SEQUENTIAL:
            return await executor.execute_steps(self.steps, context)

        results: dict[str, StepResult] = {}
        levels = topological_levels(self.steps)
        for index, level in enumerate(levels):
            try:
                results.update(await executor.execute_steps_parallel(level, context))
            except RequiredStepError as e:
                results.update(e.results)
                remaining = [s for later in levels[index + 1:] for s in later]
                executor.skip_dependents(self.steps, remaining, e.step, results, context)
                raise RequiredStepError(e.step, results, cause=e.cause) from e.cause
        return results

    def __repr__(self) -> str:
        return f"Pipeline({self.name!r}, steps={self.step_names}, mode={self.mode.value})"


@dataclass
class BatchItem:
    """One unit of work handed to the runner."""

    item_id: str
    job_id: str
    user_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class ItemRunResult:
    """Outcome of running the pipeline for one item."""

    item_id: str
    status: ItemStatus
    results: dict[str, StepResult] = field(default_factory=dict)
    error: str | None = None
    dead_letter_id: str | None = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == ItemStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "status": self.status.value,
            "error": self.error,
            "dead_letter_id": self.dead_letter_id,
            "duration_ms": self.duration_ms,
            "steps": {name: r.status.value for name, r in self.results.items()},
        }


@dataclass
class BatchRunResult:
    """Aggregate result of running a batch of items."""

    batch_id: str
    items: list[ItemRunResult]
    started_at: datetime
    completed_at: datetime

    def _count(self, status: ItemStatus) -> int:
        return sum(1 for i in self.items if i.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(ItemStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self._count(ItemStatus.FAILED)

    @property
    def aborted(self) -> int:
        return self._count(ItemStatus.ABORTED)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def duration_seconds(self) -> float:
        """Wall-clock duration of the entire batch."""
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serialise for logging / API responses."""
        return {
            "batch_id": self.batch_id,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "aborted": self.aborted,
            "duration_seconds": self.duration_seconds,
            "items": [i.to_dict() for i in self.items],
        }


class PipelineRunner:
    """Runs a pipeline over items with checkpoint resume and DLQ routing.

    Parameters
    ----------
    pipeline : Pipeline
        Steps to run for every item.
    executor : StepExecutor
        Protected step execution.
    checkpoints : CheckpointStore
        Same store the executor writes to; used for snapshots and recovery.
    dlq : DeadLetterQueue
        Destination for items whose run failed.
    settings : BatchSettings | None
        Concurrency limits and stale threshold (process settings if omitted).
    """

    def __init__(
        self,
        pipeline: Pipeline,
        executor: StepExecutor,
        checkpoints: CheckpointStore,
        dlq: DeadLetterQueue,
        settings: BatchSettings | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.executor = executor
        self.checkpoints = checkpoints
        self.dlq = dlq
        self._settings = settings

    @property
    def settings(self) -> BatchSettings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    # ── Single item ──────────────────────────────────────────────────

    def _quarantine(self, item: BatchItem, error: BaseException, step: str | None) -> str | None:
        last_error = error.cause if isinstance(error, RequiredStepError) and error.cause else error
        entry = self.dlq.add(
            item_id=item.item_id,
            job_id=item.job_id,
            user_id=item.user_id,
            failure_reason=str(error),
            last_error=last_error,
            step=step,
            prospect_data=item.payload,
            checkpoints=self.checkpoints.get_all_checkpoints(item.item_id),
        )
        return entry.id if entry is not None else None

    async def run_item(self, item: BatchItem, *, abort: asyncio.Event | None = None) -> ItemRunResult:
        """Run the pipeline for one item.

        Never raises for step failures: a failed run is quarantined in the
        DLQ and reported as ``failed``; an aborted run is reported as
        ``aborted`` and left for a later resume.
        """
        started = time.monotonic()
        context = StepContext(
            item_id=item.item_id,
            job_id=item.job_id,
            user_id=item.user_id,
            credentials=item.credentials,
            payload=item.payload,
            checkpoints=self.checkpoints,
            abort_signal=abort,
        )

        async with LogContext(item_id=item.item_id, job_id=item.job_id, pipeline=self.pipeline.name):
            logger.info("item.started", steps=len(self.pipeline.steps))
            try:
                results = await self.pipeline.execute(self.executor, context)
            except RunAbortedError as e:
                logger.warning("item.aborted", error=str(e))
                return ItemRunResult(
                    item_id=item.item_id,
                    status=ItemStatus.ABORTED,
                    results=dict(context.previous_results),
                    error=str(e),
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            except RequiredStepError as e:
                dlq_id = self._quarantine(item, e, e.step)
                logger.error("item.failed", step=e.step, dead_letter_id=dlq_id, error=str(e))
                return ItemRunResult(
                    item_id=item.item_id,
                    status=ItemStatus.FAILED,
                    results=dict(e.results),
                    error=str(e),
                    dead_letter_id=dlq_id,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            except Exception as e:
                dlq_id = self._quarantine(item, e, None)
                logger.exception("item.crashed", dead_letter_id=dlq_id)
                return ItemRunResult(
                    item_id=item.item_id,
                    status=ItemStatus.FAILED,
                    results=dict(context.previous_results),
                    error=str(e),
                    dead_letter_id=dlq_id,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )

            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                "item.completed",
                duration_ms=duration_ms,
                tokens_used=sum(r.tokens_used for r in results.values()),
            )
            return ItemRunResult(
                item_id=item.item_id,
                status=ItemStatus.COMPLETED,
                results=results,
                duration_ms=duration_ms,
            )

    # ── Batch ────────────────────────────────────────────────────────

    async def run_batch(
        self,
        items: Iterable[BatchItem],
        *,
        concurrency: int | None = None,
        tier: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> BatchRunResult:
        """Run items concurrently, at most ``concurrency`` at a time.

        The limit is ``concurrency`` if given, else the tier's limit from
        settings, else the default concurrency.
        """
        items = list(items)
        limit = concurrency or self.settings.concurrency_for(tier)
        sem = asyncio.Semaphore(limit)
        batch_id = str(uuid.uuid4())
        started_at = datetime.now(UTC)

        logger.info(
            "batch.start",
            batch_id=batch_id,
            pipeline=self.pipeline.name,
            items=len(items),
            max_concurrency=limit,
        )

        async def _run_one(item: BatchItem) -> ItemRunResult:
            async with sem:
                return await self.run_item(item, abort=abort)

        outcomes = await asyncio.gather(*[_run_one(i) for i in items])

        result = BatchRunResult(
            batch_id=batch_id,
            items=list(outcomes),
            started_at=started_at,
            completed_at=datetime.now(UTC),
        )
        logger.info(
            "batch.complete",
            batch_id=batch_id,
            succeeded=result.succeeded,
            failed=result.failed,
            aborted=result.aborted,
            duration_seconds=result.duration_seconds,
        )
        return result

    # ── Operator actions ─────────────────────────────────────────────

    async def retry_dead_letter(
        self,
        dlq_id: str,
        user_id: str,
        *,
        reset: bool = False,
        notes: str | None = None,
    ) -> ItemRunResult | None:
        """Reprocess a pending dead letter entry.

        The entry is resolved as ``retried`` and the item is rerun from its
        stored payload, resuming from completed checkpoints unless ``reset``
        clears them first. A new failure creates a fresh entry.

        Returns:
            The rerun's result, or None if the entry is missing or resolved
        """
        entry = self.dlq.get(dlq_id)
        if entry is None or not entry.is_pending:
            logger.warning("dlq.retry_skipped", dlq_id=dlq_id, found=entry is not None)
            return None
        if not self.dlq.mark_for_retry(dlq_id, user_id, notes):
            return None

        if reset:
            self.checkpoints.clear_checkpoints(entry.item_id)

        logger.info("dlq.retry", dlq_id=dlq_id, item_id=entry.item_id, reset=reset)
        return await self.run_item(
            BatchItem(
                item_id=entry.item_id,
                job_id=entry.job_id,
                user_id=entry.user_id,
                payload=dict(entry.prospect_data),
            )
        )

    def recover_stale(self, threshold: float | None = None) -> list[str]:
        """Reset ``processing`` checkpoints older than ``threshold`` seconds.

        Returns:
            Ids of the items whose checkpoints were reset
        """
        if threshold is None:
            threshold = self.settings.stale_processing_threshold
        stale = self.checkpoints.get_stale_checkpoints(threshold)
        if not stale:
            return []
        self.checkpoints.reset_stale_checkpoints(threshold)
        item_ids = sorted({record.item_id for record in stale})
        logger.info("checkpoint.stale_recovered", items=len(item_ids), checkpoints=len(stale))
        return item_ids

"""Execution domain models.

Defines the records persisted by the batch core:
- CheckpointRecord: outcome of one (item, step) pair
- CompletionStatus: per-item rollup of checkpoint statuses
- DeadLetterItem: an item that exhausted retries on a required step
- DLQStats: triage aggregates over the dead letter queue

These models are used by the checkpoint stores, the DLQ and the runner.
"""

from __future__ import annotations

import traceback
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class CheckpointStatus(str, Enum):
    """Status of one (item, step) checkpoint."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class DLQResolution(str, Enum):
    """Resolution of a dead letter entry.

    ``pending`` is the only non-terminal value::

        PENDING → RETRIED | SKIPPED | MANUAL_FIX
    """

    PENDING = "pending"
    RETRIED = "retried"
    SKIPPED = "skipped"
    MANUAL_FIX = "manual_fix"


# Longest error message persisted on a failed checkpoint
MAX_ERROR_LENGTH = 1000


@dataclass
class CheckpointRecord:
    """Durable outcome of one step for one item.

    ``result_data`` is only set when completed, ``error_message`` only when
    failed and ``reason`` only when skipped.
    """

    item_id: str
    step_name: str
    status: CheckpointStatus
    result_data: dict[str, Any] | None = None
    tokens_used: int = 0
    duration_ms: int = 0
    error_message: str | None = None
    reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "item_id": self.item_id,
            "step_name": self.step_name,
            "status": self.status.value,
            "result_data": self.result_data,
            "tokens_used": self.tokens_used,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class CompletionStatus:
    """Counts of an item's checkpoints by status."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    completed_steps: list[str] = field(default_factory=list)

    @classmethod
    def from_records(cls, records: Iterable[CheckpointRecord]) -> CompletionStatus:
        status = cls()
        for record in records:
            status.total += 1
            current = getattr(status, record.status.value)
            setattr(status, record.status.value, current + 1)
            if record.status == CheckpointStatus.COMPLETED:
                status.completed_steps.append(record.step_name)
        return status

    def is_complete(self, required_steps: Iterable[str]) -> bool:
        """True when every required step has a completed checkpoint."""
        done = set(self.completed_steps)
        return all(step in done for step in required_steps)


@dataclass
class LastError:
    """The most recent terminal error of a dead-lettered item."""

    message: str
    stack: str | None = None
    step: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, error: BaseException | str, step: str | None = None) -> LastError:
        if isinstance(error, BaseException):
            stack = "".join(traceback.format_exception(error)) if error.__traceback__ else None
            return cls(message=str(error), stack=stack, step=step)
        return cls(message=str(error), step=step)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LastError:
        timestamp = data.get("timestamp")
        return cls(
            message=data.get("message", ""),
            stack=data.get("stack"),
            step=data.get("step"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "stack": self.stack,
            "step": self.step,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class DeadLetterItem:
    """An item that could not complete, kept for human review and reprocessing.

    Example:
        >>> entry = DeadLetterItem(
        ...     id="dlq-123",
        ...     item_id="item-7",
        ...     job_id="job-1",
        ...     user_id="user-1",
        ...     failure_reason="Required step 'search' failed: 503",
        ...     last_error=LastError(message="503", step="search"),
        ... )
    """

    id: str
    item_id: str
    job_id: str
    user_id: str
    failure_reason: str
    last_error: LastError
    failure_count: int = 1
    prospect_data: dict[str, Any] = field(default_factory=dict)
    checkpoints: list[dict[str, Any]] = field(default_factory=list)
    resolution: DLQResolution = DLQResolution.PENDING
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.resolution == DLQResolution.PENDING

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "item_id": self.item_id,
            "job_id": self.job_id,
            "user_id": self.user_id,
            "failure_reason": self.failure_reason,
            "failure_count": self.failure_count,
            "last_error": self.last_error.to_dict(),
            "prospect_data": self.prospect_data,
            "checkpoints": self.checkpoints,
            "resolution": self.resolution.value,
            "resolved_at": _iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class DLQStats:
    """Dead letter aggregates for triage dashboards."""

    total: int = 0
    pending: int = 0
    retried: int = 0
    skipped: int = 0
    manual_fix: int = 0
    oldest_pending: datetime | None = None
    common_errors: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "retried": self.retried,
            "skipped": self.skipped,
            "manual_fix": self.manual_fix,
            "oldest_pending": _iso(self.oldest_pending),
            "common_errors": [
                {"reason": reason, "count": count} for reason, count in self.common_errors
            ],
        }

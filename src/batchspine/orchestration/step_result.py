"""Step Result — the envelope every step function returns.

Manifesto:
    The executor has to decide, for every step call, whether to checkpoint
a completion, a skip or a failure, and how many tokens it cost.  Step
functions may return a ``StepResult`` explicitly or a plain value, which is
coerced with ``from_value``.

ARCHITECTURE
────────────
::

    StepResult
      ├── .ok(data, tokens_used, sources_found)  → completed
      ├── .fail(error)                            → failed
      ├── .skip(reason)                           → skipped
      ├── .from_value(any)                        → coerce plain returns
      └── .to_dict() / .from_dict()               → checkpoint payload

    Skip reasons written by the executor:
      circuit_breaker_open, skip_condition_met, unmet_dependencies: A, B

Example::

    async def search_news(ctx: StepContext) -> StepResult:
        hits = await news_client.search(ctx.payload["name"])
        return StepResult.ok(data={"articles": hits}, sources_found=len(hits))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

SKIP_CIRCUIT_OPEN = "circuit_breaker_open"
SKIP_CONDITION_MET = "skip_condition_met"
SKIP_UNMET_DEPENDENCIES = "unmet_dependencies"
ALREADY_COMPLETED = "already_completed"


def unmet_dependencies_reason(names: list[str]) -> str:
    return f"{SKIP_UNMET_DEPENDENCIES}: {', '.join(names)}"


class StepStatus(str, Enum):
    """Outcome of one step call."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    """
    Result from executing a pipeline step.

    Attributes:
        status: completed, failed or skipped
        data: Step output, available to later steps via previous_results
        error: Error message when failed
        reason: Why the step was skipped
        tokens_used: LLM tokens consumed (accounting)
        sources_found: Number of sources the step found (accounting)
        duration_ms: Wall-clock time, filled in by the executor
    """

    status: StepStatus
    data: Any = None
    error: str | None = None
    reason: str | None = None
    tokens_used: int = 0
    sources_found: int = 0
    duration_ms: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.status = StepStatus(self.status)
        if self.status == StepStatus.FAILED and not self.error:
            self.error = "Step failed without error message"

    # =========================================================================
    # Factories
    # =========================================================================

    @classmethod
    def ok(cls, data: Any = None, tokens_used: int = 0, sources_found: int = 0) -> StepResult:
        """Create a completed result."""
        return cls(
            status=StepStatus.COMPLETED,
            data=data,
            tokens_used=tokens_used,
            sources_found=sources_found,
        )

    @classmethod
    def fail(cls, error: str | BaseException) -> StepResult:
        """Create a failed result."""
        return cls(status=StepStatus.FAILED, error=str(error))

    @classmethod
    def skip(cls, reason: str) -> StepResult:
        """Create a skipped result (no work done)."""
        return cls(status=StepStatus.SKIPPED, reason=reason)

    @classmethod
    def from_value(cls, value: Any) -> StepResult:
        """Coerce an arbitrary return value into a StepResult.

        ========== ===========================================================
        Type       Behaviour
        ========== ===========================================================
        StepResult Returned as-is.
        None       ``ok()`` with no data.
        bool       ``ok()`` if True, ``fail("Step returned False")`` if False.
        other      ``ok(data=value)``
        ========== ===========================================================
        """
        if isinstance(value, StepResult):
            return value
        if value is None:
            return cls.ok()
        if isinstance(value, bool):
            return cls.ok() if value else cls.fail("Step returned False")
        return cls.ok(data=value)

    @property
    def success(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @property
    def skipped(self) -> bool:
        return self.status == StepStatus.SKIPPED

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Serialize for checkpointing/logging."""
        result: dict[str, Any] = {
            "status": self.status.value,
            "data": self.data,
            "tokens_used": self.tokens_used,
            "sources_found": self.sources_found,
            "duration_ms": self.duration_ms,
        }
        if self.error:
            result["error"] = self.error
        if self.reason:
            result["reason"] = self.reason
        if self.metadata:
            result["metadata"] = self.metadata
        return result

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StepResult:
        """Rebuild a result from a checkpoint payload."""
        return cls(
            status=StepStatus(payload.get("status", StepStatus.COMPLETED.value)),
            data=payload.get("data"),
            error=payload.get("error"),
            reason=payload.get("reason"),
            tokens_used=payload.get("tokens_used", 0),
            sources_found=payload.get("sources_found", 0),
            duration_ms=payload.get("duration_ms", 0),
            metadata=payload.get("metadata") or {},
        )

    def __repr__(self) -> str:
        detail = self.error or self.reason or ""
        return f"StepResult({self.status.value}{', ' + detail if detail else ''})"

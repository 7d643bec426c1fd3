"""Checkpoint store — per-(item, step) outcome records for resume and caching.

WHY
───
A batch of thousands of items runs for hours and will be interrupted.  The
checkpoint store is the authority on what already happened: a step with a
``completed`` checkpoint is never paid for twice, and a ``processing`` row
that stopped moving marks a run that crashed mid-step.

ARCHITECTURE
────────────
::

    CheckpointStore (ABC)                public contract, never raises
      ├── InMemoryCheckpointStore        dict keyed on (item_id, step_name)
      └── SQLCheckpointStore(conn)       batch_checkpoints table, DB-API

    Subclasses implement the storage primitives (_upsert, _fetch, ...).
    The base class wraps every call: a storage failure is logged and
    swallowed, degrading to "no checkpoint" (re-execution) rather than
    aborting the pipeline.

    Writes are upserts keyed on (item_id, step_name): a later write fully
    replaces status, result, error and reason (last write wins).

BEST PRACTICES
──────────────
- Call ``clear_checkpoints(item_id)`` before a manual retry that must
  start from scratch; otherwise retries resume from completed steps.
- Run ``reset_stale_checkpoints()`` at startup to recover crashed runs.

Related modules:
    models.py  — CheckpointRecord, CompletionStatus
    schema.py  — batch_checkpoints DDL

Example::

    store = SQLCheckpointStore(conn)
    store.mark_processing("item-1", "search")
    store.save_result("item-1", "search", {"status": "completed"}, tokens_used=120)
    assert store.has_completed("item-1", "search")
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from batchspine.core.logging import get_logger
from batchspine.core.schema import open_batch_database
from batchspine.core.settings import BatchSettings

from .models import (
    MAX_ERROR_LENGTH,
    CheckpointRecord,
    CheckpointStatus,
    CompletionStatus,
    utcnow,
)

logger = get_logger(__name__)

# Five minutes without an update marks a processing row as abandoned
DEFAULT_STALE_THRESHOLD = 300.0


class CheckpointStore(ABC):
    """Durable (item, step) status records.

    Every public method is non-fatal: exceptions from the storage layer are
    logged and the method returns its "nothing known" value.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    # ── Storage primitives (may raise) ───────────────────────────────

    @abstractmethod
    def _upsert(self, record: CheckpointRecord) -> None:
        """Insert or fully replace the row for (item_id, step_name)."""
        ...

    @abstractmethod
    def _fetch(self, item_id: str, step_name: str) -> CheckpointRecord | None:
        ...

    @abstractmethod
    def _fetch_item(self, item_id: str) -> list[CheckpointRecord]:
        """All rows for an item, oldest first."""
        ...

    @abstractmethod
    def _delete_item(self, item_id: str) -> int:
        ...

    @abstractmethod
    def _fetch_stale(self, cutoff: datetime) -> list[CheckpointRecord]:
        ...

    @abstractmethod
    def _reset_stale(self, cutoff: datetime, now: datetime) -> int:
        ...

    # ── Writes ───────────────────────────────────────────────────────

    def _write(self, item_id: str, step_name: str, status: CheckpointStatus, **values: Any) -> bool:
        now = self._clock()
        record = CheckpointRecord(
            item_id=item_id,
            step_name=step_name,
            status=status,
            created_at=now,
            updated_at=now,
            **values,
        )
        try:
            self._upsert(record)
        except Exception as e:
            logger.error(
                "checkpoint.write_failed",
                item_id=item_id,
                step=step_name,
                status=status.value,
                error=str(e),
            )
            return False
        return True

    def save_result(
        self,
        item_id: str,
        step_name: str,
        result: dict[str, Any],
        *,
        tokens_used: int = 0,
        duration_ms: int = 0,
    ) -> bool:
        """Record a completed step and its result payload."""
        return self._write(
            item_id,
            step_name,
            CheckpointStatus.COMPLETED,
            result_data=result,
            tokens_used=tokens_used,
            duration_ms=duration_ms,
        )

    def mark_failed(
        self,
        item_id: str,
        step_name: str,
        error: BaseException | str,
        *,
        duration_ms: int = 0,
    ) -> bool:
        """Record a terminal step failure (message truncated to 1000 chars)."""
        return self._write(
            item_id,
            step_name,
            CheckpointStatus.FAILED,
            error_message=str(error)[:MAX_ERROR_LENGTH],
            duration_ms=duration_ms,
        )

    def mark_skipped(self, item_id: str, step_name: str, reason: str) -> bool:
        return self._write(item_id, step_name, CheckpointStatus.SKIPPED, reason=reason)

    def mark_processing(self, item_id: str, step_name: str) -> bool:
        """Leave a crash-detection breadcrumb before a step runs."""
        return self._write(item_id, step_name, CheckpointStatus.PROCESSING)

    def clear_checkpoints(self, item_id: str) -> int:
        """Delete every checkpoint of an item (full reset for manual retry)."""
        try:
            deleted = self._delete_item(item_id)
        except Exception as e:
            logger.error("checkpoint.clear_failed", item_id=item_id, error=str(e))
            return 0
        logger.info("checkpoint.cleared", item_id=item_id, deleted=deleted)
        return deleted

    def reset_stale_checkpoints(self, threshold: float = DEFAULT_STALE_THRESHOLD) -> int:
        """Move stale ``processing`` rows back to ``pending``."""
        now = self._clock()
        try:
            count = self._reset_stale(now - timedelta(seconds=threshold), now)
        except Exception as e:
            logger.error("checkpoint.reset_stale_failed", error=str(e))
            return 0
        if count:
            logger.warning("checkpoint.stale_reset", count=count, threshold=threshold)
        return count

    # ── Reads ────────────────────────────────────────────────────────

    def _get(self, item_id: str, step_name: str) -> CheckpointRecord | None:
        try:
            return self._fetch(item_id, step_name)
        except Exception as e:
            logger.error("checkpoint.read_failed", item_id=item_id, step=step_name, error=str(e))
            return None

    def has_completed(self, item_id: str, step_name: str) -> bool:
        record = self._get(item_id, step_name)
        return record is not None and record.status == CheckpointStatus.COMPLETED

    def get_result(self, item_id: str, step_name: str) -> dict[str, Any] | None:
        """Result payload of a completed step, else None."""
        record = self._get(item_id, step_name)
        if record is None or record.status != CheckpointStatus.COMPLETED:
            return None
        return record.result_data

    def get_checkpoint(self, item_id: str, step_name: str) -> CheckpointRecord | None:
        return self._get(item_id, step_name)

    def get_all_checkpoints(self, item_id: str) -> list[CheckpointRecord]:
        try:
            return self._fetch_item(item_id)
        except Exception as e:
            logger.error("checkpoint.read_failed", item_id=item_id, error=str(e))
            return []

    def get_completion_status(self, item_id: str) -> CompletionStatus:
        return CompletionStatus.from_records(self.get_all_checkpoints(item_id))

    def get_stale_checkpoints(self, threshold: float = DEFAULT_STALE_THRESHOLD) -> list[CheckpointRecord]:
        """Rows stuck in ``processing`` for longer than ``threshold`` seconds."""
        cutoff = self._clock() - timedelta(seconds=threshold)
        try:
            return self._fetch_stale(cutoff)
        except Exception as e:
            logger.error("checkpoint.stale_query_failed", error=str(e))
            return []

    def get_total_tokens_used(self, item_id: str) -> int:
        return sum(r.tokens_used or 0 for r in self.get_all_checkpoints(item_id))

    def get_last_completed_step(self, item_id: str) -> str | None:
        completed = [
            r for r in self.get_all_checkpoints(item_id)
            if r.status == CheckpointStatus.COMPLETED
        ]
        if not completed:
            return None
        return max(completed, key=lambda r: r.updated_at).step_name


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store for tests and single-shot runs."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock)
        self._records: dict[tuple[str, str], CheckpointRecord] = {}

    def _upsert(self, record: CheckpointRecord) -> None:
        key = (record.item_id, record.step_name)
        existing = self._records.get(key)
        if existing is not None:
            record = replace(record, id=existing.id, created_at=existing.created_at)
        self._records[key] = record

    def _fetch(self, item_id: str, step_name: str) -> CheckpointRecord | None:
        record = self._records.get((item_id, step_name))
        return replace(record) if record else None

    def _fetch_item(self, item_id: str) -> list[CheckpointRecord]:
        return [replace(r) for (item, _), r in self._records.items() if item == item_id]

    def _delete_item(self, item_id: str) -> int:
        keys = [key for key in self._records if key[0] == item_id]
        for key in keys:
            del self._records[key]
        return len(keys)

    def _is_stale(self, record: CheckpointRecord, cutoff: datetime) -> bool:
        return record.status == CheckpointStatus.PROCESSING and record.updated_at < cutoff

    def _fetch_stale(self, cutoff: datetime) -> list[CheckpointRecord]:
        return [replace(r) for r in self._records.values() if self._is_stale(r, cutoff)]

    def _reset_stale(self, cutoff: datetime, now: datetime) -> int:
        stale = [key for key, r in self._records.items() if self._is_stale(r, cutoff)]
        for key in stale:
            self._records[key] = replace(
                self._records[key], status=CheckpointStatus.PENDING, updated_at=now
            )
        return len(stale)


def _ts(value: datetime) -> str:
    """Fixed-width ISO timestamp so string comparison orders correctly."""
    return value.isoformat(timespec="microseconds")


_COLUMNS = """
    id, item_id, step_name, status, result_data, tokens_used,
    duration_ms, error_message, reason, created_at, updated_at
"""


class SQLCheckpointStore(CheckpointStore):
    """Checkpoint store over the ``batch_checkpoints`` table.

    Upserts are a single ``INSERT ... ON CONFLICT(item_id, step_name) DO
    UPDATE`` statement, so concurrent writers for the same key resolve to
    last-write-wins without a read-modify-write.
    """

    def __init__(self, conn, clock: Callable[[], datetime] = utcnow):
        """Initialize with a database connection.

        Args:
            conn: DB-API connection (sqlite3.Connection) with the batch tables
            clock: Source of timezone-aware UTC timestamps
        """
        super().__init__(clock)
        self._conn = conn

    @classmethod
    def from_settings(
        cls, settings: BatchSettings | None = None, clock: Callable[[], datetime] = utcnow
    ):
        """Open ``settings.database_path`` (created if missing) and wrap it."""
        return cls(open_batch_database(settings=settings), clock=clock)

    def _upsert(self, record: CheckpointRecord) -> None:
        cursor = self._conn.cursor()
        cursor.execute(
            f"""
            INSERT INTO batch_checkpoints ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(item_id, step_name) DO UPDATE SET
                status = excluded.status,
                result_data = excluded.result_data,
                tokens_used = excluded.tokens_used,
                duration_ms = excluded.duration_ms,
                error_message = excluded.error_message,
                reason = excluded.reason,
                updated_at = excluded.updated_at
            """,
            (
                record.id,
                record.item_id,
                record.step_name,
                record.status.value,
                json.dumps(record.result_data, default=str) if record.result_data is not None else None,
                record.tokens_used,
                record.duration_ms,
                record.error_message,
                record.reason,
                _ts(record.created_at),
                _ts(record.updated_at),
            ),
        )
        self._conn.commit()

    def _fetch(self, item_id: str, step_name: str) -> CheckpointRecord | None:
        cursor = self._conn.cursor()
        cursor.execute(
            f"SELECT {_COLUMNS} FROM batch_checkpoints WHERE item_id = ? AND step_name = ?",
            (item_id, step_name),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def _fetch_item(self, item_id: str) -> list[CheckpointRecord]:
        cursor = self._conn.cursor()
        cursor.execute(
            f"""
            SELECT {_COLUMNS} FROM batch_checkpoints
            WHERE item_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (item_id,),
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def _delete_item(self, item_id: str) -> int:
        cursor = self._conn.cursor()
        cursor.execute("DELETE FROM batch_checkpoints WHERE item_id = ?", (item_id,))
        self._conn.commit()
        return cursor.rowcount

    def _fetch_stale(self, cutoff: datetime) -> list[CheckpointRecord]:
        cursor = self._conn.cursor()
        cursor.execute(
            f"""
            SELECT {_COLUMNS} FROM batch_checkpoints
            WHERE status = ? AND updated_at < ?
            ORDER BY updated_at ASC
            """,
            (CheckpointStatus.PROCESSING.value, _ts(cutoff)),
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def _reset_stale(self, cutoff: datetime, now: datetime) -> int:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            UPDATE batch_checkpoints
            SET status = ?, updated_at = ?
            WHERE status = ? AND updated_at < ?
            """,
            (
                CheckpointStatus.PENDING.value,
                _ts(now),
                CheckpointStatus.PROCESSING.value,
                _ts(cutoff),
            ),
        )
        self._conn.commit()
        return cursor.rowcount

    def _row_to_record(self, row: tuple) -> CheckpointRecord:
        """Convert a database row to a CheckpointRecord."""
        return CheckpointRecord(
            id=row[0],
            item_id=row[1],
            step_name=row[2],
            status=CheckpointStatus(row[3]),
            result_data=json.loads(row[4]) if row[4] else None,
            tokens_used=row[5] or 0,
            duration_ms=row[6] or 0,
            error_message=row[7],
            reason=row[8],
            created_at=datetime.fromisoformat(row[9]),
            updated_at=datetime.fromisoformat(row[10]),
        )

"""Dead Letter Queue (DLQ) — quarantine, inspect and resolve failed items.

WHY
───
An item whose required step exhausts its retries must not disappear
silently, and must not be retried forever either.  The DLQ keeps the
failure reason, the last error, the original payload and a full
checkpoint snapshot, so a human (or an automated retry job) can resume
the item from its last completed step.

ARCHITECTURE
────────────
::

    DeadLetterQueue (ABC)               public contract, never raises
      ├── InMemoryDeadLetterQueue
      └── SQLDeadLetterQueue(conn)      batch_dead_letters table

      .add(item_id, job_id, user_id, failure_reason, last_error, ...)
            pending entry for item exists → failure_count += 1, overwrite
            otherwise                     → new entry, failure_count = 1
      .mark_for_retry / .mark_as_skipped / .mark_as_manual_fix
            pending → terminal resolution, stamps resolver and time
      .get_stats(user_id)               counts, oldest pending, top errors
      .cleanup(older_than_days)         purge resolved entries

    At most one pending entry exists per item_id.  A retried item that
    fails again finds no pending entry and starts a fresh one.

BEST PRACTICES
──────────────
- Run ``cleanup()`` from a scheduled job to bound table growth.
- PipelineRunner routes required-step failures here automatically.

Related modules:
    models.py  — DeadLetterItem, LastError, DLQStats
    schema.py  — batch_dead_letters DDL

Example::

    dlq = SQLDeadLetterQueue(conn)
    entry = dlq.add(
        item_id="item-7",
        job_id="job-1",
        user_id="user-1",
        failure_reason="Required step 'search' failed: 503",
        last_error=error,
        step="search",
    )
    dlq.mark_for_retry(entry.id, user_id="ops@example.com")
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from batchspine.core.logging import get_logger
from batchspine.core.schema import open_batch_database
from batchspine.core.settings import BatchSettings, get_settings

from .models import (
    CheckpointRecord,
    DeadLetterItem,
    DLQResolution,
    DLQStats,
    LastError,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

# Prefix length used to group similar failure reasons
ERROR_GROUP_PREFIX = 100
COMMON_ERRORS_LIMIT = 10


def _snapshot(checkpoints: Iterable[CheckpointRecord | dict[str, Any]] | None) -> list[dict[str, Any]]:
    if not checkpoints:
        return []
    return [c.to_dict() if isinstance(c, CheckpointRecord) else dict(c) for c in checkpoints]


def build_stats(entries: Iterable[DeadLetterItem]) -> DLQStats:
    """Aggregate entries into DLQStats."""
    stats = DLQStats()
    reasons: Counter[str] = Counter()
    for entry in entries:
        stats.total += 1
        current = getattr(stats, entry.resolution.value)
        setattr(stats, entry.resolution.value, current + 1)
        if entry.is_pending and (
            stats.oldest_pending is None or entry.created_at < stats.oldest_pending
        ):
            stats.oldest_pending = entry.created_at
        reasons[entry.failure_reason[:ERROR_GROUP_PREFIX]] += 1
    stats.common_errors = reasons.most_common(COMMON_ERRORS_LIMIT)
    return stats


class DeadLetterQueue(ABC):
    """Terminal-failure archive with a resolution workflow.

    Storage failures are logged and swallowed; callers get None, False,
    empty results or 0.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    # ── Storage primitives (may raise) ───────────────────────────────

    @abstractmethod
    def _insert(self, entry: DeadLetterItem) -> None:
        ...

    @abstractmethod
    def _update_failure(self, entry: DeadLetterItem) -> None:
        """Persist failure_count, failure_reason, last_error, checkpoints, updated_at."""
        ...

    @abstractmethod
    def _resolve(
        self, dlq_id: str, resolution: DLQResolution, user_id: str, notes: str | None, now: datetime
    ) -> bool:
        """Move a pending entry to ``resolution``; False if none matched."""
        ...

    @abstractmethod
    def _fetch(self, dlq_id: str) -> DeadLetterItem | None:
        ...

    @abstractmethod
    def _fetch_pending(self, item_id: str) -> DeadLetterItem | None:
        ...

    @abstractmethod
    def _fetch_where(
        self,
        *,
        user_id: str | None = None,
        job_id: str | None = None,
        resolution: DLQResolution | None = None,
        limit: int | None = None,
    ) -> list[DeadLetterItem]:
        """Entries matching the filters, newest first."""
        ...

    @abstractmethod
    def _delete_resolved_before(self, cutoff: datetime) -> int:
        ...

    # ── Public contract ──────────────────────────────────────────────

    def add(
        self,
        item_id: str,
        job_id: str,
        user_id: str,
        failure_reason: str,
        last_error: BaseException | str | LastError,
        step: str | None = None,
        prospect_data: dict[str, Any] | None = None,
        checkpoints: Iterable[CheckpointRecord | dict[str, Any]] | None = None,
    ) -> DeadLetterItem | None:
        """Quarantine an item, or accumulate onto its pending entry.

        Returns:
            The created or updated entry, or None if the store failed
        """
        now = self._clock()
        if isinstance(last_error, LastError):
            error = replace(last_error, timestamp=now, step=step or last_error.step)
        else:
            error = LastError.from_exception(last_error, step)
            error.timestamp = now
        snapshot = _snapshot(checkpoints)

        try:
            existing = self._fetch_pending(item_id)
            if existing is not None:
                entry = replace(
                    existing,
                    failure_count=existing.failure_count + 1,
                    failure_reason=failure_reason,
                    last_error=error,
                    checkpoints=snapshot,
                    updated_at=now,
                )
                self._update_failure(entry)
                logger.warning(
                    "dlq.failure_accumulated",
                    dlq_id=entry.id,
                    item_id=item_id,
                    failure_count=entry.failure_count,
                )
                return entry

            entry = DeadLetterItem(
                id=new_id(),
                item_id=item_id,
                job_id=job_id,
                user_id=user_id,
                failure_reason=failure_reason,
                last_error=error,
                failure_count=1,
                prospect_data=dict(prospect_data or {}),
                checkpoints=snapshot,
                created_at=now,
                updated_at=now,
            )
            self._insert(entry)
        except Exception as e:
            logger.error("dlq.add_failed", item_id=item_id, job_id=job_id, error=str(e))
            return None

        logger.warning(
            "dlq.added",
            dlq_id=entry.id,
            item_id=item_id,
            job_id=job_id,
            step=error.step,
            reason=failure_reason[:ERROR_GROUP_PREFIX],
        )
        return entry

    def _mark(self, dlq_id: str, resolution: DLQResolution, user_id: str, notes: str | None) -> bool:
        try:
            updated = self._resolve(dlq_id, resolution, user_id, notes, self._clock())
        except Exception as e:
            logger.error("dlq.resolve_failed", dlq_id=dlq_id, resolution=resolution.value, error=str(e))
            return False
        if updated:
            logger.info("dlq.resolved", dlq_id=dlq_id, resolution=resolution.value, resolved_by=user_id)
        return updated

    def mark_for_retry(self, dlq_id: str, user_id: str, notes: str | None = None) -> bool:
        """Resolve as ``retried``; the caller is expected to reprocess the item."""
        return self._mark(dlq_id, DLQResolution.RETRIED, user_id, notes)

    def mark_as_skipped(self, dlq_id: str, user_id: str, notes: str | None = None) -> bool:
        return self._mark(dlq_id, DLQResolution.SKIPPED, user_id, notes)

    def mark_as_manual_fix(self, dlq_id: str, user_id: str, notes: str | None = None) -> bool:
        return self._mark(dlq_id, DLQResolution.MANUAL_FIX, user_id, notes)

    def get(self, dlq_id: str) -> DeadLetterItem | None:
        try:
            return self._fetch(dlq_id)
        except Exception as e:
            logger.error("dlq.read_failed", dlq_id=dlq_id, error=str(e))
            return None

    def find_pending(self, item_id: str) -> DeadLetterItem | None:
        try:
            return self._fetch_pending(item_id)
        except Exception as e:
            logger.error("dlq.read_failed", item_id=item_id, error=str(e))
            return None

    def _query(self, **filters: Any) -> list[DeadLetterItem]:
        try:
            return self._fetch_where(**filters)
        except Exception as e:
            logger.error("dlq.query_failed", error=str(e))
            return []

    def get_by_user(
        self,
        user_id: str,
        resolution: DLQResolution | str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterItem]:
        """Entries owned by a user, newest first."""
        return self._query(
            user_id=user_id,
            resolution=DLQResolution(resolution) if resolution else None,
            limit=limit,
        )

    def get_by_job(self, job_id: str) -> list[DeadLetterItem]:
        return self._query(job_id=job_id)

    def get_stats(self, user_id: str | None = None) -> DLQStats:
        """Counts by resolution, oldest pending entry and most common failure reasons."""
        return build_stats(self._query(user_id=user_id))

    def cleanup(self, older_than_days: int | None = None) -> int:
        """Delete resolved entries whose resolution is older than the retention.

        ``older_than_days`` defaults to ``BatchSettings.dlq_retention_days``.
        """
        if older_than_days is None:
            older_than_days = get_settings().dlq_retention_days
        cutoff = self._clock() - timedelta(days=older_than_days)
        try:
            deleted = self._delete_resolved_before(cutoff)
        except Exception as e:
            logger.error("dlq.cleanup_failed", error=str(e))
            return 0
        logger.info("dlq.cleanup", deleted=deleted, older_than_days=older_than_days)
        return deleted


class InMemoryDeadLetterQueue(DeadLetterQueue):
    """Process-local DLQ for tests and single-shot runs."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock)
        self._entries: dict[str, DeadLetterItem] = {}

    def _insert(self, entry: DeadLetterItem) -> None:
        self._entries[entry.id] = replace(entry)

    def _update_failure(self, entry: DeadLetterItem) -> None:
        self._entries[entry.id] = replace(entry)

    def _resolve(
        self, dlq_id: str, resolution: DLQResolution, user_id: str, notes: str | None, now: datetime
    ) -> bool:
        entry = self._entries.get(dlq_id)
        if entry is None or not entry.is_pending:
            return False
        self._entries[dlq_id] = replace(
            entry,
            resolution=resolution,
            resolved_at=now,
            resolved_by=user_id,
            resolution_notes=notes,
            updated_at=now,
        )
        return True

    def _fetch(self, dlq_id: str) -> DeadLetterItem | None:
        entry = self._entries.get(dlq_id)
        return replace(entry) if entry else None

    def _fetch_pending(self, item_id: str) -> DeadLetterItem | None:
        for entry in self._entries.values():
            if entry.item_id == item_id and entry.is_pending:
                return replace(entry)
        return None

    def _fetch_where(
        self,
        *,
        user_id: str | None = None,
        job_id: str | None = None,
        resolution: DLQResolution | None = None,
        limit: int | None = None,
    ) -> list[DeadLetterItem]:
        matches = [
            replace(e)
            for e in self._entries.values()
            if (user_id is None or e.user_id == user_id)
            and (job_id is None or e.job_id == job_id)
            and (resolution is None or e.resolution == resolution)
        ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches[:limit] if limit is not None else matches

    def _delete_resolved_before(self, cutoff: datetime) -> int:
        doomed = [
            dlq_id
            for dlq_id, e in self._entries.items()
            if not e.is_pending and e.resolved_at is not None and e.resolved_at < cutoff
        ]
        for dlq_id in doomed:
            del self._entries[dlq_id]
        return len(doomed)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


_COLUMNS = """
    id, item_id, job_id, user_id, failure_reason, failure_count,
    last_error, prospect_data, checkpoints, resolution, resolved_at,
    resolved_by, resolution_notes, created_at, updated_at
"""


class SQLDeadLetterQueue(DeadLetterQueue):
    """DLQ over the ``batch_dead_letters`` table."""

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

    def _insert(self, entry: DeadLetterItem) -> None:
        cursor = self._conn.cursor()
        cursor.execute(
            f"""
            INSERT INTO batch_dead_letters ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.item_id,
                entry.job_id,
                entry.user_id,
                entry.failure_reason,
                entry.failure_count,
                json.dumps(entry.last_error.to_dict()),
                json.dumps(entry.prospect_data, default=str),
                json.dumps(entry.checkpoints, default=str),
                entry.resolution.value,
                _ts(entry.resolved_at),
                entry.resolved_by,
                entry.resolution_notes,
                _ts(entry.created_at),
                _ts(entry.updated_at),
            ),
        )
        self._conn.commit()

    def _update_failure(self, entry: DeadLetterItem) -> None:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            UPDATE batch_dead_letters
            SET failure_count = ?,
                failure_reason = ?,
                last_error = ?,
                checkpoints = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                entry.failure_count,
                entry.failure_reason,
                json.dumps(entry.last_error.to_dict()),
                json.dumps(entry.checkpoints, default=str),
                _ts(entry.updated_at),
                entry.id,
            ),
        )
        self._conn.commit()

    def _resolve(
        self, dlq_id: str, resolution: DLQResolution, user_id: str, notes: str | None, now: datetime
    ) -> bool:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            UPDATE batch_dead_letters
            SET resolution = ?, resolved_at = ?, resolved_by = ?,
                resolution_notes = ?, updated_at = ?
            WHERE id = ? AND resolution = ?
            """,
            (
                resolution.value,
                _ts(now),
                user_id,
                notes,
                _ts(now),
                dlq_id,
                DLQResolution.PENDING.value,
            ),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def _fetch(self, dlq_id: str) -> DeadLetterItem | None:
        cursor = self._conn.cursor()
        cursor.execute(f"SELECT {_COLUMNS} FROM batch_dead_letters WHERE id = ?", (dlq_id,))
        row = cursor.fetchone()
        return self._row_to_entry(row) if row else None

    def _fetch_pending(self, item_id: str) -> DeadLetterItem | None:
        cursor = self._conn.cursor()
        cursor.execute(
            f"""
            SELECT {_COLUMNS} FROM batch_dead_letters
            WHERE item_id = ? AND resolution = ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (item_id, DLQResolution.PENDING.value),
        )
        row = cursor.fetchone()
        return self._row_to_entry(row) if row else None

    def _fetch_where(
        self,
        *,
        user_id: str | None = None,
        job_id: str | None = None,
        resolution: DLQResolution | None = None,
        limit: int | None = None,
    ) -> list[DeadLetterItem]:
        query = f"SELECT {_COLUMNS} FROM batch_dead_letters WHERE 1=1"
        params: list[Any] = []

        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if job_id is not None:
            query += " AND job_id = ?"
            params.append(job_id)
        if resolution is not None:
            query += " AND resolution = ?"
            params.append(resolution.value)

        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = self._conn.cursor()
        cursor.execute(query, params)
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def _delete_resolved_before(self, cutoff: datetime) -> int:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            DELETE FROM batch_dead_letters
            WHERE resolution != ? AND resolved_at IS NOT NULL AND resolved_at < ?
            """,
            (DLQResolution.PENDING.value, _ts(cutoff)),
        )
        self._conn.commit()
        return cursor.rowcount

    def _row_to_entry(self, row: tuple) -> DeadLetterItem:
        """Convert a database row to a DeadLetterItem."""
        return DeadLetterItem(
            id=row[0],
            item_id=row[1],
            job_id=row[2],
            user_id=row[3],
            failure_reason=row[4],
            failure_count=row[5] or 1,
            last_error=LastError.from_dict(json.loads(row[6])) if row[6] else LastError(message=""),
            prospect_data=json.loads(row[7]) if row[7] else {},
            checkpoints=json.loads(row[8]) if row[8] else [],
            resolution=DLQResolution(row[9]),
            resolved_at=_dt(row[10]),
            resolved_by=row[11],
            resolution_notes=row[12],
            created_at=_dt(row[13]),
            updated_at=_dt(row[14]),
        )

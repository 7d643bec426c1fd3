"""Tests for the dead letter queue (in-memory and SQLite)."""

import pytest

from batchspine.core.errors import NetworkError
from batchspine.execution.dlq import InMemoryDeadLetterQueue, SQLDeadLetterQueue
from batchspine.execution.models import (
    CheckpointRecord,
    CheckpointStatus,
    DeadLetterItem,
    DLQResolution,
    LastError,
)


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture(params=["memory", "sqlite"])
def dlq(request, conn, utc_clock):
    if request.param == "memory":
        return InMemoryDeadLetterQueue(clock=utc_clock)
    return SQLDeadLetterQueue(conn, clock=utc_clock)


def _add(dlq, item_id="i1", job_id="j1", user_id="u1", reason="Required step 'search' failed: 503", **kwargs):
    return dlq.add(
        item_id=item_id,
        job_id=job_id,
        user_id=user_id,
        failure_reason=reason,
        last_error=kwargs.pop("last_error", NetworkError("503")),
        step=kwargs.pop("step", "search"),
        **kwargs,
    )


# ── Add ──────────────────────────────────────────────────────────────────


class TestAdd:
    def test_add_returns_entry(self, dlq, utc_clock):
        entry = _add(dlq, prospect_data={"name": "Acme"})
        assert isinstance(entry, DeadLetterItem)
        assert entry.item_id == "i1"
        assert entry.failure_count == 1
        assert entry.resolution == DLQResolution.PENDING
        assert entry.last_error.message == "503"
        assert entry.last_error.step == "search"
        assert entry.last_error.timestamp == utc_clock.now
        assert entry.prospect_data == {"name": "Acme"}

    def test_round_trip_through_storage(self, dlq):
        snapshot = [CheckpointRecord(item_id="i1", step_name="search", status=CheckpointStatus.FAILED)]
        entry = _add(dlq, prospect_data={"name": "Acme"}, checkpoints=snapshot)

        stored = dlq.get(entry.id)
        assert stored.item_id == "i1"
        assert stored.prospect_data == {"name": "Acme"}
        assert stored.last_error.step == "search"
        assert stored.checkpoints[0]["step_name"] == "search"
        assert stored.checkpoints[0]["status"] == "failed"

    def test_double_add_accumulates(self, dlq, utc_clock):
        first = _add(dlq, reason="first failure")
        utc_clock.advance(minutes=5)
        second = _add(dlq, reason="second failure", last_error="timeout", step="verify")

        assert second.id == first.id
        assert second.failure_count == 2
        stored = dlq.get(first.id)
        assert stored.failure_count == 2
        assert stored.failure_reason == "second failure"
        assert stored.last_error.message == "timeout"
        assert stored.last_error.step == "verify"
        assert stored.updated_at > stored.created_at

    def test_add_after_resolution_starts_fresh(self, dlq):
        first = _add(dlq)
        dlq.mark_for_retry(first.id, "ops")

        second = _add(dlq)
        assert second.id != first.id
        assert second.failure_count == 1

    def test_add_does_not_mutate_caller_error(self, dlq):
        error = LastError(message="boom", step="original")
        _add(dlq, last_error=error, step="search")
        assert error.step == "original"

    def test_find_pending(self, dlq):
        entry = _add(dlq)
        assert dlq.find_pending("i1").id == entry.id
        assert dlq.find_pending("other") is None


# ── Resolution ───────────────────────────────────────────────────────────


class TestResolution:
    @pytest.mark.parametrize(
        "method, resolution",
        [
            ("mark_for_retry", DLQResolution.RETRIED),
            ("mark_as_skipped", DLQResolution.SKIPPED),
            ("mark_as_manual_fix", DLQResolution.MANUAL_FIX),
        ],
    )
    def test_resolve(self, dlq, utc_clock, method, resolution):
        entry = _add(dlq)
        utc_clock.advance(hours=1)

        assert getattr(dlq, method)(entry.id, "ops@example.com", "checked") is True

        stored = dlq.get(entry.id)
        assert stored.resolution == resolution
        assert stored.resolved_by == "ops@example.com"
        assert stored.resolution_notes == "checked"
        assert stored.resolved_at == utc_clock.now
        assert stored.is_pending is False

    def test_resolution_is_terminal(self, dlq):
        entry = _add(dlq)
        assert dlq.mark_as_skipped(entry.id, "ops") is True
        assert dlq.mark_for_retry(entry.id, "ops") is False
        assert dlq.get(entry.id).resolution == DLQResolution.SKIPPED

    def test_resolve_unknown(self, dlq):
        assert dlq.mark_for_retry("missing", "ops") is False


# ── Queries ──────────────────────────────────────────────────────────────


class TestQueries:
    def test_get_by_user_newest_first(self, dlq, utc_clock):
        _add(dlq, item_id="a")
        utc_clock.advance(seconds=1)
        _add(dlq, item_id="b")
        utc_clock.advance(seconds=1)
        _add(dlq, item_id="c", user_id="u2")

        assert [e.item_id for e in dlq.get_by_user("u1")] == ["b", "a"]
        assert [e.item_id for e in dlq.get_by_user("u1", limit=1)] == ["b"]

    def test_get_by_user_filters_resolution(self, dlq):
        a = _add(dlq, item_id="a")
        _add(dlq, item_id="b")
        dlq.mark_as_skipped(a.id, "ops")

        pending = dlq.get_by_user("u1", resolution="pending")
        assert [e.item_id for e in pending] == ["b"]
        skipped = dlq.get_by_user("u1", resolution=DLQResolution.SKIPPED)
        assert [e.item_id for e in skipped] == ["a"]

    def test_get_by_job(self, dlq):
        _add(dlq, item_id="a", job_id="j1")
        _add(dlq, item_id="b", job_id="j2")
        assert [e.item_id for e in dlq.get_by_job("j2")] == ["b"]


# ── Stats ────────────────────────────────────────────────────────────────


class TestStats:
    def test_counts_and_oldest_pending(self, dlq, utc_clock):
        oldest = _add(dlq, item_id="a", reason="timeout")
        utc_clock.advance(minutes=1)
        _add(dlq, item_id="b", reason="timeout")
        utc_clock.advance(minutes=1)
        c = _add(dlq, item_id="c", reason="503")
        dlq.mark_as_manual_fix(c.id, "ops")

        stats = dlq.get_stats()
        assert stats.total == 3
        assert stats.pending == 2
        assert stats.manual_fix == 1
        assert stats.retried == 0
        assert stats.oldest_pending == oldest.created_at
        assert stats.common_errors[0] == ("timeout", 2)

    def test_common_errors_grouped_by_prefix(self, dlq):
        base = "x" * 100
        _add(dlq, item_id="a", reason=base + "-one")
        _add(dlq, item_id="b", reason=base + "-two")

        assert dlq.get_stats().common_errors == [(base, 2)]

    def test_stats_scoped_to_user(self, dlq):
        _add(dlq, item_id="a", user_id="u1")
        _add(dlq, item_id="b", user_id="u2")
        assert dlq.get_stats("u1").total == 1
        assert dlq.get_stats().to_dict()["total"] == 2

    def test_empty(self, dlq):
        stats = dlq.get_stats()
        assert stats.total == 0
        assert stats.oldest_pending is None
        assert stats.common_errors == []


# ── Cleanup ──────────────────────────────────────────────────────────────


class TestCleanup:
    def test_removes_only_old_resolved(self, dlq, utc_clock):
        old = _add(dlq, item_id="old")
        dlq.mark_as_skipped(old.id, "ops")
        pending = _add(dlq, item_id="pending")

        utc_clock.advance(days=31)
        recent = _add(dlq, item_id="recent")
        dlq.mark_as_skipped(recent.id, "ops")

        assert dlq.cleanup(older_than_days=30) == 1
        assert dlq.get(old.id) is None
        assert dlq.get(pending.id) is not None
        assert dlq.get(recent.id) is not None

    def test_default_retention_from_settings(self, dlq, utc_clock, monkeypatch):
        monkeypatch.setenv("BATCHSPINE_DLQ_RETENTION_DAYS", "7")
        entry = _add(dlq)
        dlq.mark_as_skipped(entry.id, "ops")

        utc_clock.advance(days=8)

        assert dlq.cleanup() == 1
        assert dlq.get(entry.id) is None

    def test_default_retention_is_thirty_days(self, dlq, utc_clock):
        entry = _add(dlq)
        dlq.mark_as_skipped(entry.id, "ops")

        utc_clock.advance(days=20)
        assert dlq.cleanup() == 0
        utc_clock.advance(days=11)
        assert dlq.cleanup() == 1


class TestNonFatal:
    def test_closed_connection(self, conn):
        dlq = SQLDeadLetterQueue(conn)
        conn.close()
        assert _add(dlq) is None
        assert dlq.get("x") is None
        assert dlq.get_by_user("u1") == []
        assert dlq.cleanup() == 0


class TestFromSettings:
    def test_opens_configured_database(self, tmp_path, monkeypatch):
        db_path = tmp_path / "state" / "batch.db"
        monkeypatch.setenv("BATCHSPINE_DATABASE_PATH", str(db_path))

        first = SQLDeadLetterQueue.from_settings()
        entry = _add(first)

        assert db_path.exists()
        reopened = SQLDeadLetterQueue.from_settings()
        assert reopened.get(entry.id).item_id == "i1"

"""
Shared pytest fixtures for batchspine tests.

This module provides:
- In-memory SQLite connections with the batch tables
- Controllable clocks for breakers, limiters and stores
- Settings cache isolation

Usage:
    Fixtures are auto-discovered by pytest; request them by name.

    def test_something(conn, utc_clock):
        store = SQLCheckpointStore(conn, clock=utc_clock)
"""

import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Generator

import pytest

from batchspine.core.schema import create_batch_tables
from batchspine.core.settings import reset_settings


# =============================================================================
# Clocks
# =============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """UTC wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock()


# =============================================================================
# Storage
# =============================================================================


@pytest.fixture
def conn() -> Generator[sqlite3.Connection, None, None]:
    """In-memory SQLite with batch_checkpoints and batch_dead_letters."""
    db = sqlite3.connect(":memory:")
    create_batch_tables(db)
    yield db
    db.close()


# =============================================================================
# Settings isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Drop cached settings and stray BATCHSPINE_* variables around every test."""
    import os

    for key in list(os.environ):
        if key.startswith("BATCHSPINE_"):
            monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()

"""
Tables backing the checkpoint store and the dead letter queue.

These two tables are the only cross-restart source of truth in a batch run.
Their sole synchronization points are the ``(item_id, step_name)`` unique key
on checkpoints and the ``item_id`` lookup of pending dead letters; no
in-process lock guards them.

Architecture:
    ::

        BATCH_TABLES
        ┌──────────────────────────────────────────────────┐
        │ checkpoints   → batch_checkpoints                │
        │ dead_letters  → batch_dead_letters               │
        └──────────────────────────────────────────────────┘

        batch_checkpoints: UNIQUE(item_id, step_name)
            upsert via INSERT ... ON CONFLICT DO UPDATE
        batch_dead_letters: at most one 'pending' row per item_id
            enforced by find-pending-then-update in the DLQ

Examples:
    >>> import sqlite3
    >>> conn = sqlite3.connect(":memory:")
    >>> create_batch_tables(conn)

    File-backed, at BatchSettings.database_path::

        conn = open_batch_database()

Tags:
    schema, ddl, sqlite, checkpoints, dead-letter-queue, batchspine
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from batchspine.core.settings import BatchSettings, get_settings

BATCH_TABLES = {
    "checkpoints": "batch_checkpoints",
    "dead_letters": "batch_dead_letters",
}


BATCH_DDL = {
    # =========================================================================
    # BATCH_CHECKPOINTS: current state of each (item, step)
    #
    # Not an event log. A later write for the same key replaces status and
    # result entirely (last write wins).
    # =========================================================================
    "checkpoints": """
        CREATE TABLE IF NOT EXISTS batch_checkpoints (
            id TEXT PRIMARY KEY,
            item_id TEXT NOT NULL,
            step_name TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'skipped')),
            result_data TEXT,               -- JSON, completed only
            tokens_used INTEGER DEFAULT 0,
            duration_ms INTEGER DEFAULT 0,
            error_message TEXT,             -- failed only
            reason TEXT,                    -- skipped only
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (item_id, step_name)
        )
    """,
    "checkpoints_idx_item": """
        CREATE INDEX IF NOT EXISTS idx_batch_checkpoints_item
        ON batch_checkpoints(item_id)
    """,
    "checkpoints_idx_stale": """
        CREATE INDEX IF NOT EXISTS idx_batch_checkpoints_status_updated
        ON batch_checkpoints(status, updated_at)
    """,
    # =========================================================================
    # BATCH_DEAD_LETTERS: items that exhausted retries on a required step
    # =========================================================================
    "dead_letters": """
        CREATE TABLE IF NOT EXISTS batch_dead_letters (
            id TEXT PRIMARY KEY,
            item_id TEXT NOT NULL,
            job_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            failure_reason TEXT NOT NULL,
            failure_count INTEGER NOT NULL DEFAULT 1,
            last_error TEXT,                -- JSON {message, stack, step, timestamp}
            prospect_data TEXT,             -- JSON, original payload
            checkpoints TEXT,               -- JSON snapshot
            resolution TEXT NOT NULL DEFAULT 'pending'
                CHECK (resolution IN ('pending', 'retried', 'skipped', 'manual_fix')),
            resolved_at TEXT,
            resolved_by TEXT,
            resolution_notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "dead_letters_idx_item": """
        CREATE INDEX IF NOT EXISTS idx_batch_dead_letters_item
        ON batch_dead_letters(item_id)
    """,
    "dead_letters_idx_user": """
        CREATE INDEX IF NOT EXISTS idx_batch_dead_letters_user
        ON batch_dead_letters(user_id, resolution)
    """,
    "dead_letters_idx_job": """
        CREATE INDEX IF NOT EXISTS idx_batch_dead_letters_job
        ON batch_dead_letters(job_id)
    """,
}


def create_batch_tables(conn) -> None:
    """
    Create the checkpoint and dead letter tables.

    Safe to call multiple times (CREATE IF NOT EXISTS).
    """
    for _name, ddl in BATCH_DDL.items():
        conn.execute(ddl)
    conn.commit()


def open_batch_database(
    path: str | Path | None = None,
    *,
    settings: BatchSettings | None = None,
) -> sqlite3.Connection:
    """Open the SQLite database for checkpoints and dead letters.

    ``path`` defaults to ``settings.database_path``; ``":memory:"`` opens a
    throwaway database. Parent directories are created and the tables are
    ensured before the connection is returned.
    """
    if path is None:
        path = (settings or get_settings()).database_path

    if str(path) == ":memory:":
        conn = sqlite3.connect(":memory:")
    else:
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path.resolve()))

    create_batch_tables(conn)
    return conn

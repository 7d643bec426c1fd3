"""Tests for the batch table schema and database opener."""

from batchspine.core.schema import open_batch_database
from batchspine.core.settings import BatchSettings


def _tables(conn):
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {name for (name,) in rows}


class TestOpenBatchDatabase:
    def test_in_memory(self):
        conn = open_batch_database(":memory:")
        assert {"batch_checkpoints", "batch_dead_letters"} <= _tables(conn)

    def test_path_from_environment(self, tmp_path, monkeypatch):
        db_path = tmp_path / "nested" / "batch.db"
        monkeypatch.setenv("BATCHSPINE_DATABASE_PATH", str(db_path))

        conn = open_batch_database()

        assert db_path.exists()
        assert {"batch_checkpoints", "batch_dead_letters"} <= _tables(conn)

    def test_explicit_settings(self, tmp_path):
        first = tmp_path / "a.db"
        second = tmp_path / "b.db"

        open_batch_database(settings=BatchSettings(database_path=first)).close()
        open_batch_database(settings=BatchSettings(database_path=second)).close()

        assert first.exists()
        assert second.exists()

    def test_reopen_keeps_tables(self, tmp_path):
        db_path = tmp_path / "batch.db"
        open_batch_database(db_path).close()

        conn = open_batch_database(db_path)

        assert {"batch_checkpoints", "batch_dead_letters"} <= _tables(conn)

"""Tests for structured logging helpers."""

import asyncio
import logging

import pytest
import structlog

from batchspine.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from batchspine.core.settings import BatchSettings


@pytest.fixture(autouse=True)
def _reset_structlog():
    clear_context()
    yield
    clear_context()
    structlog.reset_defaults()


def _context() -> dict:
    return structlog.contextvars.get_contextvars()


class TestContextBinding:
    def test_bind_and_unbind(self):
        bind_context(item_id="item-1", job_id="job-1")
        assert _context() == {"item_id": "item-1", "job_id": "job-1"}

        unbind_context("job_id")
        assert _context() == {"item_id": "item-1"}

    def test_log_context_scopes_keys(self):
        with LogContext(item_id="item-1"):
            assert _context()["item_id"] == "item-1"
        assert "item_id" not in _context()

    @pytest.mark.asyncio
    async def test_async_log_context_isolated_per_task(self):
        seen: dict[str, str] = {}

        async def run(item_id: str) -> None:
            async with LogContext(item_id=item_id):
                await asyncio.sleep(0.01)
                seen[item_id] = _context()["item_id"]

        await asyncio.gather(run("a"), run("b"))
        assert seen == {"a": "a", "b": "b"}


class TestConfigureLogging:
    def test_json_output_includes_context(self, caplog):
        caplog.set_level(logging.DEBUG)
        configure_logging(level="DEBUG", json_format=True, service="test-batch")
        logger = get_logger("batchspine.test")

        with LogContext(item_id="item-9"):
            logger.info("step.completed", step="search")

        out = caplog.text
        assert '"step.completed"' in out
        assert '"item_id": "item-9"' in out
        assert '"service.name": "test-batch"' in out
        assert '"log.level": "info"' in out
        assert '"logger": "batchspine.test"' in out

    def test_level_filtering(self, caplog):
        caplog.set_level(logging.DEBUG)
        configure_logging(level="WARNING", json_format=True)
        logger = get_logger("batchspine.test")

        logger.info("quiet.event")
        logger.warning("loud.event")

        assert "quiet.event" not in caplog.text
        assert "loud.event" in caplog.text


class TestLoggingFromSettings:
    def test_level_and_json_from_environment(self, caplog, monkeypatch):
        monkeypatch.setenv("BATCHSPINE_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("BATCHSPINE_JSON_LOGS", "true")
        caplog.set_level(logging.DEBUG)

        configure_logging()
        logger = get_logger("batchspine.test")
        logger.info("quiet.event")
        logger.warning("loud.event")

        assert "quiet.event" not in caplog.text
        assert '"event": "loud.event"' in caplog.text

    def test_explicit_settings(self, caplog):
        caplog.set_level(logging.DEBUG)

        configure_logging(settings=BatchSettings(log_level="DEBUG", json_logs=True))
        get_logger("batchspine.test").debug("step.started", step="search")

        assert '"event": "step.started"' in caplog.text

    def test_arguments_override_settings(self, caplog):
        caplog.set_level(logging.DEBUG)

        configure_logging(level="ERROR", json_format=True, settings=BatchSettings(log_level="DEBUG"))
        get_logger("batchspine.test").warning("dropped.event")

        assert "dropped.event" not in caplog.text

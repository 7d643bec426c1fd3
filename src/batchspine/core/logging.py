"""
Structured logging for batch runs.

Every module in batchspine logs through structlog with dotted event names
and keyword fields, so a single item's journey through the pipeline can be
reconstructed from the log stream by filtering on ``item_id``.

Manifesto:
    Batch enrichment runs for hours against flaky dependencies. When an item
    lands in the dead letter queue, the operator needs the breadcrumbs:

    - **Structured:** key/value events, JSON in production
    - **Correlated:** item_id, job_id bound once per item via contextvars
    - **Quiet by default:** lifecycle events at debug, problems at warning+

Architecture:
    ::

        configure_logging(level=None, json_format=None, service="batchspine")
            (level / json_format default to BatchSettings.log_level / json_logs)
            │
            ▼
        structlog processor chain:
          1. TimeStamper(iso)           (optional)
          2. merge_contextvars          (item_id, job_id, ...)
          3. add_log_level / logger name
          4. _add_service_metadata
          5. _elasticsearch_compatible  (JSON mode only)
          6. JSONRenderer | ConsoleRenderer

        logger = get_logger(__name__)
        logger.info("step.completed", step="search", duration_ms=812)

Examples:
    >>> from batchspine.core.logging import configure_logging, get_logger, LogContext
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> logger = get_logger(__name__)
    >>> with LogContext(item_id="item-1", job_id="job-9"):
    ...     logger.info("step.started", step="search")

Tags:
    logging, structlog, observability, contextvars, batchspine
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from batchspine.core.settings import BatchSettings, get_settings

# Store service name for metadata
_SERVICE_NAME = "batchspine"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Rename timestamp/level to ECS field names."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")
    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")
    return event_dict


def configure_logging(
    level: str | None = None,
    json_format: bool | None = None,
    service: str = "batchspine",
    add_timestamp: bool = True,
    settings: BatchSettings | None = None,
) -> None:
    """Configure structured logging for a batch process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR); ``settings.log_level`` if omitted
        json_format: True for JSON, False for console; ``settings.json_logs`` if
            omitted, then auto (JSON if not tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs
        settings: Source of the defaults (process settings if omitted)
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if level is None or json_format is None:
        settings = settings or get_settings()
        if level is None:
            level = settings.log_level
        if json_format is None:
            json_format = settings.json_logs

    if json_format is None:
        json_format = not sys.stdout.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(structlog.processors.format_exc_info)
        shared_processors.append(_elasticsearch_compatible)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structlog bound logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs of this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Each asyncio task gets its own copy of the contextvars, so items running
    concurrently in a batch do not see each other's ``item_id``.

    Example:
        async with LogContext(item_id="item-1", job_id="job-9"):
            logger.info("item.started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args) -> None:
        unbind_context(*self._context.keys())

    async def __aenter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    async def __aexit__(self, *args) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]

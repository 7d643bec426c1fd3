"""batchspine.core -- ambient primitives shared by every batchspine module.

    errors.py     Structured error hierarchy (BatchSpineError, TransientError)
    logging.py    structlog configuration and context binding
    settings.py   pydantic-settings configuration surface
    schema.py     DDL for checkpoint and dead letter tables
"""

from batchspine.core.errors import (
    BatchSpineError,
    CircuitOpenError,
    ErrorCategory,
    NetworkError,
    PipelineDefinitionError,
    RateLimitError,
    RequiredStepError,
    RetryAbortedError,
    RunAbortedError,
    StepFailedError,
    StepTimeoutError,
    TransientError,
    get_retry_after,
    is_retryable,
)
from batchspine.core.logging import LogContext, configure_logging, get_logger
from batchspine.core.schema import BATCH_DDL, BATCH_TABLES, create_batch_tables, open_batch_database

__all__ = [
    "BatchSpineError",
    "CircuitOpenError",
    "ErrorCategory",
    "NetworkError",
    "PipelineDefinitionError",
    "RateLimitError",
    "RequiredStepError",
    "RetryAbortedError",
    "RunAbortedError",
    "StepFailedError",
    "StepTimeoutError",
    "TransientError",
    "get_retry_after",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "get_logger",
    "BATCH_DDL",
    "BATCH_TABLES",
    "create_batch_tables",
    "open_batch_database",
]

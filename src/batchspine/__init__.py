"""
batchspine - resilient batch execution core.

    batchspine.core           errors, logging, settings, storage schema
    batchspine.execution      breakers, retries, rate limits, timeouts, checkpoints, DLQ
    batchspine.orchestration  step definitions, step executor, pipeline runner
"""

__version__ = "0.1.0"

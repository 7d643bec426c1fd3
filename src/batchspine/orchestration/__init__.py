"""batchspine.orchestration -- run pipeline steps for many items.

    step_result.py  StepResult envelope and skip reasons
    steps.py        step definitions, per-item context, DAG validation
    executor.py     protected execution of one step or a step set
    pipeline.py     item runner, DLQ routing, batch fan-out, recovery
"""

from .executor import StepExecutionResult, StepExecutor
from .pipeline import (
    BatchItem,
    BatchRunResult,
    ExecutionMode,
    ItemRunResult,
    ItemStatus,
    Pipeline,
    PipelineRunner,
)
from .step_result import (
    ALREADY_COMPLETED,
    SKIP_CIRCUIT_OPEN,
    SKIP_CONDITION_MET,
    SKIP_UNMET_DEPENDENCIES,
    StepResult,
    StepStatus,
    unmet_dependencies_reason,
)
from .steps import (
    PipelineStepDefinition,
    StepContext,
    dependents_of,
    topological_levels,
    validate_steps,
)

__all__ = [
    "StepExecutionResult",
    "StepExecutor",
    "BatchItem",
    "BatchRunResult",
    "ExecutionMode",
    "ItemRunResult",
    "ItemStatus",
    "Pipeline",
    "PipelineRunner",
    "ALREADY_COMPLETED",
    "SKIP_CIRCUIT_OPEN",
    "SKIP_CONDITION_MET",
    "SKIP_UNMET_DEPENDENCIES",
    "StepResult",
    "StepStatus",
    "unmet_dependencies_reason",
    "PipelineStepDefinition",
    "StepContext",
    "dependents_of",
    "topological_levels",
    "validate_steps",
]

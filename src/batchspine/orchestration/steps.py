"""Step definitions, per-item context and step-graph validation.

A pipeline is a list of ``PipelineStepDefinition`` objects whose
``depends_on`` lists must form a DAG. ``validate_steps`` rejects bad graphs
when the pipeline is built, so a cycle can never surface at runtime as an
endless chain of "unmet dependency" skips.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from batchspine.core.errors import PipelineDefinitionError
from batchspine.execution.checkpoints import CheckpointStore
from batchspine.execution.retry import RetryPolicy

from .step_result import StepResult


@dataclass
class StepContext:
    """Per-item execution context, owned by one run of one item.

    Attributes:
        item_id: Item being processed
        job_id: Batch job the item belongs to
        user_id: Owner of the job
        credentials: Identity/API credentials steps may need
        payload: The item's domain data
        previous_results: step name -> StepResult, filled in as the run progresses
        checkpoints: Checkpoint store for this run
        abort_signal: Set by the operator to cancel the run; steps doing long
            work should watch it
    """

    item_id: str
    job_id: str
    user_id: str = ""
    credentials: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    previous_results: dict[str, StepResult] = field(default_factory=dict)
    checkpoints: CheckpointStore | None = None
    abort_signal: asyncio.Event | None = None

    @property
    def is_aborted(self) -> bool:
        return self.abort_signal is not None and self.abort_signal.is_set()

    def result_of(self, step_name: str) -> StepResult | None:
        return self.previous_results.get(step_name)


@dataclass
class PipelineStepDefinition:
    """Declarative description of one pipeline step.

    Attributes:
        name: Unique within a pipeline
        execute: Async callable ``(StepContext) -> StepResult | value``
        required: A terminal failure aborts the item's run
        timeout: Seconds per attempt (executor default if None)
        depends_on: Steps that must be completed before this one runs
        skippable: Informational flag for UIs and reports
        skip_condition: ``(StepContext) -> bool`` (sync or async); True skips the step
        dependency: Registry key of the breaker/limiter guarding this step
        retry_policy: Policy object or registry policy name
        tokens: Rate limiter cost of one attempt
    """

    name: str
    execute: Callable[[StepContext], Awaitable[Any]]
    required: bool = True
    timeout: float | None = None
    depends_on: list[str] = field(default_factory=list)
    skippable: bool = False
    skip_condition: Callable[[StepContext], bool | Awaitable[bool]] | None = None
    dependency: str | None = None
    retry_policy: RetryPolicy | str | None = None
    tokens: int = 1


def validate_steps(steps: Sequence[PipelineStepDefinition]) -> None:
    """Check names are unique and ``depends_on`` forms a DAG.

    Raises:
        PipelineDefinitionError: duplicate name, self/unknown dependency, or cycle
    """
    names: set[str] = set()
    for step in steps:
        if step.name in names:
            raise PipelineDefinitionError(f"Duplicate step name: {step.name}")
        names.add(step.name)

    for step in steps:
        for dep in step.depends_on:
            if dep == step.name:
                raise PipelineDefinitionError(f"Step '{step.name}' depends on itself")
            if dep not in names:
                raise PipelineDefinitionError(f"Step '{step.name}' depends on unknown step: '{dep}'")

    if not any(step.depends_on for step in steps):
        return

    # Kahn's algorithm
    adjacency: dict[str, list[str]] = defaultdict(list)
    in_degree: dict[str, int] = {s.name: 0 for s in steps}
    for step in steps:
        for dep in step.depends_on:
            adjacency[dep].append(step.name)
            in_degree[step.name] += 1

    queue: deque[str] = deque(name for name, deg in in_degree.items() if deg == 0)
    visited = 0
    while queue:
        node = queue.popleft()
        visited += 1
        for neighbor in adjacency[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if visited != len(steps):
        cycle_nodes = [name for name, deg in in_degree.items() if deg > 0]
        raise PipelineDefinitionError(f"Dependency cycle detected among steps: {cycle_nodes}")


def topological_levels(steps: Sequence[PipelineStepDefinition]) -> list[list[PipelineStepDefinition]]:
    """Group steps into levels; every step's dependencies sit in earlier levels.

    Steps within a level keep their declaration order. Assumes the graph
    has passed ``validate_steps``.
    """
    level_of: dict[str, int] = {}
    by_name = {s.name: s for s in steps}

    def _level(name: str) -> int:
        if name not in level_of:
            deps = by_name[name].depends_on
            level_of[name] = 1 + max((_level(d) for d in deps), default=-1)
        return level_of[name]

    levels: dict[int, list[PipelineStepDefinition]] = defaultdict(list)
    for step in steps:
        levels[_level(step.name)].append(step)
    return [levels[i] for i in sorted(levels)]


def dependents_of(steps: Sequence[PipelineStepDefinition], failed: str) -> set[str]:
    """Names of all steps depending on ``failed``, directly or transitively."""
    adjacency: dict[str, list[str]] = defaultdict(list)
    for step in steps:
        for dep in step.depends_on:
            adjacency[dep].append(step.name)

    found: set[str] = set()
    queue: deque[str] = deque([failed])
    while queue:
        for child in adjacency[queue.popleft()]:
            if child not in found:
                found.add(child)
                queue.append(child)
    return found

"""Tests for step definitions and step-graph validation."""

import asyncio

import pytest

from batchspine.core.errors import PipelineDefinitionError
from batchspine.orchestration.step_result import StepResult
from batchspine.orchestration.steps import (
    PipelineStepDefinition,
    StepContext,
    dependents_of,
    topological_levels,
    validate_steps,
)


async def _noop(ctx: StepContext) -> None:
    return None


def step(name: str, *deps: str) -> PipelineStepDefinition:
    return PipelineStepDefinition(name=name, execute=_noop, depends_on=list(deps))


class TestStepContext:
    def test_abort_signal(self):
        ctx = StepContext(item_id="i1", job_id="j1")
        assert ctx.is_aborted is False

        ctx.abort_signal = asyncio.Event()
        assert ctx.is_aborted is False
        ctx.abort_signal.set()
        assert ctx.is_aborted is True

    def test_result_of(self):
        ctx = StepContext(item_id="i1", job_id="j1")
        ctx.previous_results["a"] = StepResult.ok(data=1)
        assert ctx.result_of("a").data == 1
        assert ctx.result_of("b") is None


class TestValidateSteps:
    def test_valid_dag(self):
        validate_steps([step("a"), step("b", "a"), step("c", "a", "b")])

    def test_no_dependencies(self):
        validate_steps([step("a"), step("b")])

    def test_duplicate_names(self):
        with pytest.raises(PipelineDefinitionError, match="Duplicate step name: a"):
            validate_steps([step("a"), step("a")])

    def test_self_dependency(self):
        with pytest.raises(PipelineDefinitionError, match="depends on itself"):
            validate_steps([step("a", "a")])

    def test_unknown_dependency(self):
        with pytest.raises(PipelineDefinitionError, match="unknown step"):
            validate_steps([step("a", "ghost")])

    def test_cycle(self):
        with pytest.raises(PipelineDefinitionError, match="cycle") as exc_info:
            validate_steps([step("a", "c"), step("b", "a"), step("c", "b"), step("d")])
        assert "'d'" not in str(exc_info.value)


class TestGraphHelpers:
    def test_topological_levels(self):
        steps = [step("a"), step("b"), step("c", "a"), step("d", "c", "b"), step("e")]
        levels = [[s.name for s in level] for level in topological_levels(steps)]
        assert levels == [["a", "b", "e"], ["c"], ["d"]]

    def test_dependents_of_transitive(self):
        steps = [step("a"), step("b", "a"), step("c", "b"), step("d")]
        assert dependents_of(steps, "a") == {"b", "c"}
        assert dependents_of(steps, "d") == set()

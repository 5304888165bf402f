"""
Tests for conductor.orchestration.graph_executor
==================================================

These tests drive the step-graph interpreter with a fake agent callback and
verify ordering, context threading, every control-flow kind, failure
attribution and suspension.

All tests are async (pytest-asyncio with asyncio_mode=auto).
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from conductor.core.context import ExecutionContext
from conductor.core.exceptions import (
    AgentExecutionError,
    EnsembleExecutionError,
    ExecutionSuspended,
    LoopLimitExceededError,
    ValidationError,
)
from conductor.orchestration.graph_executor import SKIPPED_REASON, GraphExecutor, branch_abandoned


class FakeAgents:
    """Agent callback dispatching on ``step.agent`` and recording calls."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.contexts: list[ExecutionContext] = []
        self.handlers: dict[str, Callable[..., Any]] = {
            "inc": lambda value, ctx: value + 1,
            "echo": lambda value, ctx: value,
        }

    def on(self, name: str, handler: Callable[..., Any]) -> None:
        self.handlers[name] = handler

    async def __call__(self, step, ctx):
        self.calls.append(step.key)
        self.contexts.append(ctx)
        result = self.handlers[step.agent](step.input, ctx)
        if asyncio.iscoroutine(result):
            result = await result
        return result


@pytest.fixture
def agents() -> FakeAgents:
    return FakeAgents()


@pytest.fixture
def graph(agents) -> GraphExecutor:
    return GraphExecutor(agents, "test-ensemble")


def fail(message: str) -> Callable[..., Any]:
    def handler(value, ctx):
        raise RuntimeError(message)

    return handler


# =============================================================================
# Test: Sequences
# =============================================================================
class TestSequences:
    """Sibling steps run in order and see earlier outputs."""

    async def test_sequential_threading(self, graph, agents) -> None:
        result = await graph.execute(
            [
                {"agent": "inc", "input": "${input.n}"},
                {"agent": "inc", "id": "second"},
                {"agent": "echo", "input": {"first": "${inc.output}", "second": "${second.output}"}},
            ],
            {"input": {"n": 10}},
        )

        outputs = result.unwrap()
        assert agents.calls == ["inc", "second", "echo"]
        assert outputs["inc"] == 11
        assert outputs["second"] == 12
        assert outputs["echo"] == {"first": 11, "second": 12}

    async def test_first_step_without_input_receives_ensemble_input(self, graph) -> None:
        outputs = (await graph.execute([{"agent": "echo"}], {"input": {"q": 1}})).unwrap()
        assert outputs["echo"] == {"q": 1}

    async def test_skipped_step(self, graph, agents) -> None:
        outputs = (
            await graph.execute(
                [{"agent": "inc", "when": "input.go", "input": 1}, {"agent": "echo", "input": "${inc.output}"}],
                {"input": {"go": False}},
            )
        ).unwrap()

        assert agents.calls == ["echo"]
        assert outputs["inc"] == {"skipped": True, "reason": SKIPPED_REASON}
        assert outputs["echo"]["skipped"] is True

    async def test_start_index(self, graph, agents) -> None:
        result = await graph.run([{"agent": "inc", "input": 1}, {"agent": "echo", "input": "b"}], {}, start_index=1)
        assert agents.calls == ["echo"]
        assert result.unwrap().outputs == {"echo": "b"}

    async def test_state_provider_refreshes_between_steps(self, agents) -> None:
        state = {"v": 1}

        def bump(value, ctx):
            state["v"] = 2
            return ctx.state["v"]

        agents.on("bump", bump)
        graph = GraphExecutor(agents, "stateful", state_provider=lambda: dict(state))
        outputs = (
            await graph.execute(
                [{"agent": "bump", "input": None}, {"agent": "echo", "input": "${state.v}"}],
                {"input": None, "state": {"v": 1}},
            )
        ).unwrap()

        assert outputs["bump"] == 1
        assert outputs["echo"] == 2

    async def test_invalid_raw_steps(self, graph) -> None:
        result = await graph.execute([{"type": "while", "steps": []}], {})
        assert isinstance(result.error, ValidationError)


# =============================================================================
# Test: Parallel
# =============================================================================
class TestParallel:
    """Concurrent fan-out and wait policies."""

    async def test_all_merges_keyed_outputs(self, graph, agents) -> None:
        outputs = (
            await graph.execute(
                [
                    {"agent": "inc", "input": 1},
                    {
                        "type": "parallel",
                        "steps": [
                            {"agent": "inc", "id": "a", "input": "${inc.output}"},
                            {"agent": "echo", "id": "b", "input": "${a.output}"},
                        ],
                    },
                    {"agent": "echo", "id": "after", "input": ["${a.output}", "${b.output}"]},
                ],
                {},
            )
        ).unwrap()

        assert outputs["parallel_1"] == [3, None]
        assert outputs["a"] == 3
        assert outputs["b"] is None
        assert outputs["after"] == [3, None]

    async def test_children_share_the_same_context(self, graph, agents) -> None:
        await graph.execute(
            [{"type": "parallel", "steps": [{"agent": "echo", "id": "x"}, {"agent": "echo", "id": "y"}]}],
            {"input": 1},
        )
        assert agents.contexts[0] is agents.contexts[1]

    async def test_all_fails_on_any_failure(self, graph, agents) -> None:
        agents.on("boom", fail("kaboom"))
        result = await graph.execute(
            [{"type": "parallel", "steps": [{"agent": "echo", "input": 1}, {"agent": "boom"}]}],
            {},
        )
        assert result.is_err()
        assert result.error.step_key == "boom"

    async def test_any_returns_first_success(self, graph, agents) -> None:
        async def slow(value, ctx):
            await asyncio.sleep(0.05)
            return "slow"

        agents.on("slow", slow)
        agents.on("fast-fail", fail("nope"))

        outputs = (
            await graph.execute(
                [{"type": "parallel", "waitFor": "any", "steps": [{"agent": "fast-fail"}, {"agent": "slow"}]}],
                {},
            )
        ).unwrap()
        assert outputs["parallel_0"] == ["slow"]
        assert outputs["slow"] == "slow"
        assert "fast-fail" not in outputs

    async def test_any_with_all_failures_reports_first_branch(self, graph, agents) -> None:
        agents.on("f1", fail("one"))
        agents.on("f2", fail("two"))
        result = await graph.execute(
            [{"type": "parallel", "waitFor": "any", "steps": [{"agent": "f1"}, {"agent": "f2"}]}],
            {},
        )
        assert result.error.step_key == "f1"

    async def test_first_settled_failure_wins_and_loser_keeps_running(self, graph, agents) -> None:
        finished: list[str] = []

        async def slow(value, ctx):
            await asyncio.sleep(0.02)
            finished.append("slow")
            return "slow"

        agents.on("slow", slow)
        agents.on("fast-fail", fail("first"))

        result = await graph.execute(
            [{"type": "parallel", "waitFor": "first", "steps": [{"agent": "slow"}, {"agent": "fast-fail"}]}],
            {},
        )
        assert result.error.step_key == "fast-fail"
        assert finished == []

        await asyncio.sleep(0.05)
        assert finished == ["slow"]

    async def test_only_losing_branches_are_marked_abandoned(self, graph, agents) -> None:
        seen: dict[str, bool] = {}

        def fast(value, ctx):
            seen["fast"] = branch_abandoned()
            return "fast"

        async def slow(value, ctx):
            await asyncio.sleep(0.02)
            seen["slow"] = branch_abandoned()
            return "slow"

        agents.on("fast", fast)
        agents.on("slow", slow)
        outputs = (
            await graph.execute(
                [{"type": "parallel", "waitFor": "first", "steps": [{"agent": "fast"}, {"agent": "slow"}]}],
                {},
            )
        ).unwrap()
        await asyncio.sleep(0.05)

        assert outputs["parallel_0"] == ["fast"]
        assert seen == {"fast": False, "slow": True}
        assert branch_abandoned() is False


# =============================================================================
# Test: Branch and Switch
# =============================================================================
class TestBranchAndSwitch:
    """Conditional dispatch."""

    @pytest.mark.parametrize("n, expected", [(7, "big"), (2, "small")])
    async def test_branch(self, graph, agents, n, expected) -> None:
        agents.on("big", lambda value, ctx: "big")
        agents.on("small", lambda value, ctx: "small")
        outputs = (
            await graph.execute(
                [
                    {
                        "type": "branch",
                        "condition": "input.n > 5",
                        "then": [{"agent": "big"}],
                        "else": [{"agent": "small"}],
                    }
                ],
                {"input": {"n": n}},
            )
        ).unwrap()
        assert agents.calls == [expected]
        assert outputs["branch_0"] == [expected]
        assert outputs[expected] == expected

    async def test_branch_without_else(self, graph, agents) -> None:
        outputs = (
            await graph.execute([{"type": "branch", "condition": False, "then": [{"agent": "echo"}]}], {})
        ).unwrap()
        assert outputs == {"branch_0": []}
        assert agents.calls == []

    @pytest.mark.parametrize("kind, expected", [("a", "alpha"), (1, "one"), ("zzz", "other")])
    async def test_switch(self, graph, agents, kind, expected) -> None:
        for name in ("alpha", "one", "other"):
            agents.on(name, lambda value, ctx, name=name: name)
        outputs = (
            await graph.execute(
                [
                    {
                        "type": "switch",
                        "value": "${input.kind}",
                        "cases": {"a": [{"agent": "alpha"}], "1": [{"agent": "one"}]},
                        "default": [{"agent": "other"}],
                    }
                ],
                {"input": {"kind": kind}},
            )
        ).unwrap()
        assert agents.calls == [expected]
        assert outputs[expected] == expected

    async def test_switch_no_match_no_default(self, graph, agents) -> None:
        outputs = (
            await graph.execute([{"type": "switch", "value": "x", "cases": {"y": [{"agent": "echo"}]}}], {})
        ).unwrap()
        assert outputs["switch_0"] == []


# =============================================================================
# Test: Foreach and Map-Reduce
# =============================================================================
class TestIteration:
    """Bounded fan-out over items."""

    async def test_foreach_respects_max_concurrency(self, graph, agents) -> None:
        tracker = {"in_flight": 0, "peak": 0}

        async def double(value, ctx):
            tracker["in_flight"] += 1
            tracker["peak"] = max(tracker["peak"], tracker["in_flight"])
            await asyncio.sleep(0.01)
            tracker["in_flight"] -= 1
            return value * 2

        agents.on("double", double)
        outputs = (
            await graph.execute(
                [
                    {
                        "type": "foreach",
                        "items": "${input.items}",
                        "maxConcurrency": 2,
                        "step": {"agent": "double", "input": "${item}"},
                    }
                ],
                {"input": {"items": [1, 2, 3, 4, 5]}},
            )
        ).unwrap()

        assert len(agents.calls) == 5
        assert tracker["peak"] == 2
        assert outputs["foreach_0"] == [2, 4, 6, 8, 10]
        assert "double" not in outputs

    async def test_foreach_index_binding(self, graph) -> None:
        outputs = (
            await graph.execute(
                [{"type": "foreach", "items": ["a", "b"], "step": {"agent": "echo", "input": "${index}:${item}"}}],
                {},
            )
        ).unwrap()
        assert outputs["foreach_0"] == ["0:a", "1:b"]

    async def test_foreach_break_when(self, graph, agents) -> None:
        outputs = (
            await graph.execute(
                [
                    {
                        "type": "foreach",
                        "items": [1, 2, 3, 4],
                        "maxConcurrency": 1,
                        "breakWhen": "result >= 3",
                        "step": {"agent": "inc", "input": "${item}"},
                    }
                ],
                {},
            )
        ).unwrap()
        assert outputs["foreach_0"] == [2, 3]
        assert len(agents.calls) == 2

    async def test_foreach_items_must_be_a_list(self, graph) -> None:
        result = await graph.execute(
            [{"type": "foreach", "items": "${input.n}", "step": {"agent": "echo"}}],
            {"input": {"n": 3}},
        )
        assert isinstance(result.error.cause, ValidationError)
        assert result.error.step_key == "foreach_0"

    async def test_empty_foreach(self, graph, agents) -> None:
        outputs = (await graph.execute([{"type": "foreach", "items": [], "step": {"agent": "echo"}}], {})).unwrap()
        assert outputs["foreach_0"] == []
        assert agents.calls == []

    async def test_map_reduce(self, graph, agents) -> None:
        agents.on("square", lambda value, ctx: value * value)
        agents.on("sum", lambda value, ctx: sum(value))
        outputs = (
            await graph.execute(
                [
                    {
                        "type": "mapReduce",
                        "items": "${input.nums}",
                        "maxConcurrency": 2,
                        "map": {"agent": "square", "input": "${item}"},
                        "reduce": {"agent": "sum", "input": "${mapResults}"},
                    }
                ],
                {"input": {"nums": [1, 2, 3]}},
            )
        ).unwrap()
        assert outputs["map-reduce_0"] == 14
        assert outputs["sum"] == 14
        assert "square" not in outputs
        assert agents.calls.count("square") == 3


# =============================================================================
# Test: try / catch / finally
# =============================================================================
class TestTry:
    """Recovery and cleanup."""

    async def test_catch_recovers_with_error_binding(self, graph, agents) -> None:
        agents.on("boom", fail("kaboom"))
        agents.on("cleanup", lambda value, ctx: "cleaned")
        outputs = (
            await graph.execute(
                [
                    {
                        "type": "try",
                        "steps": [{"agent": "boom"}],
                        "catch": [{"agent": "echo", "id": "handler", "input": {"msg": "${error.message}", "step": "${error.step}"}}],
                        "finally": [{"agent": "cleanup"}],
                    },
                    {"agent": "echo", "id": "after", "input": "${handler.output.step}"},
                ],
                {},
            )
        ).unwrap()

        assert agents.calls == ["boom", "handler", "cleanup", "after"]
        assert "kaboom" in outputs["handler"]["msg"]
        assert outputs["after"] == "boom"
        assert outputs["cleanup"] == "cleaned"

    async def test_finally_runs_and_error_propagates(self, graph, agents) -> None:
        agents.on("boom", fail("kaboom"))
        agents.on("cleanup", lambda value, ctx: value)
        result = await graph.execute(
            [
                {
                    "type": "try",
                    "steps": [{"agent": "boom"}],
                    "finally": [{"agent": "cleanup", "input": "${error.code}"}],
                },
                {"agent": "echo", "id": "never"},
            ],
            {},
        )

        assert agents.calls == ["boom", "cleanup"]
        assert isinstance(result.error, EnsembleExecutionError)
        assert result.error.step_key == "boom"

    async def test_failing_catch_runs_finally_once_and_propagates(self, graph, agents) -> None:
        agents.on("boom", fail("kaboom"))
        agents.on("bad-handler", fail("handler broke"))
        agents.on("cleanup", lambda value, ctx: value)
        result = await graph.execute(
            [
                {
                    "type": "try",
                    "steps": [{"agent": "boom"}],
                    "catch": [{"agent": "bad-handler"}],
                    "finally": [{"agent": "cleanup", "input": "${error.step}"}],
                },
                {"agent": "echo", "id": "never"},
            ],
            {},
        )

        assert agents.calls == ["boom", "bad-handler", "cleanup"]
        assert agents.calls.count("cleanup") == 1
        assert isinstance(result.error, EnsembleExecutionError)
        assert result.error.step_key == "bad-handler"
        assert "handler broke" in result.error.message

    async def test_failing_finally_after_recovery_supersedes(self, graph, agents) -> None:
        agents.on("boom", fail("kaboom"))
        agents.on("broken-cleanup", fail("cleanup broke"))
        result = await graph.execute(
            [
                {
                    "type": "try",
                    "steps": [{"agent": "boom"}],
                    "catch": [{"agent": "echo", "id": "handler", "input": "recovered"}],
                    "finally": [{"agent": "broken-cleanup"}],
                },
                {"agent": "echo", "id": "never"},
            ],
            {},
        )

        assert agents.calls == ["boom", "handler", "broken-cleanup"]
        assert isinstance(result.error, EnsembleExecutionError)
        assert result.error.step_key == "broken-cleanup"
        assert "cleanup broke" in result.error.message

    async def test_try_success_skips_catch(self, graph, agents) -> None:
        outputs = (
            await graph.execute(
                [{"type": "try", "steps": [{"agent": "inc", "input": 1}], "catch": [{"agent": "echo"}]}],
                {},
            )
        ).unwrap()
        assert agents.calls == ["inc"]
        assert outputs["try_0"] == [2]

    async def test_suspension_is_not_caught(self, graph, agents) -> None:
        def wait(value, ctx):
            raise ExecutionSuspended("approval", suspended_by="wait")

        agents.on("wait", wait)
        result = await graph.run(
            [{"type": "try", "steps": [{"agent": "wait"}], "catch": [{"agent": "echo"}]}],
            {},
        )
        assert result.unwrap().suspended
        assert agents.calls == ["wait"]


# =============================================================================
# Test: while
# =============================================================================
class TestWhile:
    """Bounded loops."""

    async def test_loop_runs_until_condition_false(self, graph, agents) -> None:
        outputs = (
            await graph.execute(
                [
                    {
                        "type": "while",
                        "condition": "iteration < 3",
                        "maxIterations": 5,
                        "steps": [{"agent": "echo", "id": "tick", "input": "${iteration}"}],
                    }
                ],
                {},
            )
        ).unwrap()
        assert outputs["while_0"] == [[0], [1], [2]]
        assert outputs["tick"] == 2

    async def test_loop_sees_last_iteration_results(self, graph) -> None:
        outputs = (
            await graph.execute(
                [
                    {
                        "type": "while",
                        "condition": "lastIterationResults == null or lastIterationResults[0] < 4",
                        "maxIterations": 10,
                        "steps": [{"agent": "inc", "input": "${iteration}"}],
                    }
                ],
                {},
            )
        ).unwrap()
        assert outputs["while_0"][-1] == [4]

    async def test_loop_limit(self, graph, agents) -> None:
        result = await graph.execute(
            [{"type": "while", "condition": "true", "maxIterations": 3, "steps": [{"agent": "echo", "input": 1}]}],
            {},
        )

        assert len(agents.calls) == 3
        assert isinstance(result.error.cause, LoopLimitExceededError)
        assert result.error.step_key == "while_0"

    async def test_false_condition_never_runs(self, graph, agents) -> None:
        outputs = (
            await graph.execute(
                [{"type": "while", "condition": False, "maxIterations": 1, "steps": [{"agent": "echo"}]}],
                {},
            )
        ).unwrap()
        assert outputs["while_0"] == []
        assert agents.calls == []


# =============================================================================
# Test: Failures and Suspension
# =============================================================================
class TestFailures:
    """Error attribution and suspension points."""

    async def test_innermost_step_is_named_and_later_steps_skip(self, graph, agents) -> None:
        agents.on("boom", fail("kaboom"))
        result = await graph.execute(
            [
                {"agent": "inc", "input": 1},
                {
                    "type": "branch",
                    "condition": True,
                    "then": [{"type": "parallel", "steps": [{"agent": "echo"}, {"agent": "boom", "id": "deep"}]}],
                },
                {"agent": "echo", "id": "never"},
            ],
            {},
        )

        error = result.error
        assert isinstance(error, EnsembleExecutionError)
        assert error.step_key == "deep"
        assert error.message.startswith('Ensemble "test-ensemble" failed at step "deep"')
        assert isinstance(error.cause, AgentExecutionError)
        assert isinstance(error.cause.cause, RuntimeError)
        assert "never" not in agents.calls

    async def test_suspension_point(self, graph, agents) -> None:
        def approve(value, ctx):
            raise ExecutionSuspended("needs a human", suspended_by="approve")

        agents.on("approve", approve)
        run = (
            await graph.run(
                [{"agent": "inc", "input": 1}, {"agent": "approve"}, {"agent": "echo", "id": "never"}],
                {},
            )
        ).unwrap()

        assert run.suspended
        assert run.suspension.step_index == 1
        assert run.suspension.step_key == "approve"
        assert run.outputs == {"inc": 2}
        assert "never" not in agents.calls

    async def test_execute_reports_suspension_as_error(self, graph, agents) -> None:
        def approve(value, ctx):
            raise ExecutionSuspended("needs a human")

        agents.on("approve", approve)
        result = await graph.execute([{"agent": "approve"}], {})
        assert isinstance(result.error.cause, ExecutionSuspended)

"""
conductor.orchestration.graph_executor - Step Graph Interpreter
=================================================================

This module implements the Graph Executor: it walks a step tree, dispatches
each node to the handler for its kind, threads an immutable ExecutionContext
through the walk, and delegates leaf (agent) steps to a caller-supplied
callback.

Architecture Context:

    ┌──────────────────────────────────────────────────────────────────┐
    │                        GraphExecutor.run()                        │
    │                                                                  │
    │  steps ──→ dispatch table ──→ handler ──→ StepOutcome ──→ fold    │
    │              │                                                   │
    │              ├── agent      → AgentExecutorFn(step, ctx)  (leaf)  │
    │              ├── parallel   → tasks over the SAME ctx             │
    │              ├── branch     → then / else sequence                │
    │              ├── foreach    → semaphore-bounded iterations        │
    │              ├── try        → steps / catch / finally             │
    │              ├── switch     → cases[str(value)] / default         │
    │              ├── while      → bounded loop                        │
    │              └── map-reduce → bounded map, single reduce          │
    └──────────────────────────────────────────────────────────────────┘

Context Threading:
    Sibling steps in a sequence run strictly in order; each sees the outputs
    of all earlier siblings. Children of a fan-out (parallel, foreach,
    map-reduce) all receive the pre-fan-out context and never see each
    other's outputs; their keyed outputs are merged once the block is done.

Step Keys:
    Agent steps are keyed by ``id``, then ``name``, then ``agent``. Control
    steps are keyed ``f"{type}_{index}"`` by position in their sequence.
    Only agent outputs propagate out of a control step; iterations of
    foreach / map-reduce are not merged by key.

Failure Semantics:
    Any unrecovered failure aborts the run; ``run()`` returns
    Err(EnsembleExecutionError) naming the innermost failing step. No partial
    output map is returned. ExecutionSuspended stops the run and is reported
    as a SuspensionPoint instead of an error.

Cancellation:
    None. ``waitFor: any/first`` stop waiting for losing branches, which keep
    running in the background; their results are discarded. Each racing
    branch runs under a RaceBranch marker; once the branch is detached,
    ``branch_abandoned()`` is True inside it and the agent callback must not
    commit shared state, metrics or cache entries.
"""

from __future__ import annotations

import asyncio
import contextlib
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import structlog

from conductor.core.context import ExecutionContext
from conductor.core.enums import StepType, WaitFor
from conductor.core.exceptions import (
    AgentExecutionError,
    ConductorError,
    EnsembleExecutionError,
    ExecutionSuspended,
    LoopLimitExceededError,
    ValidationError,
)
from conductor.core.flow import (
    AgentStep,
    BranchStep,
    ForeachStep,
    MapReduceStep,
    ParallelStep,
    SwitchStep,
    TryStep,
    WhileStep,
    step_key,
)
from conductor.core.loader import parse_steps
from conductor.core.result import Err, Ok, Result
from conductor.orchestration.conditions import evaluate_condition
from conductor.orchestration.interpolation import Interpolator, stringify

logger = structlog.get_logger()

AgentExecutorFn = Callable[[AgentStep, ExecutionContext], Awaitable[Any]]
StateProvider = Callable[[], Mapping[str, Any]]

SKIPPED_REASON = "condition evaluated to false"


# =============================================================================
# Outcome Records
# =============================================================================
@dataclass(frozen=True)
class StepOutcome:
    """What a handler produced.

    Attributes:
        value: The step's own output (stored under its key).
        keyed: Agent outputs to merge into the enclosing context.
    """

    value: Any
    keyed: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SuspensionPoint:
    """Where a run stopped because an agent suspended it."""

    step_index: int
    step_key: str
    context: ExecutionContext
    signal: ExecutionSuspended


@dataclass(eq=False)
class RaceBranch:
    """Marker for one branch of a ``waitFor: any/first`` fan-out."""

    parent: Optional[RaceBranch] = None
    discarded: bool = False

    @property
    def abandoned(self) -> bool:
        """Discarded itself, or nested inside a discarded branch."""
        return self.discarded or (self.parent is not None and self.parent.abandoned)


_RACE_BRANCH: ContextVar[Optional[RaceBranch]] = ContextVar("conductor_race_branch", default=None)


def branch_abandoned() -> bool:
    """Whether the calling task belongs to a race branch that lost."""
    branch = _RACE_BRANCH.get()
    return branch is not None and branch.abandoned


@dataclass(frozen=True)
class GraphRun:
    """Result of ``GraphExecutor.run``."""

    outputs: dict[str, Any]
    context: ExecutionContext
    suspension: Optional[SuspensionPoint] = None

    @property
    def suspended(self) -> bool:
        return self.suspension is not None


# =============================================================================
# Graph Executor
# =============================================================================
class GraphExecutor:
    """Interprets a step graph for one ensemble run.

    Args:
        agent_executor: Callback invoked once per leaf step with the step
            (``input`` already resolved) and the current context.
        ensemble_name: Used for error attribution and logging.
        state_provider: Returns the latest committed state; consulted after
            every completed step so later steps see earlier commits.
        interpolator: Expression resolver (default: a fresh Interpolator).

    Example:
        >>> async def call_agent(step, ctx):
        ...     return {"echo": step.input}
        >>> graph = GraphExecutor(call_agent, "demo")
        >>> result = await graph.execute(
        ...     [{"agent": "echo", "input": "${input.text}"}],
        ...     {"input": {"text": "hi"}},
        ... )
        >>> result.value["echo"]
        {'echo': 'hi'}
    """

    def __init__(
        self,
        agent_executor: AgentExecutorFn,
        ensemble_name: str = "anonymous",
        state_provider: Optional[StateProvider] = None,
        interpolator: Optional[Interpolator] = None,
    ) -> None:
        self._agent_executor = agent_executor
        self._ensemble_name = ensemble_name
        self._state_provider = state_provider
        self._interpolator = interpolator or Interpolator()
        self._background: set[asyncio.Task[Any]] = set()
        self._logger = logger.bind(component="graph_executor", ensemble=ensemble_name)

        self._handlers: dict[StepType, Callable[[Any, ExecutionContext, str], Awaitable[StepOutcome]]] = {
            StepType.AGENT: self._run_agent,
            StepType.PARALLEL: self._run_parallel,
            StepType.BRANCH: self._run_branch,
            StepType.FOREACH: self._run_foreach,
            StepType.TRY: self._run_try,
            StepType.SWITCH: self._run_switch,
            StepType.WHILE: self._run_while,
            StepType.MAP_REDUCE: self._run_map_reduce,
        }
        missing = set(StepType) - set(self._handlers)
        if missing:
            raise NotImplementedError(f"No handler for step types: {sorted(m.value for m in missing)}")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    async def execute(
        self,
        steps: list[Any],
        initial: Union[ExecutionContext, Mapping[str, Any]],
    ) -> Result[dict[str, Any], ConductorError]:
        """Run ``steps`` and return the map of step key to output.

        A suspension is reported as an error here; use ``run()`` to handle
        suspension as a resumable outcome.
        """
        result = await self.run(steps, initial)
        if result.is_err():
            return result
        graph_run = result.value
        if graph_run.suspension is not None:
            point = graph_run.suspension
            return Err(EnsembleExecutionError(self._ensemble_name, point.step_key, point.signal))
        return Ok(graph_run.outputs)

    async def run(
        self,
        steps: list[Any],
        initial: Union[ExecutionContext, Mapping[str, Any]],
        start_index: int = 0,
    ) -> Result[GraphRun, ConductorError]:
        """Run top-level ``steps`` from ``start_index``.

        Args:
            steps: Parsed step nodes (raw dicts are validated first).
            initial: An ExecutionContext, or a mapping with ``input`` and
                ``state``.
            start_index: First top-level step to execute (used on resume).
        """
        if steps and isinstance(steps[0], Mapping):
            parsed = parse_steps(steps)
            if parsed.is_err():
                return parsed
            steps = parsed.value

        context = self._initial_context(initial)
        for index in range(start_index, len(steps)):
            step = steps[index]
            key = step_key(step, index)
            try:
                outcome = await self._execute_step(step, context, index)
            except ExecutionSuspended as signal:
                self._logger.info(
                    "execution_suspended",
                    step=key,
                    inner_step=signal.step_key,
                    reason=signal.reason,
                )
                point = SuspensionPoint(index, signal.step_key or key, context, signal)
                return Ok(GraphRun(dict(context.results), context, point))
            except ConductorError as exc:
                failing = exc.step_key or key
                self._logger.error(
                    "step_failed",
                    step=failing,
                    top_level_step=key,
                    error_code=exc.error_code,
                    error=exc.message,
                )
                return Err(EnsembleExecutionError(self._ensemble_name, failing, exc))
            context = self._fold(context, key, outcome)

        return Ok(GraphRun(dict(context.results), context))

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------
    def _initial_context(self, initial: Union[ExecutionContext, Mapping[str, Any]]) -> ExecutionContext:
        if isinstance(initial, ExecutionContext):
            return initial
        return ExecutionContext(
            input=initial.get("input"),
            state=dict(initial.get("state") or {}),
            env=initial.get("env"),
        )

    async def _execute_step(self, step: Any, context: ExecutionContext, index: int) -> StepOutcome:
        """Dispatch one node; every failure leaves here as a ConductorError."""
        key = step_key(step, index)
        handler = self._handlers[step.step_type]
        try:
            return await handler(step, context, key)
        except ConductorError as exc:
            if exc.step_key is None:
                exc.step_key = key
            raise
        except Exception as exc:
            raise ConductorError(
                message=f"Step {key!r} failed: {exc}",
                error_code="STEP_FAILED",
                details={"cause": repr(exc)},
                step_key=key,
            ) from exc

    def _refresh_state(self, context: ExecutionContext) -> ExecutionContext:
        if self._state_provider is None:
            return context
        return context.with_state(self._state_provider())

    def _fold(self, context: ExecutionContext, key: str, outcome: StepOutcome) -> ExecutionContext:
        merged = {**outcome.keyed, key: outcome.value}
        return self._refresh_state(context.with_results(merged, last_key=key))

    async def _run_sequence(
        self,
        steps: list[Any],
        context: ExecutionContext,
    ) -> tuple[ExecutionContext, list[Any], dict[str, Any]]:
        """Run steps in order. Returns (final context, values, agent outputs)."""
        values: list[Any] = []
        keyed: dict[str, Any] = {}
        for index, step in enumerate(steps):
            outcome = await self._execute_step(step, context, index)
            context = self._fold(context, step_key(step, index), outcome)
            values.append(outcome.value)
            keyed.update(outcome.keyed)
        return context, values, keyed

    def _resolve_items(self, template: Any, context: ExecutionContext, key: str) -> list[Any]:
        items = self._interpolator.resolve(template, context.scope())
        if not isinstance(items, (list, tuple)):
            raise ValidationError(
                f"Step {key!r} items must resolve to a list, got {type(items).__name__}",
                details={"step": key},
            )
        return list(items)

    # -------------------------------------------------------------------------
    # Leaf: agent
    # -------------------------------------------------------------------------
    async def _run_agent(self, step: AgentStep, context: ExecutionContext, key: str) -> StepOutcome:
        guard = step.guard
        if guard is not None and not evaluate_condition(guard, context.scope(), self._interpolator):
            self._logger.debug("step_skipped", step=key, agent=step.agent)
            skipped = {"skipped": True, "reason": SKIPPED_REASON}
            return StepOutcome(skipped, {key: skipped})

        if step.input is not None:
            resolved_input = self._interpolator.resolve(step.input, context.scope())
        else:
            resolved_input = context.previous_output
        resolved = step.model_copy(update={"input": resolved_input})

        self._logger.debug("step_starting", step=key, agent=step.agent)
        try:
            output = await self._agent_executor(resolved, context)
        except ConductorError:
            raise
        except Exception as exc:
            raise AgentExecutionError(step.agent, str(exc) or type(exc).__name__, key, cause=exc) from exc
        self._logger.debug("step_completed", step=key, agent=step.agent)
        return StepOutcome(output, {key: output})

    # -------------------------------------------------------------------------
    # Fan-out: parallel
    # -------------------------------------------------------------------------
    async def _run_parallel(self, step: ParallelStep, context: ExecutionContext, key: str) -> StepOutcome:
        if step.wait_for == WaitFor.ALL:
            tasks = [
                asyncio.ensure_future(self._execute_step(child, context, index))
                for index, child in enumerate(step.steps)
            ]
            settled = await asyncio.gather(*tasks, return_exceptions=True)
            for item in settled:
                if isinstance(item, BaseException):
                    raise item
            keyed: dict[str, Any] = {}
            for outcome in settled:
                keyed.update(outcome.keyed)
            return StepOutcome([outcome.value for outcome in settled], keyed)

        parent = _RACE_BRANCH.get()
        branches: dict[asyncio.Future[StepOutcome], RaceBranch] = {}
        for index, child in enumerate(step.steps):
            branch = RaceBranch(parent)
            branches[asyncio.ensure_future(self._run_race_branch(branch, child, context, index))] = branch

        winner = await self._race(branches, require_success=step.wait_for == WaitFor.ANY, key=key)
        return StepOutcome([winner.value], dict(winner.keyed))

    async def _run_race_branch(
        self,
        branch: RaceBranch,
        step: Any,
        context: ExecutionContext,
        index: int,
    ) -> StepOutcome:
        # Runs in its own task, so the marker is local to this branch.
        _RACE_BRANCH.set(branch)
        return await self._execute_step(step, context, index)

    async def _race(
        self,
        branches: Mapping[asyncio.Future[StepOutcome], RaceBranch],
        require_success: bool,
        key: str,
    ) -> StepOutcome:
        """First successful (or first settled) outcome; losers keep running discarded."""
        tasks = list(branches)
        order = {task: index for index, task in enumerate(tasks)}
        pending = set(tasks)
        failures: list[tuple[int, BaseException]] = []
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=order.__getitem__):
                    error = task.exception()
                    if error is None:
                        return task.result()
                    if isinstance(error, ExecutionSuspended) or not require_success:
                        raise error
                    failures.append((order[task], error))
            failures.sort(key=lambda pair: pair[0])
            self._logger.warning("parallel_all_branches_failed", step=key, failures=len(failures))
            raise failures[0][1]
        finally:
            for task in pending:
                branches[task].discarded = True
                self._detach(task, key)

    def _detach(self, task: asyncio.Future[Any], key: str) -> None:
        """Keep a losing branch alive and observe its outcome."""
        self._background.add(task)

        def _done(finished: asyncio.Future[Any]) -> None:
            self._background.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                self._logger.debug("detached_branch_failed", step=key, error=str(finished.exception()))

        task.add_done_callback(_done)

    async def _bounded(
        self,
        count: int,
        limit: Optional[int],
        work: Callable[[int], Awaitable[None]],
    ) -> None:
        """Run ``work(i)`` for every index with at most ``limit`` in flight.

        Waits for every started unit, then raises the lowest-index failure.
        """
        semaphore = asyncio.Semaphore(limit) if limit else None

        async def guarded(index: int) -> None:
            async with semaphore if semaphore is not None else contextlib.nullcontext():
                await work(index)

        settled = await asyncio.gather(*(guarded(i) for i in range(count)), return_exceptions=True)
        for item in settled:
            if isinstance(item, BaseException):
                raise item

    # -------------------------------------------------------------------------
    # Fan-out: foreach
    # -------------------------------------------------------------------------
    async def _run_foreach(self, step: ForeachStep, context: ExecutionContext, key: str) -> StepOutcome:
        items = self._resolve_items(step.items, context, key)
        results: list[Any] = [None] * len(items)
        completed: list[int] = []
        halted = False

        async def iteration(index: int) -> None:
            nonlocal halted
            if halted:
                return
            iteration_context = context.with_bindings(item=items[index], index=index)
            outcome = await self._execute_step(step.step, iteration_context, 0)
            results[index] = outcome.value
            completed.append(index)

            if step.break_when is not None and not halted:
                check_context = iteration_context.with_bindings(
                    result=outcome.value,
                    results=[results[i] for i in sorted(completed)],
                )
                if evaluate_condition(step.break_when, check_context.scope(), self._interpolator):
                    halted = True
                    self._logger.info("foreach_break", step=key, index=index, completed=len(completed))

        await self._bounded(len(items), step.max_concurrency, iteration)
        return StepOutcome([results[i] for i in sorted(completed)])

    # -------------------------------------------------------------------------
    # Fan-out: map-reduce
    # -------------------------------------------------------------------------
    async def _run_map_reduce(self, step: MapReduceStep, context: ExecutionContext, key: str) -> StepOutcome:
        items = self._resolve_items(step.items, context, key)
        mapped: list[Any] = [None] * len(items)

        async def map_one(index: int) -> None:
            outcome = await self._execute_step(step.map, context.with_bindings(item=items[index], index=index), 0)
            mapped[index] = outcome.value

        await self._bounded(len(items), step.max_concurrency, map_one)
        self._logger.debug("map_completed", step=key, items=len(items))

        reduce_context = context.with_bindings(mapResults=mapped, results=mapped)
        outcome = await self._execute_step(step.reduce, reduce_context, 0)
        return StepOutcome(outcome.value, dict(outcome.keyed))

    # -------------------------------------------------------------------------
    # Sequential control: branch, switch
    # -------------------------------------------------------------------------
    async def _run_branch(self, step: BranchStep, context: ExecutionContext, key: str) -> StepOutcome:
        taken = evaluate_condition(step.condition, context.scope(), self._interpolator)
        steps = step.then if taken else step.else_
        self._logger.debug("branch_evaluated", step=key, taken="then" if taken else "else")
        if not steps:
            return StepOutcome([])
        _, values, keyed = await self._run_sequence(steps, context)
        return StepOutcome(values, keyed)

    async def _run_switch(self, step: SwitchStep, context: ExecutionContext, key: str) -> StepOutcome:
        value = stringify(self._interpolator.resolve(step.value, context.scope()))
        steps = step.cases.get(value)
        if steps is None:
            steps = step.default
        self._logger.debug("switch_evaluated", step=key, value=value, matched=value in step.cases)
        if not steps:
            return StepOutcome([])
        _, values, keyed = await self._run_sequence(steps, context)
        return StepOutcome(values, keyed)

    # -------------------------------------------------------------------------
    # try / catch / finally
    # -------------------------------------------------------------------------
    async def _run_try(self, step: TryStep, context: ExecutionContext, key: str) -> StepOutcome:
        keyed: dict[str, Any] = {}
        value: Any = None
        failure: Optional[ConductorError] = None

        try:
            _, value, produced = await self._run_sequence(step.steps, context)
            keyed.update(produced)
        except ExecutionSuspended:
            raise
        except ConductorError as exc:
            if step.catch is None:
                failure = exc
            else:
                self._logger.warning("try_block_failed", step=key, failed_step=exc.step_key, error=exc.message)
                catch_context = context.with_bindings(error=_error_binding(exc))
                try:
                    _, value, produced = await self._run_sequence(step.catch, catch_context)
                    keyed.update(produced)
                    self._logger.info("try_block_recovered", step=key)
                except ExecutionSuspended:
                    raise
                except ConductorError as catch_exc:
                    failure = catch_exc

        if step.finally_:
            finally_context = context
            if failure is not None:
                finally_context = context.with_bindings(error=_error_binding(failure))
            _, _, produced = await self._run_sequence(step.finally_, finally_context)
            keyed.update(produced)

        if failure is not None:
            raise failure
        return StepOutcome(value, keyed)

    # -------------------------------------------------------------------------
    # while
    # -------------------------------------------------------------------------
    async def _run_while(self, step: WhileStep, context: ExecutionContext, key: str) -> StepOutcome:
        iteration = 0
        last: Optional[list[Any]] = None
        iterations: list[list[Any]] = []
        keyed: dict[str, Any] = {}

        while True:
            loop_context = context.with_bindings(iteration=iteration, lastIterationResults=last)
            if not evaluate_condition(step.condition, loop_context.scope(), self._interpolator):
                break
            if iteration >= step.max_iterations:
                self._logger.error("loop_limit_exceeded", step=key, max_iterations=step.max_iterations)
                raise LoopLimitExceededError(step.max_iterations, key)

            _, values, produced = await self._run_sequence(step.steps, loop_context)
            context = self._refresh_state(context.with_results(produced))
            keyed.update(produced)
            iterations.append(values)
            last = values
            iteration += 1

        self._logger.debug("loop_completed", step=key, iterations=iteration)
        return StepOutcome(iterations, keyed)


def _error_binding(error: ConductorError) -> dict[str, Any]:
    """Shape of the ``error`` name bound inside catch / finally blocks."""
    return {
        "message": error.message,
        "name": type(error).__name__,
        "kind": error.kind.value,
        "code": error.error_code,
        "step": error.step_key,
        "details": error.details,
    }

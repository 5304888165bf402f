"""
conductor.orchestration.executor - Ensemble Executor
======================================================

This module implements the Executor, the public entry point of the engine.
It owns one run of an ensemble end to end: it builds the collaborators, hands
the step graph to the GraphExecutor, and wraps every agent invocation with
caching, retries, timeouts, scoring, state commits and metrics.

Architecture Context:

    ┌──────────────────────────────────────────────────────────────────────┐
    │                              Executor                                │
    │                                                                      │
    │  execute_ensemble(ensemble, input)                                   │
    │     │                                                                │
    │     ├── parse / validate definition, register inline agents          │
    │     ├── resolve flow (static list or dynamic callable)               │
    │     └── GraphExecutor.run(steps, ctx) ─── per agent step ──┐         │
    │                                                            ↓         │
    │           ┌─────────────────────────────────────────────────────┐    │
    │           │ resolve agent → cache read → retry(timeout(agent))   │    │
    │           │   → scoring loop → state commit → cache write       │    │
    │           │   → StepMetric                                      │    │
    │           └─────────────────────────────────────────────────────┘    │
    │                                                                      │
    │  → Ok(ExecutionOutput)  completed or suspended                       │
    │  → Err(ConductorError)  anything else; never raises                  │
    └──────────────────────────────────────────────────────────────────────┘

Run Lifecycle:
    PENDING → RUNNING → COMPLETED | FAILED | SUSPENDED
    SUSPENDED → RUNNING (resume_execution / resume_from_token)

State Consistency:
    Each agent attempt reads through a frozen view of the context's state
    snapshot. Writes of the attempt that produced the accepted output are
    committed to the run's StateManager; writes of failed or timed-out
    attempts are discarded. All commits happen on the event loop, one step at
    a time.

Suspension:
    An agent raising ExecutionSuspended stops the run. The Executor returns an
    ExecutionOutput with status SUSPENDED and a SuspendedExecutionState
    snapshot (also saved to the ResumptionStore, when one is configured).
    Resuming re-executes the top-level step that contained the suspending
    agent; that agent receives ``resume_input``.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from conductor.agents.base import BaseAgent, FunctionAgent
from conductor.core.config import ConductorConfig, get_default_config
from conductor.core.context import ExecutionContext
from conductor.core.enums import RunStatus, ScoringStatus
from conductor.core.exceptions import (
    AgentExecutionError,
    ConductorError,
    ExecutionSuspended,
    ExecutionTimeoutError,
    ResumptionError,
    ValidationError,
)
from conductor.core.flow import AgentStep, EnsembleDefinition, dump_steps, step_key
from conductor.core.loader import (
    load_ensemble_file,
    parse_ensemble,
    parse_steps,
    validate_agent_references,
)
from conductor.core.models import AgentExecutionContext, AgentResponse
from conductor.core.result import Err, Ok, Result
from conductor.core.state import (
    ExecutionMetrics,
    ExecutionOutput,
    ScoreRecord,
    ScoringState,
    StepMetric,
    SuspendedExecutionState,
    SuspensionMetadata,
    check_transition,
)
from conductor.infrastructure.cache import CACHED_OUTPUT_FIELD, Cache, InMemoryCache, build_cache_key
from conductor.infrastructure.resumption_store import ResumptionStore
from conductor.orchestration.agent_registry import AgentRegistry
from conductor.orchestration.error_handler import ErrorHandler, RetryPolicy
from conductor.orchestration.graph_executor import GraphExecutor, GraphRun, branch_abandoned
from conductor.orchestration.interpolation import Interpolator
from conductor.orchestration.scoring import (
    EnsembleScorer,
    EvaluationScore,
    ScoringExecutor,
    parse_score,
    resolve_threshold,
)
from conductor.orchestration.state_manager import StateManager, StepStateAccess

logger = structlog.get_logger()

EnsembleSource = Union[EnsembleDefinition, Mapping[str, Any], str]


# =============================================================================
# Per-Run Bookkeeping
# =============================================================================
@dataclass
class _Run:
    """Mutable record of one run, owned by the Executor for its duration."""

    ensemble: EnsembleDefinition
    execution_id: str
    state: StateManager
    metrics: ExecutionMetrics
    scoring: ScoringState = field(default_factory=ScoringState)
    status: RunStatus = RunStatus.PENDING
    resume_input: Any = None
    resume_step: Optional[str] = None

    def resume_input_for(self, key: str) -> Any:
        if self.resume_step is None or self.resume_step == key:
            return self.resume_input
        return None


def _new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:16]}"


def _new_resume_token() -> str:
    return f"resume_{uuid.uuid4().hex}"


# =============================================================================
# Executor
# =============================================================================
class Executor:
    """Runs ensembles against a registry of agents.

    Args:
        config: Engine configuration (default: ConductorConfig from env).
        registry: Agent registry (default: a fresh AgentRegistry).
        cache: Step result cache. Defaults to an InMemoryCache when caching
            is enabled in the configuration.
        resumption_store: Where suspended executions are saved. Optional;
            the snapshot is always returned to the caller as well.
        env: Values exposed to expressions (``${env.X}``) and agents.
        sleep: Awaitable sleep used for backoff (injectable for tests).

    Example:
        >>> executor = Executor()
        >>> executor.register_function("add-one", lambda ctx: {"value": ctx.input["value"] + 1})
        >>> executor.register_function("times-two", lambda ctx: {"value": ctx.input["value"] * 2})
        >>> result = await executor.execute_ensemble(
        ...     {"name": "math", "flow": [{"agent": "add-one"}, {"agent": "times-two"}]},
        ...     {"value": 10},
        ... )
        >>> result.value.output
        {'value': 22}
    """

    def __init__(
        self,
        config: Optional[ConductorConfig] = None,
        *,
        registry: Optional[AgentRegistry] = None,
        cache: Optional[Cache] = None,
        resumption_store: Optional[ResumptionStore] = None,
        env: Optional[dict[str, Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or get_default_config()
        self._registry = registry if registry is not None else AgentRegistry()
        if cache is None and self._config.cache.enabled:
            cache = InMemoryCache(default_ttl=self._config.cache.default_ttl_seconds)
        self._cache = cache
        self._store = resumption_store
        self._env = dict(env or {})
        self._interpolator = Interpolator()
        self._error_handler = ErrorHandler(sleep=sleep)
        self._scoring_executor = ScoringExecutor(self._config.scoring_retry_delay_seconds, sleep=sleep)
        self._scorer = EnsembleScorer(self._config.default_score_threshold)
        self._background: set[asyncio.Future[Any]] = set()
        self._logger = logger.bind(component="executor")

    # =========================================================================
    # Properties
    # =========================================================================
    @property
    def config(self) -> ConductorConfig:
        return self._config

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @property
    def cache(self) -> Optional[Cache]:
        return self._cache

    # =========================================================================
    # Agent Registration
    # =========================================================================
    def register_agent(self, agent: BaseAgent, replace: bool = False) -> None:
        self._registry.register(agent, replace=replace)

    def register_function(
        self,
        name: str,
        handler: Callable[..., Any],
        version: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
        replace: bool = False,
    ) -> FunctionAgent:
        return self._registry.register_function(name, handler, version=version, config=config, replace=replace)

    def resolve_agent(self, reference: str) -> Result[BaseAgent, ConductorError]:
        return self._registry.resolve(reference)

    # =========================================================================
    # Public Entry Points
    # =========================================================================
    async def execute_ensemble(
        self,
        ensemble: EnsembleSource,
        input: Any = None,
    ) -> Result[ExecutionOutput, ConductorError]:
        """Execute an ensemble and return its output.

        Args:
            ensemble: An EnsembleDefinition, a mapping, or a YAML string.
            input: The ensemble input, visible as ``${input...}``.

        Returns:
            Ok(ExecutionOutput) when the run completes or suspends;
            Err(ConductorError) otherwise. Never raises.
        """
        try:
            parsed = self._coerce_ensemble(ensemble)
            if parsed.is_err():
                return parsed
            definition = parsed.value
            self._register_inline_agents(definition)

            run = _Run(
                ensemble=definition,
                execution_id=_new_execution_id(),
                state=StateManager(definition.state),
                metrics=ExecutionMetrics(ensemble=definition.name),
            )
            steps = await self._resolve_flow(definition, input, run)
            if steps.is_err():
                return steps

            context = ExecutionContext(input=input, state=run.state.snapshot(), env=self._env)
            return await self._drive(run, steps.value, context)
        except ConductorError as exc:
            return Err(exc)
        except Exception as exc:
            self._logger.exception("ensemble_internal_error", error=str(exc))
            return Err(ConductorError(f"Internal error: {exc}", error_code="INTERNAL_ERROR"))

    async def execute_from_yaml(self, source: str, input: Any = None) -> Result[ExecutionOutput, ConductorError]:
        """Parse a YAML ensemble definition and execute it."""
        return await self.execute_ensemble(source, input)

    async def execute_from_file(
        self,
        path: Union[str, Path],
        input: Any = None,
    ) -> Result[ExecutionOutput, ConductorError]:
        """Load an ensemble YAML file and execute it."""
        loaded = load_ensemble_file(path)
        if loaded.is_err():
            return loaded
        return await self.execute_ensemble(loaded.value, input)

    async def resume_execution(
        self,
        suspended: Union[SuspendedExecutionState, Mapping[str, Any]],
        resume_input: Any = None,
    ) -> Result[ExecutionOutput, ConductorError]:
        """Continue a suspended run from its snapshot.

        The top-level step that contained the suspending agent is executed
        again; the suspending agent receives ``resume_input`` and expressions
        can read it as ``${resumeInput...}``.

        Returns:
            Err(ResumptionError) for malformed or expired snapshots, otherwise
            the same outcomes as ``execute_ensemble``.
        """
        try:
            if not isinstance(suspended, SuspendedExecutionState):
                try:
                    suspended = SuspendedExecutionState.model_validate(suspended)
                except PydanticValidationError as exc:
                    return Err(ResumptionError(f"Malformed suspension snapshot: {exc.error_count()} error(s)"))

            if suspended.metadata.is_expired():
                self._logger.warning("resume_rejected_expired", token=suspended.token)
                return Err(
                    ResumptionError(
                        f"Suspended execution {suspended.token!r} has expired",
                        token=suspended.token,
                        error_code="SUSPENSION_EXPIRED",
                    )
                )

            try:
                definition = EnsembleDefinition.model_validate({**suspended.ensemble, "flow": suspended.flow})
            except PydanticValidationError as exc:
                return Err(
                    ResumptionError(
                        f"Suspension snapshot has an invalid ensemble: {exc.error_count()} error(s)",
                        token=suspended.token,
                    )
                )
            steps = parse_steps(suspended.flow)
            if steps.is_err():
                return Err(ResumptionError(steps.error.message, token=suspended.token))

            metrics = (
                ExecutionMetrics.model_validate(suspended.metrics)
                if suspended.metrics
                else ExecutionMetrics(ensemble=definition.name)
            )
            run = _Run(
                ensemble=definition,
                execution_id=suspended.execution_id,
                state=StateManager.from_snapshot(suspended.state),
                metrics=metrics,
                scoring=ScoringState.model_validate(suspended.scoring or {}),
                status=RunStatus.SUSPENDED,
                resume_input=resume_input,
                resume_step=suspended.suspended_step,
            )
            context = (
                ExecutionContext.from_snapshot(suspended.context, self._env)
                .with_state(run.state.snapshot())
                .with_bindings(resumeInput=resume_input)
            )

            if self._store is not None:
                await self._store.delete(suspended.token)
            self._logger.info(
                "ensemble_resuming",
                ensemble=definition.name,
                execution_id=run.execution_id,
                token=suspended.token,
                from_step=suspended.resume_from_step,
            )
            return await self._drive(run, steps.value, context, start_index=suspended.resume_from_step)
        except ConductorError as exc:
            return Err(exc)
        except Exception as exc:
            self._logger.exception("resume_internal_error", error=str(exc))
            return Err(ConductorError(f"Internal error: {exc}", error_code="INTERNAL_ERROR"))

    async def resume_from_token(self, token: str, resume_input: Any = None) -> Result[ExecutionOutput, ConductorError]:
        """Load a snapshot from the ResumptionStore and resume it."""
        if self._store is None:
            return Err(
                ResumptionError(
                    "No resumption store configured",
                    token=token,
                    error_code="NO_RESUMPTION_STORE",
                )
            )
        loaded = await self._store.load(token)
        if loaded.is_err():
            return loaded
        return await self.resume_execution(loaded.value, resume_input)

    # =========================================================================
    # Run Setup
    # =========================================================================
    def _coerce_ensemble(self, ensemble: EnsembleSource) -> Result[EnsembleDefinition, ConductorError]:
        if isinstance(ensemble, EnsembleDefinition):
            if not ensemble.is_dynamic and not ensemble.flow:
                return Err(ValidationError(f'Ensemble "{ensemble.name}" has no flow steps defined'))
            return Ok(ensemble)
        return parse_ensemble(ensemble)

    def _register_inline_agents(self, definition: EnsembleDefinition) -> None:
        for inline in definition.agents:
            agent = FunctionAgent(inline.name, inline.handler, version=inline.version, config=inline.config)
            self._registry.register(agent, replace=True)

    async def _resolve_flow(
        self,
        definition: EnsembleDefinition,
        input: Any,
        run: _Run,
    ) -> Result[list[Any], ConductorError]:
        """Static flows as-is; dynamic flows are generated and validated."""
        if not definition.is_dynamic:
            return Ok(list(definition.flow))

        raw = definition.flow({"input": input, "state": run.state.snapshot(), "env": dict(self._env)})
        if inspect.isawaitable(raw):
            raw = await raw
        if isinstance(raw, list) and raw and not isinstance(raw[0], Mapping):
            raw = dump_steps(raw)
        steps = parse_steps(raw)
        if steps.is_err():
            return steps
        references = validate_agent_references(steps.value)
        if references.is_err():
            return Err(references.error)
        self._logger.debug("dynamic_flow_resolved", ensemble=definition.name, steps=len(steps.value))
        return steps

    # =========================================================================
    # Run Driver
    # =========================================================================
    async def _drive(
        self,
        run: _Run,
        steps: list[Any],
        context: ExecutionContext,
        start_index: int = 0,
    ) -> Result[ExecutionOutput, ConductorError]:
        definition = run.ensemble
        run.status = check_transition(run.status, RunStatus.RUNNING)
        log = self._logger.bind(ensemble=definition.name, execution_id=run.execution_id)
        log.info("ensemble_starting", steps=len(steps), start_index=start_index)

        graph = GraphExecutor(
            partial(self._execute_agent_step, run),
            ensemble_name=definition.name,
            state_provider=lambda: run.state.snapshot(),
            interpolator=self._interpolator,
        )

        result = await graph.run(steps, context, start_index=start_index)
        run.metrics.finish()
        run.metrics.state_access = run.state.access_report()

        if result.is_err():
            run.status = check_transition(run.status, RunStatus.FAILED)
            log.error(
                "ensemble_failed",
                step=result.error.step_key,
                error_code=result.error.error_code,
                error=result.error.message,
                duration_seconds=round(run.metrics.total_duration_seconds, 3),
            )
            return result

        graph_run = result.value
        if graph_run.suspension is not None:
            return Ok(await self._suspend(run, steps, graph_run))

        output = self._build_output(definition, graph_run, steps)
        run.status = check_transition(run.status, RunStatus.COMPLETED)
        log.info(
            "ensemble_completed",
            steps=len(run.metrics.steps),
            cache_hits=run.metrics.cache_hits,
            duration_seconds=round(run.metrics.total_duration_seconds, 3),
        )
        return Ok(
            ExecutionOutput(
                execution_id=run.execution_id,
                status=RunStatus.COMPLETED,
                output=output,
                results=graph_run.outputs,
                metrics=run.metrics,
                scoring=self._scoring_summary(run),
            )
        )

    def _build_output(self, definition: EnsembleDefinition, graph_run: GraphRun, steps: list[Any]) -> Any:
        if definition.output is not None:
            return self._interpolator.resolve(definition.output, graph_run.context.scope())
        if not steps:
            return None
        return graph_run.outputs.get(step_key(steps[-1], len(steps) - 1))

    def _scoring_summary(self, run: _Run) -> Optional[dict[str, Any]]:
        if not run.scoring.history:
            return None
        return self._scorer.summary(run.scoring)

    async def _suspend(self, run: _Run, steps: list[Any], graph_run: GraphRun) -> ExecutionOutput:
        point = graph_run.suspension
        signal = point.signal
        ttl = signal.ttl_seconds or self._config.resumption_ttl_seconds

        snapshot = SuspendedExecutionState(
            token=_new_resume_token(),
            execution_id=run.execution_id,
            ensemble=run.ensemble.to_snapshot(),
            flow=dump_steps(steps),
            context=point.context.to_snapshot(),
            state=run.state.to_snapshot(),
            scoring=run.scoring.model_dump(mode="json"),
            resume_from_step=point.step_index,
            suspended_step=point.step_key,
            metrics=run.metrics.model_dump(mode="json"),
            metadata=SuspensionMetadata(
                suspended_by=signal.suspended_by,
                reason=signal.reason,
                expires_at=SuspendedExecutionState.expiry(ttl),
            ),
        )

        if self._store is not None:
            saved = await self._store.save(snapshot)
            if saved.is_err():
                self._logger.warning("suspension_save_failed", token=snapshot.token, error=saved.error.message)

        run.status = check_transition(run.status, RunStatus.SUSPENDED)
        self._logger.info(
            "ensemble_suspended",
            ensemble=run.ensemble.name,
            execution_id=run.execution_id,
            step=point.step_key,
            reason=signal.reason,
            token=snapshot.token,
            expires_at=str(snapshot.metadata.expires_at),
        )
        return ExecutionOutput(
            execution_id=run.execution_id,
            status=RunStatus.SUSPENDED,
            results=graph_run.outputs,
            metrics=run.metrics,
            scoring=self._scoring_summary(run),
            suspension=snapshot,
        )

    # =========================================================================
    # Agent Step Wrapper
    # =========================================================================
    async def _execute_agent_step(self, run: _Run, step: AgentStep, context: ExecutionContext) -> Any:
        """Everything around one agent invocation. Called by the GraphExecutor."""
        key = step.key
        started = time.perf_counter()
        attempts = 0

        try:
            agent = self._registry.resolve(step.agent).unwrap()

            cache_key = self._cache_key_for(step)
            if cache_key is not None:
                hit, cached = await self._cache_read(cache_key, key)
                if hit:
                    self._logger.debug("cache_hit", step=key, agent=step.agent)
                    run.metrics.record(
                        StepMetric(
                            name=key,
                            agent=step.agent,
                            duration_seconds=time.perf_counter() - started,
                            cached=True,
                            attempts=0,
                        )
                    )
                    return cached

            policy = RetryPolicy.from_settings(step.retry)
            timeout = step.timeout or self._config.default_agent_timeout_seconds
            accepted: list[StepStateAccess] = []

            async def attempt(number: int) -> Any:
                nonlocal attempts
                attempts += 1
                access = run.state.for_step(key, step.state, source=context.state)
                agent_context = AgentExecutionContext(
                    input=step.input,
                    state=access.view,
                    set_state=access.set_state,
                    config=dict(step.config),
                    env=dict(self._env),
                    ensemble_name=run.ensemble.name,
                    step_key=key,
                    execution_id=run.execution_id,
                    previous_outputs=dict(context.results),
                    resume_input=run.resume_input_for(key),
                    attempt=number,
                )
                response = await self._invoke_with_timeout(agent, agent_context, step, timeout)
                if not response.success:
                    details = {}
                    if "exception_type" in response.metadata:
                        details["exception_type"] = response.metadata["exception_type"]
                    raise AgentExecutionError(
                        step.agent,
                        response.error or "agent reported failure",
                        step_key=key,
                        error_code=response.error_code or "AGENT_EXECUTION_ERROR",
                        details=details,
                    )
                # A timeout fallback is accepted without the late attempt's writes.
                accepted[:] = [] if response.metadata.get("timed_out") else [access]
                return response.data

            async def invoke(_: int) -> Any:
                value, _used = await self._error_handler.run_with_retry(attempt, policy, step.agent, key)
                return value

            if step.scoring is not None and (run.ensemble.scoring is None or run.ensemble.scoring.enabled):
                output = await self._run_scored(run, step, context, invoke)
            else:
                output = await invoke(1)

            if branch_abandoned():
                self._logger.debug("detached_result_discarded", step=key, agent=step.agent)
                return output
            if accepted:
                run.state = run.state.apply(accepted[0])
            if cache_key is not None:
                await self._cache_write(cache_key, output, step, key)
            if run.resume_step == key:
                run.resume_input = None

            run.metrics.record(
                StepMetric(
                    name=key,
                    agent=step.agent,
                    duration_seconds=time.perf_counter() - started,
                    attempts=attempts,
                )
            )
            return output
        except ConductorError as exc:
            if not isinstance(exc, ExecutionSuspended) and not branch_abandoned():
                run.metrics.record(
                    StepMetric(
                        name=key,
                        agent=step.agent,
                        duration_seconds=time.perf_counter() - started,
                        success=False,
                        attempts=attempts,
                    )
                )
            raise

    async def _invoke_with_timeout(
        self,
        agent: BaseAgent,
        agent_context: AgentExecutionContext,
        step: AgentStep,
        timeout: float,
    ) -> AgentResponse:
        """Wait up to ``timeout`` seconds. A late attempt keeps running detached."""
        task = asyncio.ensure_future(agent.execute(agent_context))
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()

        self._detach(task, step.key)
        if step.on_timeout is not None and step.on_timeout.has_fallback:
            self._logger.warning("agent_timeout_fallback", step=step.key, agent=step.agent, timeout_seconds=timeout)
            return AgentResponse.ok(step.on_timeout.fallback, timed_out=True)
        self._logger.warning("agent_timeout", step=step.key, agent=step.agent, timeout_seconds=timeout)
        raise ExecutionTimeoutError(step.agent, timeout, step_key=step.key)

    def _detach(self, task: asyncio.Future[Any], key: str) -> None:
        self._background.add(task)

        def _done(finished: asyncio.Future[Any]) -> None:
            self._background.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                self._logger.debug("late_attempt_failed", step=key, error=str(finished.exception()))

        task.add_done_callback(_done)

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------
    async def _run_scored(
        self,
        run: _Run,
        step: AgentStep,
        context: ExecutionContext,
        invoke: Callable[[int], Awaitable[Any]],
    ) -> Any:
        scoring = step.scoring
        ensemble_scoring = run.ensemble.scoring
        threshold = resolve_threshold(scoring, ensemble_scoring, self._config.default_score_threshold)
        evaluator = self._registry.resolve(scoring.evaluator).unwrap()
        criteria = scoring.criteria or (ensemble_scoring.criteria if ensemble_scoring else {})
        previous: list[float] = []

        async def evaluate(output: Any, attempt: int) -> EvaluationScore:
            eval_context = AgentExecutionContext(
                input={
                    "output": output,
                    "attempt": attempt,
                    "previousScore": previous[-1] if previous else None,
                    "criteria": criteria,
                },
                env=dict(self._env),
                ensemble_name=run.ensemble.name,
                step_key=step.key,
                execution_id=run.execution_id,
                previous_outputs=dict(context.results),
            )
            response = await evaluator.execute(eval_context)
            if not response.success:
                raise AgentExecutionError(
                    scoring.evaluator,
                    f"evaluator failed: {response.error or 'unknown error'}",
                    step_key=step.key,
                    error_code=response.error_code or "EVALUATOR_FAILED",
                )
            try:
                value, feedback, breakdown = parse_score(response.data)
            except ValueError as exc:
                raise AgentExecutionError(
                    scoring.evaluator,
                    str(exc),
                    step_key=step.key,
                    error_code="INVALID_SCORE",
                ) from exc

            passed = value >= threshold
            previous.append(value)
            run.scoring = self._scorer.record(
                run.scoring,
                ScoreRecord(
                    step=step.key,
                    score=value,
                    passed=passed,
                    attempt=attempt,
                    status=ScoringStatus.PASSED if passed else ScoringStatus.BELOW_THRESHOLD,
                    threshold=threshold,
                    feedback=feedback,
                    breakdown=breakdown,
                ),
            )
            return EvaluationScore(
                score=value,
                passed=passed,
                threshold=threshold,
                feedback=feedback,
                breakdown=breakdown,
            )

        scored = await self._scoring_executor.execute_with_scoring(
            invoke, evaluate, scoring, step.key, agent_name=step.agent
        )
        if scored.status == ScoringStatus.MAX_RETRIES_EXCEEDED:
            self._logger.warning(
                "scoring_max_retries_exceeded",
                step=step.key,
                agent=step.agent,
                score=scored.score.score,
                attempts=scored.attempts,
            )
        return scored.output

    # -------------------------------------------------------------------------
    # Cache (soft-fail)
    # -------------------------------------------------------------------------
    def _cache_key_for(self, step: AgentStep) -> Optional[str]:
        if step.cache is None or step.cache.bypass or self._cache is None or not self._config.cache.enabled:
            return None
        return build_cache_key(step.agent, step.input, self._config.cache.key_prefix)

    async def _cache_read(self, cache_key: str, step: str) -> tuple[bool, Any]:
        """(hit, output). Outputs are stored wrapped so a cached None is still a hit."""
        try:
            result = await self._cache.get(cache_key)
        except Exception as exc:
            self._logger.warning("cache_read_failed", step=step, error=str(exc))
            return False, None
        if result.is_err():
            self._logger.warning("cache_read_failed", step=step, error=result.error.message)
            return False, None
        entry = result.value
        if not isinstance(entry, Mapping) or CACHED_OUTPUT_FIELD not in entry:
            return False, None
        return True, entry[CACHED_OUTPUT_FIELD]

    async def _cache_write(self, cache_key: str, value: Any, step: AgentStep, key: str) -> None:
        ttl = step.cache.ttl or self._config.cache.default_ttl_seconds
        try:
            result = await self._cache.put(
                cache_key, {CACHED_OUTPUT_FIELD: value}, ttl=ttl, tags=list(step.cache.tags)
            )
        except Exception as exc:
            self._logger.warning("cache_write_failed", step=key, error=str(exc))
            return
        if result.is_err():
            self._logger.warning("cache_write_failed", step=key, error=result.error.message)

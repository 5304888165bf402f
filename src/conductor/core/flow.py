"""
conductor.core.flow - Step Graph and Ensemble Definitions
===========================================================

This module defines the declarative shape of a workflow. An ensemble is a
named definition whose ``flow`` is a list of step nodes; a step node is a
closed tagged union of one leaf kind (agent) and seven control-flow kinds:

    StepNode
        ├── AgentStep       agent: "summarize@2", input: {...}, retry, cache, ...
        ├── ParallelStep    steps: [...], waitFor: all | any | first
        ├── BranchStep      condition, then: [...], else: [...]
        ├── ForeachStep     items, step, maxConcurrency, breakWhen
        ├── TryStep         steps: [...], catch: [...], finally: [...]
        ├── SwitchStep      value, cases: {"a": [...]}, default: [...]
        ├── WhileStep       condition, maxIterations, steps: [...]
        └── MapReduceStep   items, map, reduce, maxConcurrency

Control steps nest step nodes recursively; the graph is a tree.

Authoring Surface:
    Definitions are usually written in YAML/JSON with camelCase keys
    (``waitFor``, ``maxConcurrency``). Every model accepts both the camelCase
    alias and the snake_case field name. The discriminator is the ``type``
    key; a mapping without ``type`` is an agent step.

    flow:
      - agent: fetch
        input: { url: "${input.url}" }
      - type: parallel
        waitFor: all
        steps:
          - { agent: summarize, id: summary, input: "${fetch.output}" }
          - { agent: classify, id: labels, input: "${fetch.output}" }

Design Principles:
    1. Frozen: a parsed definition is never modified during execution
    2. Validated upfront: malformed structure is rejected before a run starts
    3. Exhaustive: every node exposes ``step_type`` so the Graph Executor can
       dispatch through a complete handler table
"""

from __future__ import annotations

from typing import Annotated, Any, Callable, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from conductor.core.enums import BackoffStrategy, OnFailure, StepType, WaitFor


# =============================================================================
# Shared Model Configuration
# =============================================================================
# camelCase aliases for the authoring surface, snake_case attributes in code,
# frozen instances, and unknown keys rejected so typos surface at parse time.
# =============================================================================
_STEP_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="forbid",
)


# =============================================================================
# Agent Step Sub-Configurations
# =============================================================================
class StateAccess(BaseModel):
    """Per-step state capabilities.

    Attributes:
        use: Keys the step may read.
        set_: Keys the step may write (authored as ``set``).
    """

    model_config = _STEP_CONFIG

    use: list[str] = Field(default_factory=list)
    set_: list[str] = Field(default_factory=list, alias="set")


class CacheSettings(BaseModel):
    """Step-level cache block. Presence of the block enables caching."""

    model_config = _STEP_CONFIG

    ttl: Optional[int] = Field(default=None, ge=1, description="TTL in seconds")
    bypass: bool = Field(default=False, description="Skip both read and write")
    tags: list[str] = Field(default_factory=list)


class RetrySettings(BaseModel):
    """Retry policy for an agent step. Delays are in seconds."""

    model_config = _STEP_CONFIG

    attempts: int = Field(default=1, ge=1, le=20, description="Total attempts")
    backoff: BackoffStrategy = Field(default=BackoffStrategy.EXPONENTIAL)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    retry_on: Optional[list[str]] = Field(
        default=None,
        description="Error kinds or error codes that are retried (None = all)",
    )


class ScoreThresholds(BaseModel):
    """Score bands. Only ``minimum`` drives pass/fail."""

    model_config = _STEP_CONFIG

    minimum: Optional[float] = Field(default=None, ge=0, le=1)
    target: Optional[float] = Field(default=None, ge=0, le=1)
    excellent: Optional[float] = Field(default=None, ge=0, le=1)


class StepScoring(BaseModel):
    """Post-execution quality evaluation for an agent step."""

    model_config = _STEP_CONFIG

    evaluator: str = Field(..., min_length=1, description="Evaluator agent reference")
    thresholds: ScoreThresholds = Field(default_factory=ScoreThresholds)
    criteria: Union[dict[str, Any], list[Any]] = Field(default_factory=dict)
    on_failure: OnFailure = Field(default=OnFailure.RETRY)
    retry_limit: int = Field(default=3, ge=0, le=20)
    require_improvement: bool = Field(default=False)
    min_improvement: float = Field(default=0.05, ge=0, le=1)


class OnTimeout(BaseModel):
    """Timeout fallback. When ``fallback`` is given it replaces the error."""

    model_config = _STEP_CONFIG

    fallback: Any = None
    error: bool = True

    @property
    def has_fallback(self) -> bool:
        return "fallback" in self.model_fields_set


# =============================================================================
# Agent Step (leaf)
# =============================================================================
class AgentStep(BaseModel):
    """A leaf step that invokes one registered agent.

    Attributes:
        agent: Agent reference, ``name`` or ``name@version``.
        id: Explicit step key. Defaults to ``name`` then ``agent``.
        name: Display name, also usable as the step key.
        input: Input mapping; may contain ``${...}`` expressions. When absent
            the previous step's output (or the ensemble input) is used.
        condition: Skip the step when this evaluates false (alias ``when``).
        timeout: Per-attempt deadline in seconds.
        config: Static agent configuration passed through to the agent.
    """

    model_config = _STEP_CONFIG

    type: Literal["agent"] = "agent"
    agent: str = Field(..., min_length=1)
    id: Optional[str] = None
    name: Optional[str] = None
    input: Any = None
    state: Optional[StateAccess] = None
    cache: Optional[CacheSettings] = None
    retry: Optional[RetrySettings] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    on_timeout: Optional[OnTimeout] = None
    condition: Any = None
    when: Any = None
    scoring: Optional[StepScoring] = None
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def step_type(self) -> StepType:
        return StepType.AGENT

    @property
    def key(self) -> str:
        """Key under which this step's output is stored."""
        return self.id or self.name or self.agent

    @property
    def guard(self) -> Any:
        """The skip condition, whichever of ``condition``/``when`` was given."""
        return self.condition if self.condition is not None else self.when


# =============================================================================
# Control Steps
# =============================================================================
# Each control step carries a literal ``type`` tag. Their keys are derived
# from their position: ``f"{type}_{index}"`` within the enclosing sequence.
# =============================================================================
class ParallelStep(BaseModel):
    """Run child steps concurrently against the same context snapshot."""

    model_config = _STEP_CONFIG

    type: Literal["parallel"] = "parallel"
    steps: list[StepNode] = Field(..., min_length=1)
    wait_for: WaitFor = Field(default=WaitFor.ALL)

    @property
    def step_type(self) -> StepType:
        return StepType.PARALLEL


class BranchStep(BaseModel):
    """Run ``then`` when the condition holds, otherwise ``else`` (if any)."""

    model_config = _STEP_CONFIG

    type: Literal["branch"] = "branch"
    condition: Any
    then: list[StepNode] = Field(default_factory=list)
    else_: Optional[list[StepNode]] = Field(default=None, alias="else")

    @property
    def step_type(self) -> StepType:
        return StepType.BRANCH


class ForeachStep(BaseModel):
    """Run one step per item, binding ``item`` and ``index``."""

    model_config = _STEP_CONFIG

    type: Literal["foreach"] = "foreach"
    items: Any
    step: StepNode
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    break_when: Any = None

    @property
    def step_type(self) -> StepType:
        return StepType.FOREACH


class TryStep(BaseModel):
    """try / catch / finally over step sequences."""

    model_config = _STEP_CONFIG

    type: Literal["try"] = "try"
    steps: list[StepNode] = Field(..., min_length=1)
    catch: Optional[list[StepNode]] = None
    finally_: Optional[list[StepNode]] = Field(default=None, alias="finally")

    @property
    def step_type(self) -> StepType:
        return StepType.TRY


class SwitchStep(BaseModel):
    """Run the case whose key equals the stringified value."""

    model_config = _STEP_CONFIG

    type: Literal["switch"] = "switch"
    value: Any
    cases: dict[str, list[StepNode]] = Field(default_factory=dict)
    default: Optional[list[StepNode]] = None

    @property
    def step_type(self) -> StepType:
        return StepType.SWITCH


class WhileStep(BaseModel):
    """Bounded loop. ``max_iterations`` is a required safety cap."""

    model_config = _STEP_CONFIG

    type: Literal["while"] = "while"
    condition: Any
    max_iterations: int = Field(..., gt=0)
    steps: list[StepNode] = Field(..., min_length=1)

    @property
    def step_type(self) -> StepType:
        return StepType.WHILE


class MapReduceStep(BaseModel):
    """Map every item (bounded concurrency), then reduce once."""

    model_config = _STEP_CONFIG

    type: Literal["map-reduce", "mapReduce"] = "map-reduce"
    items: Any
    map: StepNode
    reduce: StepNode
    max_concurrency: Optional[int] = Field(default=None, ge=1)

    @field_validator("type")
    @classmethod
    def _canonical_type(cls, value: str) -> str:
        return "map-reduce"

    @property
    def step_type(self) -> StepType:
        return StepType.MAP_REDUCE


# =============================================================================
# The StepNode Union
# =============================================================================
def _step_tag(value: Any) -> str:
    """Return the union tag for raw input or an already-built model."""
    if isinstance(value, dict):
        tag = value.get("type", "agent")
    else:
        tag = getattr(value, "type", "agent")
    if tag == "mapReduce":
        return "map-reduce"
    return tag


StepNode = Annotated[
    Union[
        Annotated[AgentStep, Tag("agent")],
        Annotated[ParallelStep, Tag("parallel")],
        Annotated[BranchStep, Tag("branch")],
        Annotated[ForeachStep, Tag("foreach")],
        Annotated[TryStep, Tag("try")],
        Annotated[SwitchStep, Tag("switch")],
        Annotated[WhileStep, Tag("while")],
        Annotated[MapReduceStep, Tag("map-reduce")],
    ],
    Discriminator(_step_tag),
]

for _model in (ParallelStep, BranchStep, ForeachStep, TryStep, SwitchStep, WhileStep, MapReduceStep):
    _model.model_rebuild()

STEP_LIST_ADAPTER: TypeAdapter[list[Any]] = TypeAdapter(list[StepNode])


def step_key(step: Any, index: int) -> str:
    """Key for a step at ``index`` in its enclosing sequence."""
    if isinstance(step, AgentStep):
        return step.key
    return f"{step.step_type.value}_{index}"


def iter_agent_steps(steps: list[Any]) -> Iterator[AgentStep]:
    """Yield every agent step in a step tree, depth first."""
    for step in steps:
        if isinstance(step, AgentStep):
            yield step
        elif isinstance(step, (ParallelStep, WhileStep)):
            yield from iter_agent_steps(step.steps)
        elif isinstance(step, BranchStep):
            yield from iter_agent_steps(step.then)
            yield from iter_agent_steps(step.else_ or [])
        elif isinstance(step, ForeachStep):
            yield from iter_agent_steps([step.step])
        elif isinstance(step, TryStep):
            yield from iter_agent_steps(step.steps)
            yield from iter_agent_steps(step.catch or [])
            yield from iter_agent_steps(step.finally_ or [])
        elif isinstance(step, SwitchStep):
            for case_steps in step.cases.values():
                yield from iter_agent_steps(case_steps)
            yield from iter_agent_steps(step.default or [])
        elif isinstance(step, MapReduceStep):
            yield from iter_agent_steps([step.map, step.reduce])


# =============================================================================
# Ensemble Definition
# =============================================================================
class StateDeclaration(BaseModel):
    """Shared state declaration: optional schema plus initial values."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    schema_: dict[str, Any] = Field(default_factory=dict, alias="schema")
    initial: dict[str, Any] = Field(default_factory=dict)


class EnsembleScoring(BaseModel):
    """Ensemble-wide scoring defaults."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    enabled: bool = True
    default_thresholds: ScoreThresholds = Field(default_factory=ScoreThresholds)
    criteria: Union[dict[str, Any], list[Any]] = Field(default_factory=dict)


class InlineAgent(BaseModel):
    """An agent declared inside the ensemble itself, backed by a callable."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    handler: Callable[..., Any]
    version: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict)


class EnsembleDefinition(BaseModel):
    """A named workflow definition.

    Attributes:
        name: Ensemble name, used in error attribution and metrics.
        flow: Static list of step nodes, or a callable receiving
            ``{"input", "state", "env"}`` and returning one.
        output: Output mapping resolved against the final context. When
            absent the last top-level step's output is returned.
        agents: Inline agents registered before the run starts.

    Example:
        >>> ensemble = EnsembleDefinition(
        ...     name="double",
        ...     flow=[{"agent": "add-one"}, {"agent": "times-two"}],
        ... )
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    version: Optional[str] = None
    state: Optional[StateDeclaration] = None
    scoring: Optional[EnsembleScoring] = None
    agents: list[InlineAgent] = Field(default_factory=list)
    flow: Union[list[StepNode], Callable[..., Any]]
    output: Any = None

    @property
    def is_dynamic(self) -> bool:
        return callable(self.flow)

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe dump without the flow and inline agent handlers."""
        return self.model_dump(mode="json", by_alias=True, exclude={"flow", "agents"})


def dump_steps(steps: list[Any]) -> list[dict[str, Any]]:
    """Serialize step nodes to JSON-safe dicts that parse back identically."""
    return STEP_LIST_ADAPTER.dump_python(steps, mode="json", by_alias=True, exclude_none=True)

"""
conductor.core.models - Agent Invocation Models
=================================================

The two models that cross the boundary between the orchestrator and a
pluggable agent:

    ┌──────────────┐   AgentExecutionContext   ┌──────────────┐
    │   Executor    │ ───────────────────────→ │    Agent      │
    │  (per step)   │                          │  (executes)   │
    │              │ ←─────────────────────── │              │
    └──────────────┘       AgentResponse       └──────────────┘

The agent owns all I/O. Retries, caching, timeouts and scoring happen on the
Executor's side of this boundary; an agent only ever sees one attempt.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Agent Execution Context
# =============================================================================
# What an agent receives for one attempt. ``state`` is a read-only mapping
# holding only the keys the step declared in ``state.use``; ``set_state``
# accepts writes, silently dropping keys outside ``state.set``.
# =============================================================================
class AgentExecutionContext(BaseModel):
    """Input bundle for a single agent attempt.

    Attributes:
        input: The resolved step input.
        state: Read-only view of the declared ``use`` keys.
        set_state: Writer for declared ``set`` keys (no-op when the step
            declares no state access).
        config: Static configuration from the step and inline agent.
        env: Environment values exposed to expressions.
        ensemble_name: Ensemble being executed.
        step_key: Key of the step being executed.
        execution_id: Identifier of the run.
        previous_outputs: Outputs of the steps completed so far.
        resume_input: Data supplied when a suspended run was resumed.
        attempt: 1-based attempt number under the retry policy.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    input: Any = None
    state: Any = Field(default_factory=dict)
    set_state: Callable[[dict[str, Any]], None] = Field(default=lambda updates: None)
    config: dict[str, Any] = Field(default_factory=dict)
    env: dict[str, Any] = Field(default_factory=dict)
    ensemble_name: str = ""
    step_key: str = ""
    execution_id: str = ""
    previous_outputs: dict[str, Any] = Field(default_factory=dict)
    resume_input: Any = None
    attempt: int = 1


# =============================================================================
# Agent Response
# =============================================================================
class AgentResponse(BaseModel):
    """What an agent returns for one attempt.

    A failed response is turned into an AgentExecutionError by the Executor;
    ``error_code`` is matched against a step's ``retryOn`` filter.

    Example:
        >>> AgentResponse.ok({"value": 11})
        >>> AgentResponse.failure("upstream unavailable", error_code="UPSTREAM_503")
    """

    success: bool = True
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> AgentResponse:
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def failure(cls, error: str, error_code: Optional[str] = None, **metadata: Any) -> AgentResponse:
        return cls(success=False, error=error, error_code=error_code, metadata=metadata)

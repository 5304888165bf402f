"""
conductor.agents.base - Abstract Base Agent
=============================================

This module defines the BaseAgent abstract class, the foundation every
pluggable unit of work inherits from, plus FunctionAgent, which adapts a
plain (sync or async) callable into an agent.

Template Method Pattern:
    All agents share the same lifecycle for one attempt:

    ┌─────────────────────────────────────────────────────┐
    │  BaseAgent.execute(context)      ← Public API        │
    │  ┌──────────────────────────────────────────────┐   │
    │  │ 1. _validate_input(context)  ← Override this │   │
    │  │ 2. _execute(context)         ← Override this │   │
    │  │ 3. Wrap raw data in AgentResponse            │   │
    │  │ 4. Turn exceptions into failure responses    │   │
    │  └──────────────────────────────────────────────┘   │
    └─────────────────────────────────────────────────────┘

    ConductorErrors raised by ``_execute`` (ExecutionSuspended in particular)
    are re-raised untouched so the Executor can act on them.

Subclass Contract:
    - _execute(context) → AgentResponse | Any    # Your agent's core logic
    - Optionally: _validate_input(context) → bool

Usage:
    class AddOne(BaseAgent):
        async def _execute(self, context):
            return {"value": context.input["value"] + 1}

    executor.register_agent(AddOne("add-one"))
"""

from __future__ import annotations

import inspect
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import structlog

from conductor.core.exceptions import ConductorError
from conductor.core.models import AgentExecutionContext, AgentResponse

logger = structlog.get_logger()


# =============================================================================
# BaseAgent
# =============================================================================
class BaseAgent(ABC):
    """Abstract base class for all agents.

    Attributes:
        name: Registry name of the agent.
        version: Optional version, registered as ``name@version``.
        config: Static configuration merged under each step's ``config``.
        description: Human-readable description.

    Example:
        >>> class Echo(BaseAgent):
        ...     async def _execute(self, context):
        ...         return context.input
        >>> response = await Echo("echo").execute(AgentExecutionContext(input=1))
        >>> response.data
        1
    """

    def __init__(
        self,
        name: str,
        version: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
        description: str = "",
    ) -> None:
        if not name or "@" in name:
            raise ValueError(f"Invalid agent name: {name!r}")
        self._name = name
        self._version = version
        self._config = dict(config or {})
        self._description = description
        self._logger = logger.bind(component="agent", agent=self.reference)

    # =========================================================================
    # Properties
    # =========================================================================
    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> Optional[str]:
        return self._version

    @property
    def reference(self) -> str:
        """``name@version`` when versioned, otherwise ``name``."""
        return f"{self._name}@{self._version}" if self._version else self._name

    @property
    def config(self) -> dict[str, Any]:
        return dict(self._config)

    @property
    def description(self) -> str:
        return self._description

    # =========================================================================
    # Template Method
    # =========================================================================
    async def execute(self, context: AgentExecutionContext) -> AgentResponse:
        """Run one attempt and always return an AgentResponse.

        Raises:
            ConductorError: Re-raised from ``_execute`` unchanged (including
                ExecutionSuspended).
        """
        self._logger.debug("agent_execution_starting", step=context.step_key, attempt=context.attempt)
        started = time.perf_counter()

        if not await self._validate_input(context):
            self._logger.warning("agent_input_invalid", step=context.step_key)
            return AgentResponse.failure(
                f"Input validation failed for agent {self.reference}",
                error_code="INPUT_VALIDATION_FAILED",
            )

        try:
            result = await self._execute(context)
        except ConductorError:
            raise
        except Exception as exc:
            self._logger.error(
                "agent_execution_failed",
                step=context.step_key,
                error=str(exc),
                duration_seconds=round(time.perf_counter() - started, 3),
            )
            return AgentResponse.failure(
                str(exc) or type(exc).__name__,
                error_code="AGENT_EXCEPTION",
                exception_type=type(exc).__name__,
            )

        response = result if isinstance(result, AgentResponse) else AgentResponse.ok(result)
        self._logger.debug(
            "agent_execution_completed",
            step=context.step_key,
            success=response.success,
            duration_seconds=round(time.perf_counter() - started, 3),
        )
        return response

    # =========================================================================
    # Hooks
    # =========================================================================
    @abstractmethod
    async def _execute(self, context: AgentExecutionContext) -> Any:
        """Do the agent's work. Return an AgentResponse or raw output data."""
        ...

    async def _validate_input(self, context: AgentExecutionContext) -> bool:
        """Whether the agent can handle this input. Defaults to True."""
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(reference={self.reference!r})"


# =============================================================================
# FunctionAgent
# =============================================================================
class FunctionAgent(BaseAgent):
    """Agent backed by a plain callable.

    The handler receives the AgentExecutionContext and may be sync or async.
    It may return an AgentResponse or raw output data.

    Example:
        >>> agent = FunctionAgent("add-one", lambda ctx: {"value": ctx.input["value"] + 1})
    """

    def __init__(
        self,
        name: str,
        handler: Callable[[AgentExecutionContext], Any],
        version: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
        description: str = "",
    ) -> None:
        super().__init__(name, version=version, config=config, description=description)
        self._handler = handler

    async def _execute(self, context: AgentExecutionContext) -> Any:
        result = self._handler(context)
        if inspect.isawaitable(result):
            result = await result
        return result

"""
conductor.orchestration.agent_registry - Agent Registry
=========================================================

Maps agent references to agent instances for the Executor.

    register(FunctionAgent("summarize", fn))              → "summarize"
    register(FunctionAgent("summarize", fn2, version="2")) → "summarize@2"

Resolution Order for ``resolve(reference)``:
    1. ``name``           → exact registration, else AgentNotFoundError
    2. ``name@version``   → exact versioned registration
                          → the unversioned base registration (remembered
                            under the versioned key for later lookups)
                          → AgentConfigError: true version resolution needs
                            an external catalog integration

Concurrency:
    Reads are lock-free dictionary lookups and are safe during fan-out.
    Writes (registration and the versioned fallback memo) take a lock.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

import structlog

from conductor.agents.base import BaseAgent, FunctionAgent
from conductor.core.exceptions import AgentConfigError, AgentNotFoundError, ConductorError
from conductor.core.loader import parse_agent_reference
from conductor.core.result import Err, Ok, Result

logger = structlog.get_logger()


class AgentRegistry:
    """Read-mostly registry of agents keyed by reference.

    Example:
        >>> registry = AgentRegistry()
        >>> registry.register_function("echo", lambda ctx: ctx.input)
        >>> registry.resolve("echo@1").is_ok()   # falls back to "echo"
        True
    """

    def __init__(self) -> None:
        self._agents: dict[str, BaseAgent] = {}
        self._fallbacks: set[str] = set()
        self._lock = threading.Lock()
        self._logger = logger.bind(component="agent_registry")

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------
    def register(self, agent: BaseAgent, replace: bool = False) -> None:
        """Register an agent under its reference.

        Raises:
            AgentConfigError: If the reference is taken and ``replace`` is False.
        """
        key = agent.reference
        with self._lock:
            if key in self._agents and key not in self._fallbacks and not replace:
                raise AgentConfigError(key, "an agent is already registered under this reference")
            self._agents[key] = agent
            self._fallbacks.discard(key)
        self._logger.info("agent_registered", agent=key, agent_class=type(agent).__name__)

    def register_function(
        self,
        name: str,
        handler: Callable[..., Any],
        version: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
        replace: bool = False,
    ) -> FunctionAgent:
        """Wrap ``handler`` in a FunctionAgent and register it."""
        agent = FunctionAgent(name, handler, version=version, config=config)
        self.register(agent, replace=replace)
        return agent

    def unregister(self, reference: str) -> bool:
        """Remove a registration (and any fallbacks that point at it)."""
        with self._lock:
            agent = self._agents.pop(reference, None)
            if agent is None:
                return False
            stale = [key for key in self._fallbacks if self._agents.get(key) is agent]
            for key in stale:
                self._agents.pop(key, None)
                self._fallbacks.discard(key)
        self._logger.info("agent_unregistered", agent=reference)
        return True

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------
    def resolve(self, reference: str) -> Result[BaseAgent, ConductorError]:
        """Find the agent for ``name`` or ``name@version``."""
        parsed = parse_agent_reference(reference)
        if parsed.is_err():
            return parsed
        name, version = parsed.value

        if version is None:
            agent = self._agents.get(name)
            if agent is None:
                return Err(AgentNotFoundError(name))
            return Ok(agent)

        agent = self._agents.get(reference)
        if agent is not None:
            return Ok(agent)

        base = self._agents.get(name)
        if base is not None:
            with self._lock:
                self._agents.setdefault(reference, base)
                self._fallbacks.add(reference)
            self._logger.debug("agent_version_fallback", reference=reference, resolved=name)
            return Ok(base)

        return Err(
            AgentConfigError(
                reference,
                "versioned agent loading requires catalog integration",
                details={"name": name, "version": version},
            )
        )

    def has(self, reference: str) -> bool:
        return self.resolve(reference).is_ok()

    def names(self) -> list[str]:
        """Explicitly registered references (fallback aliases excluded)."""
        return sorted(key for key in self._agents if key not in self._fallbacks)

    def __contains__(self, reference: object) -> bool:
        return isinstance(reference, str) and reference in self._agents

    def __len__(self) -> int:
        return len(self._agents) - len(self._fallbacks)

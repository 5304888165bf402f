"""
conductor.core.context - Execution Context
============================================

The ExecutionContext is the per-run bundle the Graph Executor threads through
the step graph: the original input, a state snapshot, the outputs of the
steps completed so far, and any loop/catch bindings (``item``, ``index``,
``error`` ...).

It is mutable-by-replacement: every ``with_*`` method returns a new context
and leaves the receiver untouched. Concurrent branches of a parallel block
all receive the *same* context object, which is safe because nobody can
change it.

    ctx0 ──with_result("fetch", page)──→ ctx1 ──with_result("summary", s)──→ ctx2
      │
      └── shared by every child of a parallel block started from ctx0

For expression lookups the context is flattened into a ResolutionScope
(``scope()``), which is what the Expression Resolver and the condition
evaluator consume.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Resolution Scope
# =============================================================================
@dataclass(frozen=True)
class ResolutionScope:
    """Flattened lookup namespaces for expression resolution.

    Attributes:
        input: The ensemble input.
        state: State snapshot visible to the expression.
        steps: Map of step key to that step's output.
        env: Environment values, or None to disable the ``env`` namespace.
        bindings: Loop/catch bindings (``item``, ``index``, ``error`` ...).
    """

    input: Any = None
    state: Mapping[str, Any] = field(default_factory=dict)
    steps: Mapping[str, Any] = field(default_factory=dict)
    env: Optional[Mapping[str, Any]] = None
    bindings: Mapping[str, Any] = field(default_factory=dict)

    def flatten(self) -> dict[str, Any]:
        """Single namespace used by the restricted condition language.

        Step outputs appear as ``{"output": value, "success": True}`` under
        their key; bindings shadow step keys, and ``input``/``state`` shadow
        both.
        """
        names: dict[str, Any] = {
            key: {"output": value, "success": True} for key, value in self.steps.items()
        }
        names.update(self.bindings)
        names["results"] = self.bindings.get("results", dict(self.steps))
        names["input"] = self.input
        names["state"] = dict(self.state)
        if self.env is not None:
            names["env"] = dict(self.env)
        return names


# =============================================================================
# Execution Context
# =============================================================================
class ExecutionContext(BaseModel):
    """Immutable per-run execution context.

    Attributes:
        input: Original ensemble input.
        state: Snapshot of the shared state at the time the context was made.
        results: Outputs of completed steps, keyed by step key.
        bindings: Names bound by enclosing control steps.
        last_key: Key of the most recently completed step in the current
            sequence. Agent steps without an ``input`` mapping receive that
            step's output.
        env: Values exposed through the ``env`` namespace.
    """

    model_config = ConfigDict(frozen=True)

    input: Any = None
    state: dict[str, Any] = Field(default_factory=dict)
    results: dict[str, Any] = Field(default_factory=dict)
    bindings: dict[str, Any] = Field(default_factory=dict)
    last_key: Optional[str] = None
    env: Optional[dict[str, Any]] = None

    # -------------------------------------------------------------------------
    # Replacement helpers
    # -------------------------------------------------------------------------
    def with_result(self, key: str, value: Any) -> ExecutionContext:
        return self.model_copy(update={"results": {**self.results, key: value}, "last_key": key})

    def with_results(self, results: Mapping[str, Any], last_key: Optional[str] = None) -> ExecutionContext:
        if not results and last_key is None:
            return self
        update: dict[str, Any] = {"results": {**self.results, **results}}
        if last_key is not None:
            update["last_key"] = last_key
        return self.model_copy(update=update)

    def with_bindings(self, **bindings: Any) -> ExecutionContext:
        return self.model_copy(update={"bindings": {**self.bindings, **bindings}})

    def with_state(self, state: Mapping[str, Any]) -> ExecutionContext:
        return self.model_copy(update={"state": dict(state)})

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------
    @property
    def previous_output(self) -> Any:
        """Output of the last completed step, or the input if none ran yet."""
        if self.last_key is not None and self.last_key in self.results:
            return self.results[self.last_key]
        return self.input

    def scope(self) -> ResolutionScope:
        return ResolutionScope(
            input=self.input,
            state=self.state,
            steps=self.results,
            env=self.env,
            bindings=self.bindings,
        )

    # -------------------------------------------------------------------------
    # Serialization (suspension snapshots)
    # -------------------------------------------------------------------------
    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe representation. ``env`` is not persisted."""
        return self.model_dump(mode="json", exclude={"env"})

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any], env: Optional[dict[str, Any]] = None) -> ExecutionContext:
        return cls.model_validate({**data, "env": env})

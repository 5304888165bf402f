"""
conductor.orchestration.state_manager - Immutable Shared State
================================================================

This module implements the State Manager: the versioned key/value store
shared by the steps of one ensemble run.

Immutability:
    A StateManager instance never changes after construction. Every commit
    returns a NEW instance; the old one keeps describing the state as it was.

        sm0 ──commit({"count": 1})──→ sm1 ──commit({"count": 2})──→ sm2
         │
         └── still {"count": 0}; safe to hand to concurrent readers

Access Control:
    Each step declares ``state: {use: [...], set: [...]}``.

    ┌──────────────┐   for_step("fetch", use=[a], set=[b])   ┌───────────┐
    │ StateManager │ ─────────────────────────────────────→  │  Step     │
    │              │     view {a}  +  StepStateAccess        │           │
    │              │ ←─────────────────────────────────────  │ set(b=..) │
    └──────────────┘     commit(pending updates, log)        └───────────┘

    - The view contains only ``use`` keys (missing keys are omitted).
    - Writes to keys outside ``set`` are dropped with a warning, never raised.
    - Every read and accepted write is recorded in the access log, which
      feeds ``access_report()``.
"""

from __future__ import annotations

import copy
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

import structlog

from conductor.core.enums import StateOperation
from conductor.core.flow import StateAccess, StateDeclaration
from conductor.core.state import AccessLogEntry, AccessReport

logger = structlog.get_logger()


def _freeze(value: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(copy.deepcopy(dict(value)))


# =============================================================================
# Per-Step Access Handle
# =============================================================================
class StepStateAccess:
    """Read-only view plus pending-update collector for one step attempt.

    Attributes:
        view: Frozen mapping with the step's ``use`` keys.
    """

    def __init__(
        self,
        step_name: str,
        view: Mapping[str, Any],
        writable: Iterable[str],
        read_entries: list[AccessLogEntry],
    ) -> None:
        self.step_name = step_name
        self.view = view
        self._writable = frozenset(writable)
        self._updates: dict[str, Any] = {}
        self._entries = list(read_entries)
        self._logger = logger.bind(component="state_manager", step=step_name)

    def set_state(self, updates: Mapping[str, Any]) -> None:
        """Stage writes. Keys outside the declared ``set`` are dropped."""
        for key, value in updates.items():
            if key not in self._writable:
                self._logger.warning("state_write_denied", key=key, allowed=sorted(self._writable))
                continue
            self._updates[key] = copy.deepcopy(value)
            self._entries.append(
                AccessLogEntry(step_name=self.step_name, key=key, operation=StateOperation.WRITE)
            )

    def pending(self) -> tuple[dict[str, Any], list[AccessLogEntry]]:
        """Staged updates and the log entries (reads and writes) to commit."""
        return dict(self._updates), list(self._entries)


# =============================================================================
# StateManager
# =============================================================================
class StateManager:
    """Immutable, versioned state for one ensemble run.

    Args:
        declaration: The ensemble's state declaration (schema + initial).

    Example:
        >>> sm = StateManager(StateDeclaration(initial={"count": 0}))
        >>> access = sm.for_step("inc", StateAccess(use=["count"], set=["count"]))
        >>> access.set_state({"count": access.view["count"] + 1})
        >>> sm2 = sm.commit(*access.pending())
        >>> sm.state["count"], sm2.state["count"]
        (0, 1)
    """

    __slots__ = ("_schema", "_state", "_access_log", "_version")

    def __init__(
        self,
        declaration: Optional[Union[StateDeclaration, Mapping[str, Any]]] = None,
        *,
        _state: Optional[Mapping[str, Any]] = None,
        _access_log: tuple[AccessLogEntry, ...] = (),
        _version: int = 0,
    ) -> None:
        if declaration is None:
            declaration = StateDeclaration()
        elif not isinstance(declaration, StateDeclaration):
            declaration = StateDeclaration.model_validate(declaration)
        self._schema = _freeze(declaration.schema_)
        self._state = _freeze(declaration.initial if _state is None else _state)
        self._access_log = _access_log
        self._version = _version

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------
    @property
    def schema(self) -> Mapping[str, Any]:
        return self._schema

    @property
    def state(self) -> Mapping[str, Any]:
        return self._state

    @property
    def access_log(self) -> tuple[AccessLogEntry, ...]:
        return self._access_log

    @property
    def version(self) -> int:
        """Number of effective commits that produced this instance."""
        return self._version

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the full current state."""
        return copy.deepcopy(dict(self._state))

    def for_step(
        self,
        step_name: str,
        access: Optional[Union[StateAccess, Mapping[str, Any]]],
        source: Optional[Mapping[str, Any]] = None,
    ) -> StepStateAccess:
        """Build the frozen view and writer for one step.

        Args:
            step_name: Step key, recorded in the access log.
            access: Declared ``use``/``set`` keys. None means no access.
            source: State snapshot to read from instead of this instance's
                state. Steps inside a fan-out read the pre-fan-out snapshot.
        """
        if access is None:
            access = StateAccess()
        elif not isinstance(access, StateAccess):
            access = StateAccess.model_validate(access)

        state = self._state if source is None else source
        visible = {key: state[key] for key in access.use if key in state}
        reads = [
            AccessLogEntry(step_name=step_name, key=key, operation=StateOperation.READ)
            for key in visible
        ]
        return StepStateAccess(step_name, _freeze(visible), access.set_, reads)

    # -------------------------------------------------------------------------
    # Write side
    # -------------------------------------------------------------------------
    def commit(
        self,
        updates: Mapping[str, Any],
        entries: Iterable[AccessLogEntry] = (),
    ) -> StateManager:
        """Return a new instance with ``updates`` merged and ``entries`` logged.

        Returns ``self`` when there is nothing to apply.
        """
        entries = tuple(entries)
        if not updates and not entries:
            return self
        merged = {**self._state, **updates}
        return StateManager(
            StateDeclaration(schema=dict(self._schema)),
            _state=merged,
            _access_log=self._access_log + entries,
            _version=self._version + (1 if updates else 0),
        )

    def apply(self, access: StepStateAccess) -> StateManager:
        """Commit everything a step staged through its access handle."""
        return self.commit(*access.pending())

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------
    def access_report(self) -> AccessReport:
        """Unused declared keys and per-step read/write patterns."""
        declared = list(dict.fromkeys([*self._schema.keys(), *self._state.keys()]))
        read_keys = {e.key for e in self._access_log if e.operation == StateOperation.READ}

        patterns: dict[str, dict[str, list[str]]] = {}
        for entry in self._access_log:
            pattern = patterns.setdefault(entry.step_name, {"reads": [], "writes": []})
            bucket = pattern["reads" if entry.operation == StateOperation.READ else "writes"]
            if entry.key not in bucket:
                bucket.append(entry.key)

        return AccessReport(
            unused_keys=[key for key in declared if key not in read_keys],
            access_patterns=patterns,
        )

    # -------------------------------------------------------------------------
    # Suspension support
    # -------------------------------------------------------------------------
    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe dump of schema, values, version and access log."""
        return {
            "schema": copy.deepcopy(dict(self._schema)),
            "state": self.snapshot(),
            "version": self._version,
            "access_log": [entry.model_dump(mode="json") for entry in self._access_log],
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> StateManager:
        return cls(
            StateDeclaration(schema=data.get("schema", {})),
            _state=data.get("state", {}),
            _access_log=tuple(AccessLogEntry.model_validate(e) for e in data.get("access_log", [])),
            _version=data.get("version", 0),
        )

    def __repr__(self) -> str:
        return f"StateManager(version={self._version}, keys={sorted(self._state)})"

"""
conductor.infrastructure.resumption_store - Suspended Execution Storage
=========================================================================

Persistence collaborator for SuspendedExecutionState snapshots. The engine
itself only produces and consumes snapshots; where they live is up to the
store.

    execute_ensemble() ──suspends──→ store.save(state) → token
    caller (later)     ──────────→ executor.resume_from_token(token, decision)
                                     └── store.load(token) → state

Snapshots are stored as JSON-mode dumps, so any key/value backend that can
hold a dict can implement this interface.

Implementations:
    - ResumptionStore (ABC):      Abstract interface
    - InMemoryResumptionStore:    Dict-based, expired entries dropped on load
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog

from conductor.core.exceptions import ConductorError, ResumptionError
from conductor.core.result import Err, Ok, Result
from conductor.core.state import SuspendedExecutionState

logger = structlog.get_logger()


class ResumptionStore(ABC):
    """Abstract interface for suspended execution persistence."""

    @abstractmethod
    async def save(self, state: SuspendedExecutionState) -> Result[str, ConductorError]:
        """Persist ``state``; returns its token."""
        ...

    @abstractmethod
    async def load(self, token: str) -> Result[SuspendedExecutionState, ConductorError]:
        """Load a snapshot. Unknown or expired tokens are ResumptionErrors."""
        ...

    @abstractmethod
    async def delete(self, token: str) -> Result[bool, ConductorError]:
        """Remove a snapshot; Ok(True) when something was removed."""
        ...


class InMemoryResumptionStore(ResumptionStore):
    """Process-local snapshot store.

    Example:
        >>> store = InMemoryResumptionStore()
        >>> token = (await store.save(state)).value
        >>> (await store.load(token)).value.resume_from_step
        2
    """

    def __init__(self) -> None:
        self._states: dict[str, dict[str, Any]] = {}
        self._logger = logger.bind(component="resumption_store")

    async def save(self, state: SuspendedExecutionState) -> Result[str, ConductorError]:
        self._states[state.token] = state.model_dump(mode="json")
        self._logger.info(
            "suspension_saved",
            token=state.token,
            ensemble=state.ensemble.get("name"),
            expires_at=str(state.metadata.expires_at),
        )
        return Ok(state.token)

    async def load(self, token: str) -> Result[SuspendedExecutionState, ConductorError]:
        data = self._states.get(token)
        if data is None:
            return Err(ResumptionError(f"No suspended execution for token {token!r}", token=token))
        state = SuspendedExecutionState.model_validate(data)
        if state.metadata.is_expired():
            del self._states[token]
            self._logger.info("suspension_expired", token=token)
            return Err(
                ResumptionError(
                    f"Suspended execution {token!r} has expired",
                    token=token,
                    error_code="SUSPENSION_EXPIRED",
                )
            )
        return Ok(state)

    async def delete(self, token: str) -> Result[bool, ConductorError]:
        return Ok(self._states.pop(token, None) is not None)

    def __len__(self) -> int:
        return len(self._states)

"""
conductor.infrastructure.cache - Step Result Cache
====================================================

Cache collaborator used by the Executor to skip re-running agent steps whose
resolved input has been seen before.

Soft-Fail Contract:
    Every operation returns a Result. The Executor treats a miss, an expired
    entry and an Err identically: "no value". Cache failures never fail a
    step.

Optional Capabilities:
    ``clear`` and ``invalidate_by_tag`` are declared on the interface but a
    backend may answer Err(UnsupportedOperationError). Callers must not rely
    on them being available or efficient.

Key Layout:
    <prefix><agent reference>:<sha256 of the canonical JSON input>
    e.g. "conductor:cache:summarize:1f3a..."

Entry Layout:
    The Executor stores {"output": <step output>} so that a step whose
    output is None still produces a hit. Ok(None) from ``get`` is always a
    miss.

Implementations:
    - Cache (ABC):     Abstract interface
    - InMemoryCache:   Dict-based, expiry checked on read
"""

from __future__ import annotations

import hashlib
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from conductor.core.exceptions import ConductorError, UnsupportedOperationError
from conductor.core.result import Err, Ok, Result

logger = structlog.get_logger()

DEFAULT_KEY_PREFIX = "conductor:cache:"
DEFAULT_TTL_SECONDS = 3600
# Step outputs are stored as {CACHED_OUTPUT_FIELD: output}.
CACHED_OUTPUT_FIELD = "output"


def build_cache_key(agent: str, input_data: Any, prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Deterministic cache key for an agent invocation.

    Mapping key order does not affect the key.
    """
    canonical = json.dumps(input_data, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{prefix}{agent}:{digest}"


# =============================================================================
# Abstract Base Class
# =============================================================================
class Cache(ABC):
    """Abstract interface for step result caches."""

    @abstractmethod
    async def get(self, key: str) -> Result[Optional[Any], ConductorError]:
        """Ok(value), Ok(None) on miss or expiry, or Err on backend failure."""
        ...

    @abstractmethod
    async def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Optional[list[str]] = None,
    ) -> Result[None, ConductorError]:
        """Store ``value`` for ``ttl`` seconds."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> Result[bool, ConductorError]:
        """Remove ``key``; Ok(True) when something was removed."""
        ...

    async def has(self, key: str) -> Result[bool, ConductorError]:
        return (await self.get(key)).map(lambda value: value is not None)

    async def clear(self) -> Result[int, ConductorError]:
        """Remove every entry. Optional capability."""
        return Err(UnsupportedOperationError("clear", type(self).__name__))

    async def invalidate_by_tag(self, tag: str) -> Result[int, ConductorError]:
        """Remove entries stored with ``tag``. Optional capability."""
        return Err(UnsupportedOperationError("invalidate_by_tag", type(self).__name__))


# =============================================================================
# In-Memory Implementation
# =============================================================================
@dataclass
class _Entry:
    value: Any
    expires_at: float
    tags: frozenset[str] = field(default_factory=frozenset)


class InMemoryCache(Cache):
    """Process-local cache.

    Args:
        default_ttl: TTL in seconds when ``put`` is called without one.
        clock: Monotonic time source (injectable for tests).

    Example:
        >>> cache = InMemoryCache(default_ttl=60)
        >>> await cache.put("k", {"v": 1})
        >>> (await cache.get("k")).value
        {'v': 1}
    """

    def __init__(self, default_ttl: int = DEFAULT_TTL_SECONDS, clock: Any = time.monotonic) -> None:
        self._entries: dict[str, _Entry] = {}
        self._default_ttl = default_ttl
        self._clock = clock
        self._logger = logger.bind(component="in_memory_cache")

    async def get(self, key: str) -> Result[Optional[Any], ConductorError]:
        entry = self._entries.get(key)
        if entry is None:
            return Ok(None)
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            self._logger.debug("cache_entry_expired", key=key)
            return Ok(None)
        return Ok(entry.value)

    async def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Optional[list[str]] = None,
    ) -> Result[None, ConductorError]:
        lifetime = ttl if ttl is not None else self._default_ttl
        self._entries[key] = _Entry(value, self._clock() + lifetime, frozenset(tags or ()))
        return Ok(None)

    async def delete(self, key: str) -> Result[bool, ConductorError]:
        return Ok(self._entries.pop(key, None) is not None)

    async def clear(self) -> Result[int, ConductorError]:
        count = len(self._entries)
        self._entries.clear()
        return Ok(count)

    async def invalidate_by_tag(self, tag: str) -> Result[int, ConductorError]:
        # Linear scan over every entry.
        doomed = [key for key, entry in self._entries.items() if tag in entry.tags]
        for key in doomed:
            del self._entries[key]
        self._logger.debug("cache_tag_invalidated", tag=tag, removed=len(doomed))
        return Ok(len(doomed))

    def __len__(self) -> int:
        return len(self._entries)

"""
Shared Test Fixtures for Conductor
====================================

This module provides reusable pytest fixtures used across the entire
test suite. Fixtures are organized by layer:

    1. Configuration fixtures
    2. Infrastructure fixtures (Cache, ResumptionStore)
    3. Orchestration fixtures (Registry, Executor)
    4. Agent helpers (arithmetic agents, call recorders)
"""

from __future__ import annotations

import asyncio

import pytest

from conductor.core.config import CacheConfig, ConductorConfig
from conductor.core.models import AgentExecutionContext
from conductor.infrastructure.cache import InMemoryCache
from conductor.infrastructure.resumption_store import InMemoryResumptionStore
from conductor.orchestration.agent_registry import AgentRegistry
from conductor.orchestration.executor import Executor


async def no_sleep(delay: float) -> None:
    """Stand-in for asyncio.sleep so backoff never slows the suite."""
    await asyncio.sleep(0)


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def config():
    """Conductor configuration with short timeouts and no scoring backoff."""
    return ConductorConfig(
        default_agent_timeout_seconds=5,
        scoring_retry_delay_seconds=0,
        cache=CacheConfig(default_ttl_seconds=60),
    )


# =============================================================================
# Infrastructure
# =============================================================================

@pytest.fixture
def cache():
    """Fresh InMemoryCache."""
    return InMemoryCache(default_ttl=60)


@pytest.fixture
def resumption_store():
    """Fresh InMemoryResumptionStore."""
    return InMemoryResumptionStore()


# =============================================================================
# Orchestration
# =============================================================================

@pytest.fixture
def registry():
    """Empty AgentRegistry."""
    return AgentRegistry()


@pytest.fixture
def executor(config, registry, cache, resumption_store):
    """Executor wired to in-memory collaborators and arithmetic agents."""
    ex = Executor(
        config,
        registry=registry,
        cache=cache,
        resumption_store=resumption_store,
        env={"REGION": "eu-west-1"},
        sleep=no_sleep,
    )
    ex.register_function("add-one", lambda ctx: {"value": ctx.input["value"] + 1})
    ex.register_function("times-two", lambda ctx: {"value": ctx.input["value"] * 2})
    ex.register_function("echo", lambda ctx: ctx.input)
    return ex


# =============================================================================
# Agent Helpers
# =============================================================================

class CallRecorder:
    """Records the step keys it was invoked for, in invocation order."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.inputs: list[object] = []

    def __call__(self, ctx: AgentExecutionContext):
        self.calls.append(ctx.step_key)
        self.inputs.append(ctx.input)
        return {"step": ctx.step_key, "input": ctx.input}


@pytest.fixture
def recorder():
    """Fresh CallRecorder."""
    return CallRecorder()

"""
Conductor - Workflow Orchestration Engine
==========================================

Conductor executes declarative workflows ("ensembles"): a graph of steps,
each invoking a pluggable agent, with sequence, parallel fan-out, branching,
iteration, try/catch, switch, bounded loops and map-reduce, a versioned
shared state with per-step access control, and suspend / resume for
human-in-the-loop steps.

Architecture Layers (top to bottom):
    1. Orchestration Layer  - Executor, GraphExecutor, StateManager, Resolver
    2. Agent Layer          - BaseAgent, FunctionAgent, HumanApprovalAgent
    3. Infrastructure Layer - Cache, ResumptionStore
    4. Core                 - Result, errors, definitions, configuration

Quick Start:
    >>> from conductor import Executor
    >>> executor = Executor()
    >>> executor.register_function("greet", lambda ctx: f"Hello, {ctx.input['name']}!")
    >>> result = await executor.execute_ensemble(
    ...     {"name": "hello", "flow": [{"agent": "greet"}]},
    ...     {"name": "Alice"},
    ... )
    >>> result.value.output
    'Hello, Alice!'
"""

# =============================================================================
# Package Version
# =============================================================================
__version__ = "0.1.0"

# =============================================================================
# Package-Level Exports
# =============================================================================
# The Executor is the main entry point. For specific components, import from
# submodules directly:
#   from conductor.core.flow import EnsembleDefinition
#   from conductor.orchestration.graph_executor import GraphExecutor
# =============================================================================
from conductor.agents import BaseAgent, FunctionAgent, HumanApprovalAgent
from conductor.core import (
    AgentExecutionContext,
    AgentResponse,
    ConductorConfig,
    ConductorError,
    EnsembleDefinition,
    Err,
    ExecutionOutput,
    Ok,
    Result,
)
from conductor.orchestration import Executor

__all__ = [
    "AgentExecutionContext",
    "AgentResponse",
    "BaseAgent",
    "ConductorConfig",
    "ConductorError",
    "EnsembleDefinition",
    "Err",
    "ExecutionOutput",
    "Executor",
    "FunctionAgent",
    "HumanApprovalAgent",
    "Ok",
    "Result",
    "__version__",
]

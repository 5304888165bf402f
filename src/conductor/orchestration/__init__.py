"""
conductor.orchestration - Execution Engine
============================================

This package contains the components that run an ensemble:

    - interpolation:   Expression Resolver (``${...}`` / ``{{...}}``)
    - conditions:      condition evaluation, restricted expression language
    - state_manager:   immutable, versioned shared state
    - graph_executor:  step graph interpreter
    - agent_registry:  agent lookup by ``name[@version]``
    - error_handler:   retry policy and retry loop
    - scoring:         output scoring and ensemble quality metrics
    - executor:        the Executor, public entry point of the engine
"""

from conductor.orchestration.agent_registry import AgentRegistry
from conductor.orchestration.conditions import evaluate_condition
from conductor.orchestration.error_handler import ErrorHandler, RetryPolicy
from conductor.orchestration.executor import Executor
from conductor.orchestration.graph_executor import GraphExecutor, GraphRun, SuspensionPoint
from conductor.orchestration.interpolation import Interpolator, resolve
from conductor.orchestration.scoring import EnsembleScorer, ScoringExecutor
from conductor.orchestration.state_manager import StateManager, StepStateAccess

__all__ = [
    # Expressions
    "Interpolator",
    "resolve",
    "evaluate_condition",
    # State
    "StateManager",
    "StepStateAccess",
    # Graph
    "GraphExecutor",
    "GraphRun",
    "SuspensionPoint",
    # Policies
    "ErrorHandler",
    "RetryPolicy",
    "ScoringExecutor",
    "EnsembleScorer",
    # Orchestrator
    "AgentRegistry",
    "Executor",
]

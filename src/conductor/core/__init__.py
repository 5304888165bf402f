"""
conductor.core - Foundation Layer
=================================

This package contains the building blocks every other part of the engine
depends on:

    - result:      Ok / Err result type
    - enums:       StepType, WaitFor, RunStatus, ErrorKind, ...
    - exceptions:  ConductorError family, one class per error kind
    - config:      ConductorConfig (pydantic-settings) and load_config
    - flow:        StepNode tagged union and EnsembleDefinition
    - loader:      YAML / dict parsing and agent reference parsing
    - models:      AgentExecutionContext and AgentResponse
    - context:     immutable ExecutionContext and ResolutionScope
    - state:       run-time records (metrics, scoring, suspension, output)

Design Principle:
    Everything in `core` is a data structure, a parser or configuration. No
    execution logic lives here, so core types are safe to import anywhere.

Dependency Rule:
    core/ depends on NOTHING else in the conductor package.
"""

# =============================================================================
# Re-exports for convenient importing
# =============================================================================
# Instead of:  from conductor.core.flow import EnsembleDefinition
# Users can:   from conductor.core import EnsembleDefinition
# =============================================================================
from conductor.core.config import CacheConfig, ConductorConfig, load_config
from conductor.core.context import ExecutionContext, ResolutionScope
from conductor.core.enums import (
    BackoffStrategy,
    ErrorKind,
    OnFailure,
    RunStatus,
    ScoringStatus,
    StateOperation,
    StepType,
    WaitFor,
)
from conductor.core.exceptions import (
    AgentConfigError,
    AgentExecutionError,
    AgentNotFoundError,
    ConductorError,
    ConfigurationError,
    EnsembleExecutionError,
    ExecutionSuspended,
    ExecutionTimeoutError,
    LoopLimitExceededError,
    ResumptionError,
    UnsupportedOperationError,
    ValidationError,
)
from conductor.core.flow import AgentStep, EnsembleDefinition, StepNode
from conductor.core.loader import load_ensemble_file, parse_agent_reference, parse_ensemble
from conductor.core.models import AgentExecutionContext, AgentResponse
from conductor.core.result import Err, Ok, Result
from conductor.core.state import ExecutionMetrics, ExecutionOutput, SuspendedExecutionState

# =============================================================================
# Public API
# =============================================================================
__all__ = [
    # Result
    "Ok",
    "Err",
    "Result",
    # Config
    "CacheConfig",
    "ConductorConfig",
    "load_config",
    # Enums
    "BackoffStrategy",
    "ErrorKind",
    "OnFailure",
    "RunStatus",
    "ScoringStatus",
    "StateOperation",
    "StepType",
    "WaitFor",
    # Exceptions
    "ConductorError",
    "AgentNotFoundError",
    "AgentConfigError",
    "AgentExecutionError",
    "EnsembleExecutionError",
    "ValidationError",
    "LoopLimitExceededError",
    "ExecutionTimeoutError",
    "ConfigurationError",
    "UnsupportedOperationError",
    "ResumptionError",
    "ExecutionSuspended",
    # Definitions
    "AgentStep",
    "EnsembleDefinition",
    "StepNode",
    "load_ensemble_file",
    "parse_agent_reference",
    "parse_ensemble",
    # Runtime
    "AgentExecutionContext",
    "AgentResponse",
    "ExecutionContext",
    "ResolutionScope",
    "ExecutionMetrics",
    "ExecutionOutput",
    "SuspendedExecutionState",
]

"""
conductor.core.enums - Type-Safe Enumerations
===============================================

This module defines all enumeration types used throughout Conductor.

All enums inherit from both `str` and `Enum`, which means:
    - They serialize to strings in JSON/YAML (Pydantic-friendly)
    - They can be compared with plain strings: WaitFor.ALL == "all"
    - Authoring files can use the plain string values directly

Architecture Mapping:

    ┌─────────────────────────────────────────────────────────────────┐
    │  FLOW DEFINITION                                                │
    │    StepType: Which handler interprets a step node               │
    │    WaitFor: How a parallel block decides it is done             │
    │    BackoffStrategy / OnFailure: Retry and scoring policies      │
    ├─────────────────────────────────────────────────────────────────┤
    │  EXECUTION                                                      │
    │    RunStatus: Ensemble run lifecycle (PENDING → RUNNING → ...)  │
    │    StateOperation: Entries in the state access log              │
    │    ScoringStatus: Outcome of a scored step                      │
    ├─────────────────────────────────────────────────────────────────┤
    │  ERRORS                                                         │
    │    ErrorKind: Tag carried by every ConductorError               │
    └─────────────────────────────────────────────────────────────────┘
"""

from enum import Enum


# =============================================================================
# Step Type Enumeration
# =============================================================================
# One value per node kind in the step graph. The Graph Executor keeps a
# handler table keyed by these values and refuses to start if any kind is
# missing from it.
# =============================================================================
class StepType(str, Enum):
    """The closed set of step node kinds."""

    AGENT = "agent"             # Leaf: invokes a registered agent
    PARALLEL = "parallel"       # Concurrent fan-out over child steps
    BRANCH = "branch"           # if / then / else
    FOREACH = "foreach"         # Iterate one step over a list of items
    TRY = "try"                 # try / catch / finally
    SWITCH = "switch"           # Dispatch on a stringified value
    WHILE = "while"             # Bounded loop
    MAP_REDUCE = "map-reduce"   # Map items concurrently, then reduce once


# =============================================================================
# Parallel Wait Policy
# =============================================================================
class WaitFor(str, Enum):
    """How a parallel block decides it has finished.

    None of the policies cancel losing branches; they only stop waiting.
    """

    ALL = "all"       # Wait for every child; any failure fails the block
    ANY = "any"       # First child to succeed wins
    FIRST = "first"   # First child to settle (success or failure) wins


# =============================================================================
# Retry Backoff Strategy
# =============================================================================
class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts."""

    FIXED = "fixed"               # initial_delay every time
    LINEAR = "linear"             # initial_delay * attempt
    EXPONENTIAL = "exponential"   # initial_delay * 2 ** (attempt - 1)


# =============================================================================
# Scoring Failure Policy
# =============================================================================
class OnFailure(str, Enum):
    """What to do when a scored step falls below its minimum threshold."""

    RETRY = "retry"         # Re-invoke the agent up to retry_limit times
    CONTINUE = "continue"   # Accept the result, flagged as below threshold
    ABORT = "abort"         # Fail the step


class ScoringStatus(str, Enum):
    """Outcome recorded for one scored step."""

    PASSED = "passed"
    BELOW_THRESHOLD = "below_threshold"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"


# =============================================================================
# Run Status Enumeration
# =============================================================================
# Lifecycle of a single ensemble run:
#
#   PENDING → RUNNING → COMPLETED
#                    → FAILED
#                    → SUSPENDED → RUNNING (on resume)
#
# COMPLETED and FAILED are terminal.
# =============================================================================
class RunStatus(str, Enum):
    """Lifecycle states of one ensemble run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"


class StateOperation(str, Enum):
    """Operation recorded in the state access log."""

    READ = "read"
    WRITE = "write"


# =============================================================================
# Error Kind Enumeration
# =============================================================================
# Every ConductorError subclass is tagged with one of these. Retry filters
# (``retryOn``) match against these values as well as against error codes.
# =============================================================================
class ErrorKind(str, Enum):
    """Tag identifying the family of a ConductorError."""

    AGENT_NOT_FOUND = "agent_not_found"
    AGENT_CONFIG = "agent_config"
    AGENT_EXECUTION = "agent_execution"
    ENSEMBLE_EXECUTION = "ensemble_execution"
    VALIDATION = "validation"
    LOOP_LIMIT_EXCEEDED = "loop_limit_exceeded"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    UNSUPPORTED = "unsupported"
    RESUMPTION = "resumption"
    SUSPENDED = "suspended"
    INTERNAL = "internal"

"""
conductor.core.exceptions - Custom Exception Hierarchy
========================================================

This module defines the structured error family of the engine. Each class is
tagged with an ``ErrorKind`` so callers can branch on the kind without
isinstance chains, and every instance carries enough context to attribute a
failure to an ensemble and, where applicable, a step.

Exception Hierarchy:
    ConductorError (base)
        ├── AgentNotFoundError        - No agent registered under a reference
        ├── AgentConfigError          - Malformed or unsupported agent reference
        ├── AgentExecutionError       - An agent invocation failed
        ├── EnsembleExecutionError    - A step failed; carries ensemble + step
        ├── ValidationError           - Malformed ensemble / step structure
        ├── LoopLimitExceededError    - A while loop hit max_iterations
        ├── ExecutionTimeoutError     - An agent attempt exceeded its deadline
        ├── ConfigurationError        - Invalid configuration file / values
        ├── UnsupportedOperationError - Collaborator capability not available
        ├── ResumptionError           - Unknown or expired suspension
        └── ExecutionSuspended        - Suspend signal (not a failure)

Error Flow:
    Agent raises / returns a failure
        → Executor wraps it in AgentExecutionError (agent + step attribution)
        → RetryPolicy decides whether to try again
        → GraphExecutor stamps the innermost step key onto the error
        → try/catch may recover it; otherwise GraphExecutor.execute wraps it
          in EnsembleExecutionError and returns Err(...)

Usage:
    >>> from conductor.core.exceptions import AgentExecutionError
    >>> raise AgentExecutionError(
    ...     agent_name="summarize",
    ...     reason="provider returned 429",
    ...     step_key="summary",
    ... )
"""

from __future__ import annotations

from typing import Any, Optional

from conductor.core.enums import ErrorKind


# =============================================================================
# Base Exception
# =============================================================================
# All engine exceptions inherit from this base class. This allows catching
# every framework-specific error with a single except clause:
#
#   try:
#       await graph.run(steps, context)
#   except ConductorError as e:
#       logger.error(e.message, kind=e.kind.value, details=e.details)
# =============================================================================
class ConductorError(Exception):
    """Base exception for all Conductor errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code for programmatic handling.
            Convention: UPPER_SNAKE_CASE (e.g., "AGENT_TIMEOUT").
        details: Arbitrary dict with additional debugging context.
        step_key: Key of the innermost step the error is attributed to.
            Filled in by the Graph Executor when the error crosses a step.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[dict[str, Any]] = None,
        step_key: Optional[str] = None,
    ) -> None:
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.step_key = step_key

    def to_dict(self) -> dict[str, Any]:
        """Serialize this exception to a JSON-friendly dictionary.

        Returns:
            Dictionary with error_type, kind, message, error_code, step and
            details.
        """
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "error_code": self.error_code,
            "step": self.step_key,
            "details": self.details,
        }

    def __repr__(self) -> str:
        """Detailed string representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


# =============================================================================
# Agent Resolution Errors
# =============================================================================
class AgentNotFoundError(ConductorError):
    """Raised when no agent is registered under the requested reference.

    Example:
        >>> raise AgentNotFoundError("summarize")
    """

    kind = ErrorKind.AGENT_NOT_FOUND

    def __init__(self, agent_name: str, details: Optional[dict[str, Any]] = None) -> None:
        merged = {"agent": agent_name, **(details or {})}
        super().__init__(
            message=f'Agent "{agent_name}" not found',
            error_code="AGENT_NOT_FOUND",
            details=merged,
        )
        self.agent_name = agent_name


class AgentConfigError(ConductorError):
    """Raised when an agent reference or agent configuration is unusable.

    Common Causes:
        - A reference with more than one "@" (e.g. "a@1@2")
        - A "name@version" reference that no registration satisfies
        - An inline agent declared without a handler
    """

    kind = ErrorKind.AGENT_CONFIG

    def __init__(
        self,
        agent_name: str,
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        merged = {"agent": agent_name, "reason": reason, **(details or {})}
        super().__init__(
            message=f'Agent "{agent_name}" configuration error: {reason}',
            error_code="AGENT_CONFIG_ERROR",
            details=merged,
        )
        self.agent_name = agent_name
        self.reason = reason


# =============================================================================
# Execution Errors
# =============================================================================
# AgentExecutionError wraps whatever the agent raised or returned. The
# original exception is kept in ``cause`` (and chained with ``raise ... from``
# by the code that creates it) so nothing is lost for debugging.
# =============================================================================
class AgentExecutionError(ConductorError):
    """Raised when an agent invocation fails.

    Attributes:
        agent_name: The agent reference that was invoked.
        reason: Short description of the failure.
        cause: The underlying exception, if any.
    """

    kind = ErrorKind.AGENT_EXECUTION

    def __init__(
        self,
        agent_name: str,
        reason: str,
        step_key: Optional[str] = None,
        cause: Optional[BaseException] = None,
        error_code: str = "AGENT_EXECUTION_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        merged = {"agent": agent_name, **(details or {})}
        if cause is not None:
            merged["cause"] = repr(cause)
        super().__init__(
            message=f'Agent "{agent_name}" execution failed: {reason}',
            error_code=error_code,
            details=merged,
            step_key=step_key,
        )
        self.agent_name = agent_name
        self.reason = reason
        self.cause = cause


class EnsembleExecutionError(ConductorError):
    """The terminal error of a failed run: which ensemble, which step, why.

    Example:
        >>> err = EnsembleExecutionError("pipeline", "fetch", cause)
        >>> err.message
        'Ensemble "pipeline" failed at step "fetch": ...'
    """

    kind = ErrorKind.ENSEMBLE_EXECUTION

    def __init__(
        self,
        ensemble_name: str,
        step_key: Optional[str],
        cause: BaseException,
    ) -> None:
        cause_message = getattr(cause, "message", None) or str(cause)
        details: dict[str, Any] = {
            "ensemble": ensemble_name,
            "step": step_key,
            "cause_type": cause.__class__.__name__,
        }
        if isinstance(cause, ConductorError):
            details["cause"] = cause.to_dict()
        super().__init__(
            message=f'Ensemble "{ensemble_name}" failed at step "{step_key}": {cause_message}',
            error_code="ENSEMBLE_EXECUTION_ERROR",
            details=details,
            step_key=step_key,
        )
        self.ensemble_name = ensemble_name
        self.cause = cause


class ValidationError(ConductorError):
    """Raised when an ensemble or step structure is malformed.

    Attributes:
        errors: Individual validation problems (pydantic error dicts or
            plain strings).
    """

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        errors: Optional[list[Any]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        merged = {"errors": errors or [], **(details or {})}
        super().__init__(message=message, error_code="VALIDATION_ERROR", details=merged)
        self.errors = errors or []


class LoopLimitExceededError(ConductorError):
    """Raised when a while loop is still running after max_iterations."""

    kind = ErrorKind.LOOP_LIMIT_EXCEEDED

    def __init__(self, max_iterations: int, step_key: Optional[str] = None) -> None:
        super().__init__(
            message=f"While loop exceeded maximum iterations ({max_iterations})",
            error_code="LOOP_LIMIT_EXCEEDED",
            details={"max_iterations": max_iterations},
            step_key=step_key,
        )
        self.max_iterations = max_iterations


class ExecutionTimeoutError(ConductorError):
    """Raised when an agent attempt does not settle within its deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        agent_name: str,
        timeout_seconds: float,
        step_key: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=f'Agent "{agent_name}" timed out after {timeout_seconds}s',
            error_code="AGENT_TIMEOUT",
            details={"agent": agent_name, "timeout_seconds": timeout_seconds},
            step_key=step_key,
        )
        self.agent_name = agent_name
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Collaborator Errors
# =============================================================================
class ConfigurationError(ConductorError):
    """Raised when Conductor configuration is invalid or missing.

    This typically occurs during startup and should cause the application
    to fail fast with a clear message about what's wrong.

    Example:
        >>> raise ConfigurationError(
        ...     message="Invalid YAML in conductor.yaml",
        ...     details={"path": "conductor.yaml"},
        ... )
    """

    kind = ErrorKind.CONFIGURATION

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        merged = {**(details or {})}
        if config_key:
            merged["config_key"] = config_key
        super().__init__(message=message, error_code="CONFIGURATION_ERROR", details=merged)


class UnsupportedOperationError(ConductorError):
    """Returned by collaborators that do not implement an optional capability."""

    kind = ErrorKind.UNSUPPORTED

    def __init__(self, operation: str, component: str) -> None:
        super().__init__(
            message=f"{component} does not support {operation}",
            error_code="UNSUPPORTED_OPERATION",
            details={"operation": operation, "component": component},
        )
        self.operation = operation


class ResumptionError(ConductorError):
    """Raised when a suspended execution cannot be resumed."""

    kind = ErrorKind.RESUMPTION

    def __init__(
        self,
        message: str,
        token: Optional[str] = None,
        error_code: str = "RESUMPTION_ERROR",
    ) -> None:
        super().__init__(message=message, error_code=error_code, details={"token": token})
        self.token = token


# =============================================================================
# Suspension Signal
# =============================================================================
# Not a failure. An agent raises ExecutionSuspended to stop the run and hand
# a resumable snapshot back to the caller. try/catch blocks never recover it
# and retry policies never retry it.
# =============================================================================
class ExecutionSuspended(ConductorError):
    """Signal raised by an agent to suspend the current run.

    Attributes:
        reason: Why execution is waiting (e.g. "awaiting approval").
        suspended_by: Agent that requested the suspension.
        ttl_seconds: Optional expiry override for the suspension.
        payload: Extra data for whoever handles the suspension.
    """

    kind = ErrorKind.SUSPENDED

    def __init__(
        self,
        reason: str,
        suspended_by: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=f"Execution suspended: {reason}",
            error_code="EXECUTION_SUSPENDED",
            details={"reason": reason, "suspended_by": suspended_by},
        )
        self.reason = reason
        self.suspended_by = suspended_by
        self.ttl_seconds = ttl_seconds
        self.payload = payload or {}

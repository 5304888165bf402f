"""
Tests for conductor.core.exceptions
=====================================

These tests verify the ConductorError family: kinds, error codes, details
and serialization.

What's Being Tested:
    - ConductorError base behaviour (to_dict, repr, step attribution)
    - Every subclass carries the right ErrorKind and error_code
    - EnsembleExecutionError message format and cause details
    - ExecutionSuspended carries its suspension metadata
"""

import pytest

from conductor.core.enums import ErrorKind
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


# =============================================================================
# Test: ConductorError Base
# =============================================================================
class TestConductorError:
    """Tests for the base exception."""

    def test_defaults(self) -> None:
        error = ConductorError("something broke")
        assert error.message == "something broke"
        assert error.error_code == "UNKNOWN_ERROR"
        assert error.details == {}
        assert error.step_key is None
        assert error.kind == ErrorKind.INTERNAL
        assert str(error) == "something broke"

    def test_to_dict(self) -> None:
        error = ConductorError("x", error_code="X_FAILED", details={"a": 1}, step_key="fetch")
        assert error.to_dict() == {
            "error_type": "ConductorError",
            "kind": "internal",
            "message": "x",
            "error_code": "X_FAILED",
            "step": "fetch",
            "details": {"a": 1},
        }

    def test_repr_contains_code(self) -> None:
        assert "X_FAILED" in repr(ConductorError("x", error_code="X_FAILED"))

    def test_subclasses_are_catchable_as_base(self) -> None:
        with pytest.raises(ConductorError):
            raise AgentNotFoundError("ghost")


# =============================================================================
# Test: Error Kinds and Codes
# =============================================================================
class TestErrorKinds:
    """Each subclass is tagged with its ErrorKind and a stable code."""

    @pytest.mark.parametrize(
        "error, kind, code",
        [
            (AgentNotFoundError("a"), ErrorKind.AGENT_NOT_FOUND, "AGENT_NOT_FOUND"),
            (AgentConfigError("a", "bad"), ErrorKind.AGENT_CONFIG, "AGENT_CONFIG_ERROR"),
            (AgentExecutionError("a", "bad"), ErrorKind.AGENT_EXECUTION, "AGENT_EXECUTION_ERROR"),
            (ValidationError("bad"), ErrorKind.VALIDATION, "VALIDATION_ERROR"),
            (LoopLimitExceededError(3), ErrorKind.LOOP_LIMIT_EXCEEDED, "LOOP_LIMIT_EXCEEDED"),
            (ExecutionTimeoutError("a", 1.5), ErrorKind.TIMEOUT, "AGENT_TIMEOUT"),
            (ConfigurationError("bad"), ErrorKind.CONFIGURATION, "CONFIGURATION_ERROR"),
            (UnsupportedOperationError("clear", "Cache"), ErrorKind.UNSUPPORTED, "UNSUPPORTED_OPERATION"),
            (ResumptionError("bad"), ErrorKind.RESUMPTION, "RESUMPTION_ERROR"),
            (ExecutionSuspended("waiting"), ErrorKind.SUSPENDED, "EXECUTION_SUSPENDED"),
        ],
    )
    def test_kind_and_code(self, error, kind, code) -> None:
        assert error.kind == kind
        assert error.error_code == code

    def test_agent_execution_error_keeps_cause(self) -> None:
        cause = RuntimeError("socket closed")
        error = AgentExecutionError("fetch", "socket closed", step_key="fetch", cause=cause)
        assert error.cause is cause
        assert error.step_key == "fetch"
        assert error.details["agent"] == "fetch"
        assert "socket closed" in error.details["cause"]

    def test_loop_limit_details(self) -> None:
        error = LoopLimitExceededError(5, step_key="while_0")
        assert error.max_iterations == 5
        assert error.details == {"max_iterations": 5}
        assert error.step_key == "while_0"


# =============================================================================
# Test: EnsembleExecutionError
# =============================================================================
class TestEnsembleExecutionError:
    """The terminal error of a failed run."""

    def test_message_names_ensemble_and_step(self) -> None:
        cause = AgentExecutionError("fetch", "HTTP 500")
        error = EnsembleExecutionError("pipeline", "fetch", cause)
        assert error.message.startswith('Ensemble "pipeline" failed at step "fetch": ')
        assert "HTTP 500" in error.message
        assert error.ensemble_name == "pipeline"
        assert error.step_key == "fetch"
        assert error.cause is cause

    def test_details_embed_conductor_cause(self) -> None:
        cause = LoopLimitExceededError(2, "while_0")
        error = EnsembleExecutionError("loop", "while_0", cause)
        assert error.details["cause"]["kind"] == "loop_limit_exceeded"
        assert error.details["cause_type"] == "LoopLimitExceededError"

    def test_plain_exception_cause(self) -> None:
        error = EnsembleExecutionError("e", "s", ValueError("nope"))
        assert "nope" in error.message
        assert "cause" not in error.details


# =============================================================================
# Test: ExecutionSuspended
# =============================================================================
class TestExecutionSuspended:
    """The suspension signal."""

    def test_attributes(self) -> None:
        signal = ExecutionSuspended(
            "awaiting approval",
            suspended_by="approval",
            ttl_seconds=60,
            payload={"doc": 1},
        )
        assert signal.reason == "awaiting approval"
        assert signal.suspended_by == "approval"
        assert signal.ttl_seconds == 60
        assert signal.payload == {"doc": 1}
        assert "awaiting approval" in signal.message

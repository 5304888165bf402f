"""
conductor.orchestration.error_handler - Retry Policy and Error Normalization
==============================================================================

This module owns what happens when an agent attempt fails:

    agent attempt fails
        → to_conductor_error(): normalize into a ConductorError with
          agent + step attribution
        → RetryPolicy.is_retryable(): does the step's ``retryOn`` filter
          match the error kind / code / type?
        → RetryPolicy.calculate_delay(): backoff for the next attempt
        → ErrorHandler.run_with_retry(): sleep, try again, or give up

Backoff Strategies (delays in seconds, attempt is 1-based):

    fixed        initial_delay
    linear       initial_delay * attempt
    exponential  initial_delay * 2 ** (attempt - 1)

    every strategy is capped at max_delay; a small proportional jitter is
    added so concurrent retries do not fire in lockstep.

Never Retried:
    ExecutionSuspended is a signal, not a failure, and passes straight
    through the retry loop.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from pydantic import BaseModel, Field

from conductor.core.enums import BackoffStrategy
from conductor.core.exceptions import AgentExecutionError, ConductorError, ExecutionSuspended
from conductor.core.flow import RetrySettings

logger = structlog.get_logger()

T = TypeVar("T")


# =============================================================================
# Retry Policy
# =============================================================================
class RetryPolicy(BaseModel):
    """Retry configuration for one agent step.

    Attributes:
        attempts: Total attempts, including the first (1 = no retry).
        backoff: Delay growth strategy.
        initial_delay: Base delay in seconds.
        max_delay: Upper bound for any single delay.
        retry_on: Error kinds, error codes or exception class names that
            may be retried. None retries every failure.
        jitter: Proportional jitter added to each delay (0.1 = up to 10%).

    Example:
        >>> policy = RetryPolicy(attempts=3, backoff="linear", initial_delay=0.5)
        >>> policy.calculate_delay(2)  # ~1.0s
    """

    attempts: int = Field(default=1, ge=1, le=20)
    backoff: BackoffStrategy = Field(default=BackoffStrategy.EXPONENTIAL)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    retry_on: Optional[list[str]] = None
    jitter: float = Field(default=0.1, ge=0, le=1)

    @classmethod
    def from_settings(cls, settings: Optional[RetrySettings]) -> RetryPolicy:
        """Build a policy from a step's ``retry`` block (None = single attempt)."""
        if settings is None:
            return cls()
        return cls(
            attempts=settings.attempts,
            backoff=settings.backoff,
            initial_delay=settings.initial_delay,
            max_delay=settings.max_delay,
            retry_on=settings.retry_on,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry that follows failed ``attempt`` (1-based)."""
        if self.backoff == BackoffStrategy.FIXED:
            base_delay = self.initial_delay
        elif self.backoff == BackoffStrategy.LINEAR:
            base_delay = self.initial_delay * attempt
        else:
            base_delay = self.initial_delay * (2 ** (attempt - 1))

        jitter = random.uniform(0, base_delay * self.jitter) if base_delay else 0.0
        return min(base_delay + jitter, self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        """Whether ``error`` passes this policy's ``retry_on`` filter."""
        if isinstance(error, ExecutionSuspended):
            return False
        if self.retry_on is None:
            return True
        tags = {type(error).__name__.lower()}
        if isinstance(error, ConductorError):
            tags.add(error.kind.value)
            tags.add(error.error_code.lower())
            exception_type = error.details.get("exception_type")
            if exception_type:
                tags.add(str(exception_type).lower())
            cause = getattr(error, "cause", None)
            if cause is not None:
                tags.add(type(cause).__name__.lower())
                if isinstance(cause, ConductorError):
                    tags.add(cause.kind.value)
                    tags.add(cause.error_code.lower())
        return any(item.lower() in tags for item in self.retry_on)


# =============================================================================
# Error Normalization
# =============================================================================
def to_conductor_error(
    error: BaseException,
    agent_name: str,
    step_key: Optional[str] = None,
) -> ConductorError:
    """Wrap arbitrary exceptions in AgentExecutionError; keep ConductorErrors."""
    if isinstance(error, ConductorError):
        if error.step_key is None:
            error.step_key = step_key
        return error
    return AgentExecutionError(
        agent_name=agent_name,
        reason=str(error) or type(error).__name__,
        step_key=step_key,
        cause=error,
    )


# =============================================================================
# Error Handler
# =============================================================================
class ErrorHandler:
    """Runs an operation under a RetryPolicy.

    Args:
        sleep: Awaitable sleep function (injectable for tests).

    Example:
        >>> handler = ErrorHandler()
        >>> value, attempts = await handler.run_with_retry(
        ...     lambda attempt: call_agent(attempt),
        ...     RetryPolicy(attempts=3, initial_delay=0.1),
        ...     agent_name="fetch",
        ...     step_key="fetch",
        ... )
    """

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        self._sleep = sleep
        self._logger = logger.bind(component="error_handler")

    async def run_with_retry(
        self,
        operation: Callable[[int], Awaitable[T]],
        policy: RetryPolicy,
        agent_name: str,
        step_key: Optional[str] = None,
    ) -> tuple[T, int]:
        """Call ``operation(attempt)`` until it succeeds or the policy gives up.

        Returns:
            ``(value, attempts_used)``.

        Raises:
            ConductorError: The last failure, normalized, once attempts are
                exhausted or the failure is not retryable.
            ExecutionSuspended: Immediately, without retrying.
        """
        attempt = 1
        while True:
            try:
                return await operation(attempt), attempt
            except ExecutionSuspended:
                raise
            except Exception as exc:
                error = to_conductor_error(exc, agent_name, step_key)
                if attempt >= policy.attempts or not policy.is_retryable(error):
                    if policy.attempts > 1:
                        self._logger.warning(
                            "retry_exhausted",
                            agent=agent_name,
                            step=step_key,
                            attempts=attempt,
                            error_code=error.error_code,
                        )
                    if error is exc:
                        raise
                    raise error from exc

                delay = policy.calculate_delay(attempt)
                self._logger.info(
                    "retry_scheduled",
                    agent=agent_name,
                    step=step_key,
                    attempt=attempt,
                    next_attempt=attempt + 1,
                    delay_seconds=round(delay, 3),
                    error_code=error.error_code,
                )
                await self._sleep(delay)
                attempt += 1

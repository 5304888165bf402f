"""
conductor.core.result - Success / Failure Result Type
=======================================================

Every public operation in the engine returns a Result instead of letting an
exception escape. A Result is either ``Ok(value)`` or ``Err(error)``; there is
no third state.

Why not just raise?
    Steps nest arbitrarily deep (a foreach inside a try inside a parallel).
    Internally the engine uses exceptions to unwind that nesting, but at every
    public boundary the failure is captured into an ``Err`` so callers can
    branch on it without try/except blocks scattered around their code.

Usage:
    >>> result = await executor.execute_ensemble(ensemble, {"value": 10})
    >>> if result.is_ok():
    ...     print(result.value.output)
    ... else:
    ...     print(result.error.to_dict())

    >>> doubled = Ok(21).map(lambda v: v * 2)      # Ok(42)
    >>> Err(ValueError("boom")).unwrap_or(0)         # 0
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")
U = TypeVar("U")
F = TypeVar("F")


class UnwrapError(Exception):
    """Raised by ``Err.unwrap()`` when the carried error is not an exception."""

    def __init__(self, error: Any) -> None:
        super().__init__(f"Called unwrap on an Err value: {error!r}")
        self.error = error


# =============================================================================
# Ok Variant
# =============================================================================
@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result carrying a value."""

    value: T

    @property
    def success(self) -> bool:
        return True

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: Any) -> T:
        return self.value

    def unwrap_or_else(self, fn: Callable[[Any], Any]) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> "Ok[U]":
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[Any], Any]) -> "Ok[T]":
        return self

    def and_then(self, fn: Callable[[T], "Result[U, Any]"]) -> "Result[U, Any]":
        return fn(self.value)


# =============================================================================
# Err Variant
# =============================================================================
@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result carrying an error (usually a ConductorError)."""

    error: E

    @property
    def success(self) -> bool:
        return False

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raise the carried error.

        Raises:
            The carried exception itself, or UnwrapError when the error is
            not an exception instance.
        """
        if isinstance(self.error, BaseException):
            raise self.error
        raise UnwrapError(self.error)

    def unwrap_or(self, default: U) -> U:
        return default

    def unwrap_or_else(self, fn: Callable[[E], U]) -> U:
        return fn(self.error)

    def map(self, fn: Callable[[Any], Any]) -> "Err[E]":
        return self

    def map_err(self, fn: Callable[[E], F]) -> "Err[F]":
        return Err(fn(self.error))

    def and_then(self, fn: Callable[[Any], Any]) -> "Err[E]":
        return self


Result = Union[Ok[T], Err[E]]


# =============================================================================
# Helpers
# =============================================================================
def from_callable(fn: Callable[..., T], *args: Any, **kwargs: Any) -> Result[T, Exception]:
    """Call ``fn`` and capture a raised exception as ``Err``."""
    try:
        return Ok(fn(*args, **kwargs))
    except Exception as exc:
        return Err(exc)


async def from_awaitable(awaitable: Awaitable[T]) -> Result[T, Exception]:
    """Await ``awaitable`` and capture a raised exception as ``Err``."""
    try:
        return Ok(await awaitable)
    except Exception as exc:
        return Err(exc)


def collect(results: Iterable[Result[T, E]]) -> Result[list[T], E]:
    """Turn a sequence of results into one: the first Err, or Ok of all values."""
    values: list[T] = []
    for result in results:
        if isinstance(result, Err):
            return result
        values.append(result.value)
    return Ok(values)


def partition(results: Iterable[Result[T, E]]) -> tuple[list[T], list[E]]:
    """Split results into (values, errors), keeping their relative order."""
    values: list[T] = []
    errors: list[E] = []
    for result in results:
        if isinstance(result, Ok):
            values.append(result.value)
        else:
            errors.append(result.error)
    return values, errors

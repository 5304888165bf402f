"""
Tests for conductor.core.result
=================================

These tests verify the Ok / Err result type and its helper functions.

What's Being Tested:
    - Ok / Err:        predicates, unwrap variants, map / map_err / and_then
    - from_callable:   exception capture for plain calls
    - from_awaitable:  exception capture for coroutines
    - collect / partition

All tests are async (pytest-asyncio with asyncio_mode=auto).
"""

import pytest

from conductor.core.exceptions import AgentNotFoundError
from conductor.core.result import (
    Err,
    Ok,
    UnwrapError,
    collect,
    from_awaitable,
    from_callable,
    partition,
)


# =============================================================================
# Test: Ok
# =============================================================================
class TestOk:
    """Tests for the success variant."""

    def test_predicates(self) -> None:
        result = Ok(1)
        assert result.is_ok()
        assert not result.is_err()
        assert result.success is True

    def test_unwrap_returns_value(self) -> None:
        assert Ok("x").unwrap() == "x"
        assert Ok("x").unwrap_or("y") == "x"
        assert Ok("x").unwrap_or_else(lambda e: "y") == "x"

    def test_map_and_then(self) -> None:
        assert Ok(21).map(lambda v: v * 2) == Ok(42)
        assert Ok(2).and_then(lambda v: Ok(v + 1)) == Ok(3)
        assert Ok(2).and_then(lambda v: Err("bad")) == Err("bad")

    def test_map_err_is_noop(self) -> None:
        result = Ok(5)
        assert result.map_err(lambda e: "changed") is result


# =============================================================================
# Test: Err
# =============================================================================
class TestErr:
    """Tests for the failure variant."""

    def test_predicates(self) -> None:
        result = Err(ValueError("boom"))
        assert result.is_err()
        assert not result.is_ok()
        assert result.success is False

    def test_unwrap_raises_carried_exception(self) -> None:
        error = AgentNotFoundError("missing")
        with pytest.raises(AgentNotFoundError) as exc_info:
            Err(error).unwrap()
        assert exc_info.value is error

    def test_unwrap_non_exception_raises_unwrap_error(self) -> None:
        with pytest.raises(UnwrapError):
            Err("not an exception").unwrap()

    def test_fallbacks(self) -> None:
        assert Err("e").unwrap_or(0) == 0
        assert Err("e").unwrap_or_else(lambda e: e.upper()) == "E"

    def test_map_skipped_and_map_err_applied(self) -> None:
        result = Err("e")
        assert result.map(lambda v: v + 1) is result
        assert result.map_err(lambda e: e + "!") == Err("e!")
        assert result.and_then(lambda v: Ok(v)) is result


# =============================================================================
# Test: Helpers
# =============================================================================
class TestHelpers:
    """Tests for the module-level helpers."""

    def test_from_callable(self) -> None:
        assert from_callable(int, "7") == Ok(7)
        result = from_callable(int, "seven")
        assert result.is_err()
        assert isinstance(result.error, ValueError)

    async def test_from_awaitable(self) -> None:
        async def good():
            return 1

        async def bad():
            raise RuntimeError("nope")

        assert await from_awaitable(good()) == Ok(1)
        result = await from_awaitable(bad())
        assert isinstance(result.error, RuntimeError)

    def test_collect_returns_first_error(self) -> None:
        assert collect([Ok(1), Ok(2)]) == Ok([1, 2])
        assert collect([Ok(1), Err("a"), Err("b")]) == Err("a")
        assert collect([]) == Ok([])

    def test_partition_keeps_order(self) -> None:
        values, errors = partition([Ok(1), Err("a"), Ok(2), Err("b")])
        assert values == [1, 2]
        assert errors == ["a", "b"]

"""
Tests for conductor.orchestration.conditions
==============================================

These tests verify guard evaluation and the restricted expression language,
including JavaScript operator spellings and rejection of unsafe syntax.
"""

import pytest

from conductor.core.context import ExecutionContext
from conductor.orchestration.conditions import (
    ExpressionError,
    evaluate_condition,
    evaluate_expression,
    normalize_expression,
)


@pytest.fixture
def scope():
    ctx = ExecutionContext(
        input={"count": 7, "strict": False, "mode": "fast", "tags": ["a", "b"]},
        state={"done": True},
    ).with_result("fetch", {"status": 200, "items": [1, 2, 3]})
    return ctx.scope()


# =============================================================================
# Test: normalize_expression
# =============================================================================
class TestNormalize:
    """JavaScript spellings are rewritten outside string literals."""

    def test_operators(self) -> None:
        assert normalize_expression("a === 1 && b !== 2") == "a == 1  and  b != 2"
        assert "or" in normalize_expression("a || b")
        assert normalize_expression("true") == "True"
        assert normalize_expression("x == null") == "x == None"

    def test_string_literals_untouched(self) -> None:
        assert normalize_expression("a == '&& true'") == "a == '&& true'"


# =============================================================================
# Test: evaluate_expression
# =============================================================================
class TestEvaluateExpression:
    """The AST walker."""

    def test_arithmetic_and_comparison(self) -> None:
        assert evaluate_expression("1 + 2 * 3 == 7", {}) is True
        assert evaluate_expression("10 % 3", {}) == 1
        assert evaluate_expression("1 < x <= 3", {"x": 2}) is True

    def test_attribute_and_index(self) -> None:
        names = {"doc": {"tags": ["a", "b"]}}
        assert evaluate_expression("doc.tags[1] == 'b'", names) is True
        assert evaluate_expression("doc.tags.length", names) == 2
        assert evaluate_expression("doc['tags'][5]", names) is None
        assert evaluate_expression("doc.missing", names) is None

    def test_membership_and_ternary(self) -> None:
        assert evaluate_expression("'a' in ['a', 'b']", {}) is True
        assert evaluate_expression("'yes' if flag else 'no'", {"flag": False}) == "no"

    def test_unknown_names_are_none(self) -> None:
        assert evaluate_expression("ghost == null", {}) is True

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os')",
            "len(x)",
            "x.__class__",
            "[i for i in x]",
            "lambda: 1",
            "x[1:2]",
        ],
    )
    def test_rejected_syntax(self, expression) -> None:
        with pytest.raises(ExpressionError):
            evaluate_expression(expression, {"x": [1, 2, 3]})

    def test_syntax_error(self) -> None:
        with pytest.raises(ExpressionError, match="Invalid expression"):
            evaluate_expression("a ==", {})

    def test_type_error_is_expression_error(self) -> None:
        with pytest.raises(ExpressionError, match="evaluation failed"):
            evaluate_expression("x > 1", {"x": None})


# =============================================================================
# Test: evaluate_condition
# =============================================================================
class TestEvaluateCondition:
    """Guard evaluation against a scope."""

    def test_literal_bool(self, scope) -> None:
        assert evaluate_condition(True, scope) is True
        assert evaluate_condition(False, scope) is False

    def test_placeholder_resolving_to_bool(self, scope) -> None:
        assert evaluate_condition("${state.done}", scope) is True
        assert evaluate_condition("${input.strict}", scope) is False

    def test_expression_over_flattened_names(self, scope) -> None:
        assert evaluate_condition("input.count > 5 && input.mode === 'fast'", scope) is True
        assert evaluate_condition("fetch.success and fetch.output.status == 200", scope) is True
        assert evaluate_condition("!input.strict", scope) is True

    def test_mixed_placeholder_and_expression(self, scope) -> None:
        assert evaluate_condition("${fetch.output.status} === 200 || input.strict", scope) is True

    def test_embedded_string_placeholder_compares_as_value(self, scope) -> None:
        assert evaluate_condition("${input.mode} == 'fast'", scope) is True
        assert evaluate_condition("${input.mode} === 'slow'", scope) is False
        assert evaluate_condition("${input.mode} !== 'slow' && ${state.done}", scope) is True

    def test_embedded_placeholder_with_filter(self, scope) -> None:
        assert evaluate_condition("${input.mode | uppercase} == 'FAST'", scope) is True

    def test_embedded_missing_placeholder_is_null(self, scope) -> None:
        assert evaluate_condition("${input.nope} == null", scope) is True
        assert evaluate_condition("${input.nope} == 'fast'", scope) is False

    def test_placeholder_inside_quotes_is_text(self, scope) -> None:
        assert evaluate_condition("'${input.mode}-run' == 'fast-run'", scope) is True

    def test_failure_yields_false(self, scope) -> None:
        assert evaluate_condition("input.count >", scope) is False
        assert evaluate_condition("len(input.tags)", scope) is False

    def test_non_string_truthiness(self, scope) -> None:
        assert evaluate_condition("${fetch.output.items}", scope) is True
        assert evaluate_condition(0, scope) is False
        assert evaluate_condition(None, scope) is False

"""
conductor.orchestration.conditions - Condition Evaluation
===========================================================

Decides the boolean guards of the step graph: agent ``condition``/``when``,
branch ``condition``, while ``condition`` and foreach ``breakWhen``.

Evaluation Order:
    1. A literal bool is used as-is.
    2. A string that is exactly one placeholder resolves to its typed value
       ("${input.enabled}" → True).
    3. A bool result is used as-is.
    4. A string result is parsed by the restricted expression language
       below; a parse or evaluation failure yields False and a warning.
       Placeholders embedded in an expression are bound as typed values
       (see bind_placeholders), never pasted in as source text.
    5. Anything else is judged by truthiness.

Restricted Expression Language:
    Python expression syntax with JavaScript spellings accepted:

        input.count > 5 and state.mode == 'fast'
        ${fetch.output.status} === 200 || !input.strict
        item.tags[0] in ['a', 'b']

    Allowed: literals, names from the flattened context, attribute and
    index access, comparisons, and/or/not, arithmetic, list/tuple/dict
    literals, conditional expressions. Function calls, lambdas,
    comprehensions and underscore-prefixed attributes are rejected. The
    expression is walked with ``ast``; nothing is ever passed to ``eval``.
"""

from __future__ import annotations

import ast
import operator
import re
from typing import Any, Mapping, Optional

import structlog

from conductor.core.context import ResolutionScope
from conductor.orchestration.interpolation import (
    MISSING,
    PLACEHOLDER_PATTERN,
    Interpolator,
    contains_placeholder,
    stringify,
)

logger = structlog.get_logger()


class ExpressionError(Exception):
    """Raised when an expression is outside the restricted language."""


# Quoted string literals are left untouched by the JS-to-Python rewrite.
_STRING_LITERAL = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")
_JS_REWRITES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
]

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript-style operators outside of string literals."""
    pieces = _STRING_LITERAL.split(expression)
    for i in range(0, len(pieces), 2):
        piece = pieces[i]
        for pattern, replacement in _JS_REWRITES:
            piece = pattern.sub(replacement, piece)
        pieces[i] = piece
    return "".join(pieces).strip()


# =============================================================================
# AST Evaluator
# =============================================================================
class _Evaluator:
    """Walks an expression AST against a flat name table."""

    def __init__(self, names: Mapping[str, Any]) -> None:
        self._names = names

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"_visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def _visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def _visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _visit_Name(self, node: ast.Name) -> Any:
        if node.id in ("True", "False", "None"):
            return {"True": True, "False": False, "None": None}[node.id]
        return self._names.get(node.id)

    def _visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to attribute {node.attr!r} is not allowed")
        target = self.visit(node.value)
        if isinstance(target, Mapping):
            return target.get(node.attr)
        if node.attr == "length" and isinstance(target, (list, tuple, str)):
            return len(target)
        return None

    def _visit_Subscript(self, node: ast.Subscript) -> Any:
        if isinstance(node.slice, ast.Slice):
            raise ExpressionError("Slices are not allowed")
        target = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(target, Mapping):
            return target.get(key)
        if isinstance(target, (list, tuple, str)) and isinstance(key, int):
            return target[key] if -len(target) <= key < len(target) else None
        return None

    def _visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            value: Any = True
            for operand in node.values:
                value = self.visit(operand)
                if not value:
                    return value
            return value
        value = False
        for operand in node.values:
            value = self.visit(operand)
            if value:
                return value
        return value

    def _visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")

    def _visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _BINARY_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.left), self.visit(node.right))

    def _visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.visit(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def _visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def _visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(element) for element in node.elts]

    def _visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(element) for element in node.elts)

    def _visit_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        if any(key is None for key in node.keys):
            raise ExpressionError("Dict unpacking is not allowed")
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}


def evaluate_expression(expression: str, names: Mapping[str, Any]) -> Any:
    """Evaluate a restricted expression against a flat name table.

    Raises:
        ExpressionError: On syntax outside the restricted language or on an
            operation that fails (e.g. comparing None with a number).
    """
    source = normalize_expression(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression: {expression!r}") from exc
    try:
        return _Evaluator(names).visit(tree)
    except ExpressionError:
        raise
    except (TypeError, ValueError, ZeroDivisionError, KeyError, IndexError) as exc:
        raise ExpressionError(f"Expression evaluation failed: {exc}") from exc


# =============================================================================
# Condition Evaluation
# =============================================================================
def bind_placeholders(
    condition: str,
    scope: ResolutionScope,
    interpolator: Interpolator,
) -> tuple[str, dict[str, Any]]:
    """Replace the placeholders of an expression with bound names.

    A placeholder outside quotes becomes a generated name bound to its typed
    value, so ``${input.mode} == 'fast'`` compares the string ``"fast"``
    rather than the bare word ``fast``. A placeholder inside a quoted literal
    is plain string interpolation.

    Returns:
        The rewritten expression and the table of generated names.
    """
    masked = PLACEHOLDER_PATTERN.sub(lambda match: "_" * len(match.group(0)), condition)
    quoted = [literal.span() for literal in _STRING_LITERAL.finditer(masked)]

    bound: dict[str, Any] = {}
    pieces: list[str] = []
    cursor = 0
    for match in PLACEHOLDER_PATTERN.finditer(condition):
        start, end = match.span()
        pieces.append(condition[cursor:start])
        value = interpolator.evaluate(match.group(1) or match.group(2), scope)
        if any(low < start < high for low, high in quoted):
            pieces.append(match.group(0) if value is MISSING else stringify(value))
        else:
            name = f"__placeholder_{len(bound)}"
            bound[name] = None if value is MISSING else value
            pieces.append(f" {name} ")
        cursor = end
    pieces.append(condition[cursor:])
    return "".join(pieces), bound


def evaluate_condition(
    condition: Any,
    scope: ResolutionScope,
    interpolator: Optional[Interpolator] = None,
) -> bool:
    """Evaluate a guard against the current scope. Never raises."""
    if isinstance(condition, bool):
        return condition

    resolver = interpolator or Interpolator()
    if contains_placeholder(condition) and PLACEHOLDER_PATTERN.fullmatch(condition) is None:
        expression, bound = bind_placeholders(condition, scope, resolver)
        return _evaluate_guarded(condition, expression, {**scope.flatten(), **bound})

    value = resolver.resolve(condition, scope)

    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _evaluate_guarded(condition, value, scope.flatten())
    return bool(value)


def _evaluate_guarded(condition: Any, expression: str, names: Mapping[str, Any]) -> bool:
    try:
        return bool(evaluate_expression(expression, names))
    except ExpressionError as exc:
        logger.warning("condition_evaluation_failed", condition=str(condition), error=str(exc))
        return False

"""
conductor.orchestration.interpolation - Expression Resolver
=============================================================

Binds step configuration to runtime data. Step inputs, conditions, foreach
items and output mappings may contain placeholders:

    "${input.user.name}"              ensemble input
    "${state.counter}"                shared state
    "${fetch.output.items[0].title}"  output of the step keyed "fetch"
    "${env.REGION}"                   environment (when enabled)
    "${item}" / "${index}"            foreach / map bindings
    "{{input.name | uppercase}}"      alternate syntax, with a filter chain

Resolution Pipeline:

    template ──→ ValueResolver chain ──→ placeholder ──→ NamespaceResolver chain
                 (str / list / dict /                  (input, state, env,
                  passthrough)                          bindings, step outputs)
                                                              │
                                                              ↓
                                                        filter chain

Rules:
    - A string that is exactly one placeholder resolves to the typed value
      ("${input.count}" → 3, not "3").
    - A string with placeholders plus other text is string interpolation;
      a placeholder that cannot be resolved keeps its original text.
    - Unresolvable paths resolve to None, never raise.
    - Malformed syntax ("${unclosed") is literal text.
    - Non-string leaves pass through unchanged; lists and dicts recurse.
"""

from __future__ import annotations

import ast
import json
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional, Sequence

import structlog

from conductor.core.context import ResolutionScope

logger = structlog.get_logger()


class _Missing:
    """Sentinel for a path that did not resolve."""

    _instance: Optional[_Missing] = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

# ${expr} or {{expr}}; braces inside the expression are not allowed.
PLACEHOLDER_PATTERN = re.compile(r"\$\{([^{}]+)\}|\{\{([^{}]+)\}\}")
# Single "|" separates filters; "||" is left alone.
_FILTER_SPLIT = re.compile(r"(?<!\|)\|(?!\|)")
_INDEX = re.compile(r"\[(-?\d+)\]")
_FILTER_CALL = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\s*(?:\((.*)\))?$", re.DOTALL)


# =============================================================================
# Path Helpers
# =============================================================================
def split_path(path: str) -> Optional[list[str]]:
    """Split ``a.b[0].c`` into ``["a", "b", "0", "c"]``.

    Returns None for malformed paths (empty segments).
    """
    normalized = _INDEX.sub(r".\1", path.strip())
    parts = normalized.split(".")
    if not parts or any(not part.strip() for part in parts):
        return None
    return [part.strip() for part in parts]


def traverse(value: Any, parts: Sequence[str]) -> Any:
    """Walk nested mappings and sequences. Returns MISSING on any miss."""
    current = value
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and re.fullmatch(r"-?\d+", part):
            index = int(part)
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def stringify(value: Any) -> str:
    """Render a value for string interpolation (JSON-style scalars)."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Namespace Resolvers
# =============================================================================
# Each resolver owns one or more root names. The first resolver recognizing
# the root of a path consumes it; later resolvers are not consulted.
# =============================================================================
class NamespaceResolver(ABC):
    """Resolves paths below one root namespace."""

    @abstractmethod
    def can_resolve(self, root: str, scope: ResolutionScope) -> bool:
        """Whether this resolver owns ``root``."""

    @abstractmethod
    def resolve(self, root: str, rest: list[str], scope: ResolutionScope) -> Any:
        """Resolve the remaining path segments. Returns MISSING on a miss."""


class InputResolver(NamespaceResolver):
    """``input.*`` (also reachable as ``trigger.*``)."""

    ROOTS = frozenset({"input", "trigger"})

    def can_resolve(self, root: str, scope: ResolutionScope) -> bool:
        return root in self.ROOTS

    def resolve(self, root: str, rest: list[str], scope: ResolutionScope) -> Any:
        return traverse(scope.input, rest)


class StateResolver(NamespaceResolver):
    """``state.*``"""

    def can_resolve(self, root: str, scope: ResolutionScope) -> bool:
        return root == "state"

    def resolve(self, root: str, rest: list[str], scope: ResolutionScope) -> Any:
        return traverse(scope.state, rest)


class EnvResolver(NamespaceResolver):
    """``env.*``, only when the scope carries an environment."""

    def can_resolve(self, root: str, scope: ResolutionScope) -> bool:
        return root == "env" and scope.env is not None

    def resolve(self, root: str, rest: list[str], scope: ResolutionScope) -> Any:
        return traverse(scope.env, rest)


class BindingResolver(NamespaceResolver):
    """Names bound by enclosing control steps (item, index, error ...)."""

    def can_resolve(self, root: str, scope: ResolutionScope) -> bool:
        return root in scope.bindings

    def resolve(self, root: str, rest: list[str], scope: ResolutionScope) -> Any:
        return traverse(scope.bindings[root], rest)


class StepOutputResolver(NamespaceResolver):
    """``<stepKey>.output.*`` and ``<stepKey>.success``."""

    def can_resolve(self, root: str, scope: ResolutionScope) -> bool:
        return root in scope.steps

    def resolve(self, root: str, rest: list[str], scope: ResolutionScope) -> Any:
        output = scope.steps[root]
        if not rest:
            return {"output": output, "success": True}
        if rest[0] == "output":
            return traverse(output, rest[1:])
        if rest[0] == "success" and len(rest) == 1:
            return True
        return MISSING


def default_namespaces() -> list[NamespaceResolver]:
    return [InputResolver(), StateResolver(), EnvResolver(), BindingResolver(), StepOutputResolver()]


# =============================================================================
# Filters
# =============================================================================
def _join(value: Any, separator: str = ",") -> Any:
    return separator.join(stringify(v) for v in value)


def _first(value: Any) -> Any:
    return value[0] if value else MISSING


def _last(value: Any) -> Any:
    return value[-1] if value else MISSING


FILTERS: dict[str, Callable[..., Any]] = {
    "uppercase": lambda v: v.upper(),
    "lowercase": lambda v: v.lower(),
    "trim": lambda v: v.strip(),
    "length": len,
    "first": _first,
    "last": _last,
    "keys": lambda v: list(v.keys()),
    "values": lambda v: list(v.values()),
    "json": lambda v: json.dumps(v, default=str),
    "join": _join,
    "split": lambda v, sep=None: v.split(sep),
    "round": lambda v, digits=0: round(v, digits) if digits else round(v),
    "abs": abs,
}


def _parse_filter(spec: str) -> Optional[tuple[str, tuple[Any, ...]]]:
    match = _FILTER_CALL.match(spec.strip())
    if match is None:
        return None
    name, raw_args = match.group(1), match.group(2)
    if raw_args is None or not raw_args.strip():
        return name, ()
    try:
        args = ast.literal_eval(f"({raw_args},)")
    except (ValueError, SyntaxError):
        return None
    return name, tuple(args)


# =============================================================================
# Value Resolvers
# =============================================================================
class ValueResolver(ABC):
    """One link of the template chain; the first that can resolve wins."""

    @abstractmethod
    def can_resolve(self, template: Any) -> bool:
        ...

    @abstractmethod
    def resolve(self, template: Any, scope: ResolutionScope, interpolator: Interpolator) -> Any:
        ...


class StringResolver(ValueResolver):
    def can_resolve(self, template: Any) -> bool:
        return isinstance(template, str)

    def resolve(self, template: Any, scope: ResolutionScope, interpolator: Interpolator) -> Any:
        full = PLACEHOLDER_PATTERN.fullmatch(template)
        if full is not None:
            return interpolator.evaluate(full.group(1) or full.group(2), scope)
        if not PLACEHOLDER_PATTERN.search(template):
            return template

        def substitute(match: re.Match[str]) -> str:
            value = interpolator.evaluate(match.group(1) or match.group(2), scope)
            if value is MISSING:
                return match.group(0)
            return stringify(value)

        return PLACEHOLDER_PATTERN.sub(substitute, template)


class ListResolver(ValueResolver):
    def can_resolve(self, template: Any) -> bool:
        return isinstance(template, (list, tuple))

    def resolve(self, template: Any, scope: ResolutionScope, interpolator: Interpolator) -> Any:
        resolved = [interpolator.resolve(item, scope) for item in template]
        return resolved if isinstance(template, list) else tuple(resolved)


class DictResolver(ValueResolver):
    def can_resolve(self, template: Any) -> bool:
        return isinstance(template, Mapping)

    def resolve(self, template: Any, scope: ResolutionScope, interpolator: Interpolator) -> Any:
        return {key: interpolator.resolve(value, scope) for key, value in template.items()}


class PassthroughResolver(ValueResolver):
    def can_resolve(self, template: Any) -> bool:
        return True

    def resolve(self, template: Any, scope: ResolutionScope, interpolator: Interpolator) -> Any:
        return template


# =============================================================================
# Interpolator
# =============================================================================
class Interpolator:
    """Resolves templates against a ResolutionScope.

    Args:
        namespaces: Ordered namespace resolvers (defaults to input, state,
            env, bindings, step outputs).
        filters: Filter table, merged over the built-in FILTERS.

    Example:
        >>> scope = ResolutionScope(input={"name": "Alice"})
        >>> Interpolator().resolve("Hello, ${input.name}!", scope)
        'Hello, Alice!'
    """

    def __init__(
        self,
        namespaces: Optional[list[NamespaceResolver]] = None,
        filters: Optional[dict[str, Callable[..., Any]]] = None,
    ) -> None:
        self._namespaces = namespaces if namespaces is not None else default_namespaces()
        self._filters = {**FILTERS, **(filters or {})}
        self._chain: list[ValueResolver] = [
            StringResolver(),
            ListResolver(),
            DictResolver(),
            PassthroughResolver(),
        ]

    def resolve(self, template: Any, scope: ResolutionScope) -> Any:
        """Resolve a JSON-like template. Holes come back as None."""
        for resolver in self._chain:
            if resolver.can_resolve(template):
                value = resolver.resolve(template, scope, self)
                return None if value is MISSING else value
        return template

    def resolve_path(self, path: str, scope: ResolutionScope) -> Any:
        """Resolve a bare path (no placeholder syntax). Misses return MISSING."""
        parts = split_path(path)
        if parts is None:
            return MISSING
        root, rest = parts[0], parts[1:]
        for namespace in self._namespaces:
            if namespace.can_resolve(root, scope):
                return namespace.resolve(root, rest, scope)
        return MISSING

    def evaluate(self, expression: str, scope: ResolutionScope) -> Any:
        """Resolve ``path | filter | filter(arg)``. Misses return MISSING."""
        segments = _FILTER_SPLIT.split(expression)
        value = self.resolve_path(segments[0], scope) if segments[0].strip() else MISSING
        for spec in segments[1:]:
            value = self._apply_filter(value, spec)
        return value

    def _apply_filter(self, value: Any, spec: str) -> Any:
        parsed = _parse_filter(spec)
        if parsed is None:
            logger.debug("filter_malformed", filter=spec)
            return value
        name, args = parsed
        if name == "default":
            if value is MISSING or value is None or value == "":
                return args[0] if args else None
            return value
        fn = self._filters.get(name)
        if fn is None:
            logger.debug("filter_unknown", filter=name)
            return value
        if value is MISSING:
            return value
        try:
            return fn(value, *args)
        except (TypeError, ValueError, AttributeError, KeyError, IndexError):
            logger.debug("filter_not_applicable", filter=name, value_type=type(value).__name__)
            return value


_default = Interpolator()


def resolve(template: Any, scope: ResolutionScope) -> Any:
    """Resolve ``template`` with the default Interpolator."""
    return _default.resolve(template, scope)


def contains_placeholder(value: Any) -> bool:
    return isinstance(value, str) and PLACEHOLDER_PATTERN.search(value) is not None

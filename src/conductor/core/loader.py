"""
conductor.core.loader - Ensemble Parsing and Agent References
===============================================================

Turns authoring-time input (a YAML string, a YAML file, or a plain dict) into
a validated EnsembleDefinition, and parses ``name@version`` agent references.
Every function returns a Result; pydantic and YAML errors are converted into
ValidationError / AgentConfigError values.

Usage:
    >>> result = load_ensemble_file("ensembles/summarize.yaml")
    >>> ensemble = result.unwrap()
    >>> parse_agent_reference("summarize@2").unwrap()
    AgentReference(name='summarize', version='2')
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, NamedTuple, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from conductor.core.exceptions import AgentConfigError, ValidationError
from conductor.core.flow import STEP_LIST_ADAPTER, EnsembleDefinition, iter_agent_steps
from conductor.core.result import Err, Ok, Result


class AgentReference(NamedTuple):
    """A parsed agent reference."""

    name: str
    version: Optional[str] = None

    @property
    def versioned(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


def parse_agent_reference(reference: str) -> Result[AgentReference, AgentConfigError]:
    """Split ``name`` or ``name@version`` into its parts.

    Returns:
        Err(AgentConfigError) for empty parts or more than one "@".
    """
    parts = reference.split("@")
    if len(parts) > 2:
        return Err(AgentConfigError(reference, "invalid agent reference format, expected name@version"))
    name = parts[0].strip()
    version = parts[1].strip() if len(parts) == 2 else None
    if not name or (len(parts) == 2 and not version):
        return Err(AgentConfigError(reference, "agent reference has an empty name or version"))
    return Ok(AgentReference(name, version))


def _validation_error(message: str, exc: PydanticValidationError) -> ValidationError:
    return ValidationError(message, errors=exc.errors(include_url=False, include_context=False))


def parse_ensemble(source: Union[str, Mapping[str, Any]]) -> Result[EnsembleDefinition, ValidationError]:
    """Parse an ensemble from a YAML/JSON string or a mapping."""
    if isinstance(source, str):
        try:
            data = yaml.safe_load(source)
        except yaml.YAMLError as exc:
            return Err(ValidationError(f"Invalid ensemble YAML: {exc}"))
    else:
        data = dict(source)

    if not isinstance(data, dict):
        return Err(ValidationError("Ensemble definition must be a mapping"))

    try:
        ensemble = EnsembleDefinition.model_validate(data)
    except PydanticValidationError as exc:
        name = data.get("name", "<unnamed>")
        return Err(_validation_error(f'Invalid ensemble "{name}"', exc))

    if not ensemble.is_dynamic and not ensemble.flow:
        return Err(ValidationError(f'Ensemble "{ensemble.name}" has no flow steps defined'))

    references = validate_agent_references(ensemble.flow if not ensemble.is_dynamic else [])
    if references.is_err():
        return Err(ValidationError(str(references.error), errors=[references.error.to_dict()]))
    return Ok(ensemble)


def load_ensemble_file(path: Union[str, Path]) -> Result[EnsembleDefinition, ValidationError]:
    """Read and parse an ensemble YAML file."""
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        return Err(ValidationError(f"Cannot read ensemble file {file_path}: {exc}"))
    return parse_ensemble(text)


def parse_steps(raw: Any) -> Result[list[Any], ValidationError]:
    """Validate a raw step list (used for dynamically generated flows)."""
    if not isinstance(raw, list):
        return Err(ValidationError("Flow must be a list of steps"))
    try:
        return Ok(STEP_LIST_ADAPTER.validate_python(raw))
    except PydanticValidationError as exc:
        return Err(_validation_error("Invalid flow steps", exc))


def collect_agent_references(steps: list[Any]) -> list[str]:
    """Distinct agent references in a step tree, in first-seen order."""
    seen: dict[str, None] = {}
    for step in iter_agent_steps(steps):
        seen.setdefault(step.agent, None)
        if step.scoring is not None:
            seen.setdefault(step.scoring.evaluator, None)
    return list(seen)


def validate_agent_references(steps: list[Any]) -> Result[list[AgentReference], AgentConfigError]:
    """Parse every agent reference in a step tree, failing on the first bad one."""
    parsed: list[AgentReference] = []
    for reference in collect_agent_references(steps):
        result = parse_agent_reference(reference)
        if result.is_err():
            return result
        parsed.append(result.value)
    return Ok(parsed)

"""Validate tool arguments against remote JSON schemas before sending them."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, ValidationError

from toolbridge.mcp.models import JSONObject

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.6
# Missing and unknown parameters are reported before value problems.
_RANK = {"required": 0, "additionalProperties": 1}


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """One argument problem."""

    path: str
    message: str
    expected: str | None = None
    received: str | None = None

    def to_dict(self) -> JSONObject:
        return {
            "path": self.path,
            "message": self.message,
            "expected": self.expected,
            "received": self.received,
        }


@dataclass(slots=True)
class ValidationResult:
    """Outcome of validating one argument object."""

    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


def permissive_schema() -> JSONObject:
    return {"type": "object", "properties": {}, "additionalProperties": True}


def ensure_object_schema(schema: Any) -> JSONObject:
    """Return ``schema`` when it describes an object, else a permissive fallback."""
    if not isinstance(schema, Mapping):
        return permissive_schema()
    if schema.get("type") not in (None, "object"):
        return permissive_schema()
    properties = schema.get("properties")
    if properties is not None and not isinstance(properties, Mapping):
        return permissive_schema()
    return dict(schema)


def _properties(schema: Mapping[str, Any]) -> Mapping[str, Any]:
    properties = schema.get("properties")
    return properties if isinstance(properties, Mapping) else {}


def _required(schema: Mapping[str, Any]) -> list[str]:
    required = schema.get("required")
    return [str(name) for name in required] if isinstance(required, list) else []


def json_type(value: Any) -> str:
    """JSON type name of a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list | tuple):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def validate_tool_args(
    args: Mapping[str, Any],
    schema: Any,
    tool_name: str,
) -> ValidationResult:
    """Check ``args`` against the tool's input schema.

    Numeric strings are accepted where a number is expected. Unknown parameters
    are rejected whenever the schema names its properties, unless it explicitly
    allows additional ones.
    """
    if not isinstance(schema, Mapping):
        return ValidationResult(valid=True)
    effective = _strict_schema(schema)
    try:
        Draft202012Validator.check_schema(effective)
    except SchemaError as exc:
        logger.debug("Skipping validation for %s: unusable schema: %s", tool_name, exc.message)
        return ValidationResult(valid=True)

    required = set(_required(schema))
    instance = {
        name: value for name, value in args.items() if not (value is None and name in required)
    }
    found = sorted(
        Draft202012Validator(effective).iter_errors(instance),
        key=lambda error: (_RANK.get(str(error.validator), len(_RANK)), _path(error)),
    )

    errors: list[ValidationIssue] = []
    suggestions: list[str] = []
    reported: set[tuple[str, str]] = set()
    for error in found:
        for issue, suggestion in _describe_error(error):
            key = (issue.path, issue.message)
            if key in reported:
                continue
            reported.add(key)
            errors.append(issue)
            if suggestion:
                suggestions.append(suggestion)
    return ValidationResult(valid=not errors, errors=errors, suggestions=suggestions)


def _strict_schema(schema: Mapping[str, Any]) -> JSONObject:
    effective = dict(schema)
    if _properties(schema) and "additionalProperties" not in schema:
        effective["additionalProperties"] = False
    return effective


def _path(error: ValidationError) -> str:
    return ".".join(str(part) for part in error.absolute_path)


def _join(parent: str, name: str) -> str:
    return f"{parent}.{name}" if parent else name


def _describe_error(error: ValidationError) -> list[tuple[ValidationIssue, str | None]]:
    """Map one schema violation onto issues and, where possible, a fix."""
    path = _path(error)
    subschema = error.schema if isinstance(error.schema, Mapping) else {}
    instance = error.instance

    if error.validator == "required" and isinstance(instance, Mapping):
        properties = _properties(subschema)
        described = []
        for name in error.validator_value:
            if name in instance:
                continue
            prop = properties.get(name)
            prop_schema = prop if isinstance(prop, Mapping) else {}
            issue = ValidationIssue(
                path=_join(path, name),
                message=f"Missing required parameter: {name}",
                expected=str(prop_schema.get("type", "any")),
                received="undefined",
            )
            example = json.dumps({name: example_value(prop_schema)})
            described.append((issue, f'Add required parameter "{name}": {example}'))
        return described

    if error.validator == "additionalProperties" and isinstance(instance, Mapping):
        known = list(_properties(subschema))
        described = []
        for name in instance:
            if name in known:
                continue
            issue = ValidationIssue(
                path=_join(path, name),
                message=f"Unknown parameter: {name}",
                expected=f"one of: {', '.join(known)}",
                received=name,
            )
            similar = find_similar_param(name, known)
            if similar is not None:
                suggestion = f'Did you mean "{similar}" instead of "{name}"?'
            else:
                suggestion = f"Valid parameters: {', '.join(known)}"
            described.append((issue, suggestion))
        return described

    if error.validator == "type":
        expected_types = error.validator_value
        if isinstance(expected_types, str):
            expected_types = [expected_types]
        if _is_numeric(instance) and {"number", "integer"} & set(expected_types):
            return []
        expected = " | ".join(str(kind) for kind in expected_types)
        actual = json_type(instance)
        issue = ValidationIssue(path, f"Expected {expected}, got {actual}", expected, actual)
        return [(issue, _type_suggestion(path, subschema, instance))]

    if error.validator == "enum":
        options = list(error.validator_value)
        allowed = ", ".join(str(option) for option in options[:5])
        if len(options) > 5:
            allowed += "..."
        message = f'Value "{instance}" is not in allowed values'
        return [(ValidationIssue(path, message, allowed, str(instance)), None)]

    return [(ValidationIssue(path or "<root>", error.message), None)]


def _is_numeric(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        float(value)
    except ValueError:
        return False
    return True


def example_value(schema: Mapping[str, Any]) -> Any:
    """Plausible example for a parameter, used in suggestions."""
    if "default" in schema:
        return schema["default"]
    if "example" in schema:
        return schema["example"]
    enum = schema.get("enum")
    if isinstance(enum, list) and enum:
        return enum[0]
    kind = schema.get("type")
    if kind == "string":
        description = str(schema.get("description") or "").lower()
        return "example_id" if "id" in description else "example"
    if kind in {"number", "integer"}:
        return schema.get("minimum", 10)
    if kind == "boolean":
        return True
    if kind == "array":
        return []
    if kind == "object":
        return {}
    return "..."


def similarity(left: str, right: str) -> float:
    """Dice coefficient over character bigrams."""
    if left == right:
        return 1.0
    if len(left) < 2 or len(right) < 2:
        return 0.0
    bigrams: dict[str, int] = {}
    for index in range(len(left) - 1):
        bigram = left[index : index + 2]
        bigrams[bigram] = bigrams.get(bigram, 0) + 1
    matches = 0
    for index in range(len(right) - 1):
        bigram = right[index : index + 2]
        if bigrams.get(bigram, 0) > 0:
            bigrams[bigram] -= 1
            matches += 1
    return (2 * matches) / (len(left) + len(right) - 2)


def find_similar_param(name: str, known: list[str]) -> str | None:
    lowered = name.lower()
    best: str | None = None
    best_score = 0.0
    for candidate in known:
        score = similarity(lowered, candidate.lower())
        if score > best_score and score > SIMILARITY_THRESHOLD:
            best, best_score = candidate, score
    return best


def _type_suggestion(name: str, schema: Mapping[str, Any], value: Any) -> str:
    expected = schema.get("type")
    if expected in {"number", "integer"} and isinstance(value, str):
        return f'Convert "{name}" to number: {name}: {_as_number(value)}'
    if expected == "string":
        return f'Convert "{name}" to string: {name}: "{value}"'
    if expected == "array":
        return f'Wrap "{name}" in array: {name}: [{json.dumps(value, default=str)}]'
    return f'Parameter "{name}" should be {expected}'


def _as_number(value: str) -> int | float:
    try:
        number = float(value)
    except ValueError:
        return 0
    return int(number) if number.is_integer() else number


def format_validation_error(result: ValidationResult, tool_name: str, server_key: str) -> str:
    """Render a validation failure as text an automated caller can act on."""
    if result.valid:
        return ""
    lines = [f"Parameter validation failed for {server_key}/{tool_name}:", ""]
    for issue in result.errors:
        lines.append(f"  - {issue.message}")
        if issue.expected and issue.received:
            lines.append(f"    Expected: {issue.expected}")
            lines.append(f"    Received: {issue.received}")
    if result.suggestions:
        lines.append("")
        lines.append("Suggestions:")
        lines.extend(f"  * {suggestion}" for suggestion in result.suggestions[:3])
    lines.append("")
    lines.append(
        f"Tip: Use helpers.{server_key}.get_tool_schema('{tool_name}') "
        "to see full parameter requirements."
    )
    return "\n".join(lines)


def generate_schema_summary(schema: Any) -> str:
    """Summarize an object schema as ``{ a: string, b?: number }``."""
    if not isinstance(schema, Mapping):
        return "No schema available"
    properties = _properties(schema)
    if not properties:
        return "No parameters"
    required = set(_required(schema))
    params = []
    for name, prop in properties.items():
        kind = prop.get("type", "any") if isinstance(prop, Mapping) else "any"
        marker = "" if name in required else "?"
        params.append(f"{name}{marker}: {kind}")
    return "{ " + ", ".join(params) + " }"


def adapt_args_for_schema(args: Mapping[str, Any], schema: Any) -> dict[str, Any]:
    """Drop empty-string values for enum-constrained parameters."""
    adapted = dict(args)
    for name, prop in _properties(schema if isinstance(schema, Mapping) else {}).items():
        if not isinstance(prop, Mapping) or not isinstance(prop.get("enum"), list):
            continue
        if adapted.get(name) == "":
            del adapted[name]
    return adapted

"""Argument validation for model-proposed tool calls."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from jsonschema.exceptions import best_match

from ..types import ToolCall
from .registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

__all__ = ["ValidationOutcome", "validate_tool_call", "value_matches_type"]


@dataclass(slots=True)
class ValidationOutcome:
    """Represents the result of validating a tool call."""

    ok: bool
    message: str = ""


def value_matches_type(value: Any, expected: str | None) -> bool:
    """Return whether ``value`` has the JSON primitive type ``expected``.

    Booleans never count as numbers and numbers must be finite. Unknown or missing type names
    accept anything.
    """

    if expected == "string":
        return isinstance(value, str)
    if expected in ("number", "integer"):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
        return expected == "number" or float(value).is_integer()
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, (list, tuple))
    if expected == "object":
        return isinstance(value, dict)
    return True


def validate_tool_call(call: ToolCall, registry: ToolRegistry) -> ValidationOutcome:
    """Check ``call`` against its declared schema and report the first failure only."""

    spec = registry.find(call.name)
    if spec is None:
        return _reject(call, f"Unknown tool {call.name}.")

    args = dict(call.args or {})
    properties = spec.properties

    for key in spec.required:
        if key not in args:
            return _reject(call, f"Missing required argument: {key}")

    if spec.closed:
        for key in args:
            if key not in properties:
                return _reject(call, f"Unexpected argument: {key}")

    for key, declared in properties.items():
        if key not in args:
            continue
        expected = declared.get("type")
        if not value_matches_type(args[key], expected):
            return _reject(call, f"Invalid type for {key}. Expected {expected}.")

    error = best_match(registry.validator_for(call.name).iter_errors(args))
    if error is not None:
        path = ".".join(str(part) for part in error.absolute_path) or "args"
        return _reject(call, f"Invalid value for {path}: {error.message}")

    return ValidationOutcome(ok=True, message="Tool call is valid.")


def _reject(call: ToolCall, message: str) -> ValidationOutcome:
    LOGGER.info("Rejected tool call %s: %s", call.name, message)
    return ValidationOutcome(ok=False, message=message)

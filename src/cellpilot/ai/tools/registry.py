"""Registry of the tools exposed to the model."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from .types import ToolCategory, ToolSpec

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ToolRegistryError",
    "DuplicateToolError",
    "ToolNotFoundError",
    "InvalidToolSchemaError",
    "ToolRegistry",
]


# -----------------------------------------------------------------------------
# Registration Errors
# -----------------------------------------------------------------------------


class ToolRegistryError(RuntimeError):
    """Base class for registry failures."""


class DuplicateToolError(ToolRegistryError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool {name} is already registered")
        self.name = name


class ToolNotFoundError(ToolRegistryError, KeyError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool {name}")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidToolSchemaError(ToolRegistryError):
    def __init__(self, name: str, error: SchemaError) -> None:
        super().__init__(f"Tool {name} declares an invalid schema: {error.message}")
        self.name = name
        self.error = error


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Fixed, ordered set of tool declarations.

    Every schema is checked against JSON Schema draft 7 when registered, and a compiled validator
    is kept for argument checks.

    Example:
        registry = ToolRegistry(TOOL_SPECS)
        spec = registry.get("read_range")
        validator = registry.validator_for("read_range")
    """

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: dict[str, ToolSpec] = {}
        self._validators: dict[str, Draft7Validator] = {}
        for spec in specs:
            self.register(spec)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise DuplicateToolError(spec.name)
        try:
            Draft7Validator.check_schema(dict(spec.parameters))
        except SchemaError as exc:
            raise InvalidToolSchemaError(spec.name, exc) from exc
        self._specs[spec.name] = spec
        self._validators[spec.name] = Draft7Validator(dict(spec.parameters))
        LOGGER.debug("Registered tool: %s (category=%s)", spec.name, spec.category.value)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> ToolSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise ToolNotFoundError(name)
        return spec

    def find(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def validator_for(self, name: str) -> Draft7Validator:
        validator = self._validators.get(name)
        if validator is None:
            raise ToolNotFoundError(name)
        return validator

    def names(self, *, category: ToolCategory | None = None) -> list[str]:
        return [spec.name for spec in self._specs.values() if category is None or spec.category is category]

    def specs(self) -> list[ToolSpec]:
        return list(self._specs.values())

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

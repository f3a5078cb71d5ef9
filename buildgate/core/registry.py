"""Tool registry and dispatcher.

Each tool is a ``Tool`` subclass registered once at startup. ``dispatch``
looks the tool up by exact name, checks the arguments against its JSON Schema,
lets the tool run its own semantic validation (the path sandbox for path-gated
tools) and only then executes it. Validation never has side effects, so a
rejected call spawns nothing.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any, ClassVar

from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError as SchemaViolation

from buildgate.core.errors import ToolValidationError, UnknownToolError, ValidationErrorKind
from buildgate.core.models import ToolDefinition, ToolResponse

logger = logging.getLogger(__name__)


def _schema_error(error: SchemaViolation) -> ToolValidationError:
    """Map a jsonschema failure onto the gateway's validation kinds."""
    if error.validator == "required":
        instance = error.instance if isinstance(error.instance, Mapping) else {}
        missing = [name for name in error.validator_value if name not in instance]
        field = missing[0] if missing else error.message
        return ToolValidationError(
            ValidationErrorKind.MISSING_FIELD, f"Missing required argument: {field}"
        )

    location = ".".join(str(part) for part in error.absolute_path)
    if not location:
        return ToolValidationError(ValidationErrorKind.BAD_TYPE, f"Invalid arguments: {error.message}")
    if error.validator == "type":
        message = f"Argument '{location}' must be of type {error.validator_value}"
    elif error.validator == "enum":
        allowed = ", ".join(str(v) for v in error.validator_value)
        message = f"Argument '{location}' must be one of: {allowed}"
    else:
        message = f"Argument '{location}' is invalid: {error.message}"
    return ToolValidationError(ValidationErrorKind.BAD_TYPE, message)


class Tool(ABC):
    """A named remote operation.

    Subclasses declare ``name`` and ``description``, provide an
    ``input_schema`` (class attribute or set per instance) and implement
    ``execute``. Path-gated tools also override ``check`` to run the
    sandbox and return their validated arguments.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    input_schema: dict[str, Any]

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name, description=self.description, input_schema=self.input_schema
        )

    def validate(self, arguments: Mapping[str, Any]) -> Any:
        """Schema check followed by the tool's own checks.

        Raises:
            ToolValidationError: The first problem found.
        """
        if not isinstance(arguments, Mapping):
            raise ToolValidationError(ValidationErrorKind.BAD_TYPE, "Arguments must be an object")
        validator = Draft7Validator(self.input_schema)
        errors = sorted(validator.iter_errors(dict(arguments)), key=lambda e: [str(p) for p in e.path])
        if errors:
            # Missing fields are reported ahead of type problems
            errors.sort(key=lambda e: e.validator != "required")
            raise _schema_error(errors[0])
        return self.check(dict(arguments))

    def check(self, arguments: dict[str, Any]) -> Any:
        """Semantic validation after the schema passed. Returns validated args."""
        return arguments

    @abstractmethod
    async def execute(self, validated: Any) -> ToolResponse:
        """Run the tool with arguments returned by ``validate``."""


class ToolRegistry:
    """Static name -> tool table, read-only once the server starts."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        Draft7Validator.check_schema(tool.input_schema)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def names(self) -> list[str]:
        return list(self._tools)

    def list(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def dispatch(self, name: str | None, arguments: Mapping[str, Any] | None) -> ToolResponse:
        """Validate and run one tool call.

        Raises:
            UnknownToolError: No tool has that name.
            ToolValidationError: Arguments failed schema or sandbox checks.
            SpawnError: The tool's process could not be started.
        """
        if not name:
            raise ToolValidationError(ValidationErrorKind.MISSING_FIELD, "Missing required argument: name")
        tool = self.get(name)
        validated = tool.validate(arguments if arguments is not None else {})
        logger.info(f"Executing tool {name}")
        return await tool.execute(validated)

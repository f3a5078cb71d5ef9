"""Core modules for the buildgate gateway."""

from buildgate.core.config import GatewayConfig, load_config
from buildgate.core.errors import (
    GatewayError,
    ToolValidationError,
    UnknownToolError,
    ValidationErrorKind,
)
from buildgate.core.registry import Tool, ToolRegistry

__all__ = [
    "GatewayConfig",
    "GatewayError",
    "Tool",
    "ToolRegistry",
    "ToolValidationError",
    "UnknownToolError",
    "ValidationErrorKind",
    "load_config",
]

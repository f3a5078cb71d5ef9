"""Gateway error taxonomy.

Every failure a caller can trigger maps onto one of these exceptions. The HTTP
layer turns them into response envelopes; nothing here knows about HTTP beyond
the status code each error should surface with.
"""

from __future__ import annotations

from enum import Enum


class ValidationErrorKind(str, Enum):
    """Why a tool's arguments were rejected."""

    INVALID_EXTENSION = "InvalidExtension"
    UNAUTHORIZED_DIRECTORY = "UnauthorizedDirectory"
    DIRECTORY_TRAVERSAL = "DirectoryTraversal"
    MISSING_FIELD = "MissingField"
    BAD_TYPE = "BadType"


class GatewayError(Exception):
    """Base class for errors surfaced to callers."""

    code = "GATEWAY_ERROR"
    http_status = 200

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(GatewayError):
    """Invalid gateway configuration. Fatal at startup."""

    code = "CONFIG_INVALID"


class UnauthenticatedError(GatewayError):
    """Missing, malformed or wrong bearer token."""

    code = "AUTH_FAILED"
    http_status = 401


class ForbiddenError(GatewayError):
    """Caller address is not on the IP allow-list."""

    code = "IP_DENIED"
    http_status = 403


class RateLimitedError(GatewayError):
    """Client exceeded the configured request rate."""

    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UnknownMethodError(GatewayError):
    """Request method is not one the endpoint serves."""

    code = "UNKNOWN_METHOD"

    def __init__(self, method: str) -> None:
        super().__init__(f"Unknown method: {method}")
        self.method = method


class UnknownToolError(GatewayError):
    """Tool name is not in the registry."""

    code = "UNKNOWN_TOOL"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolValidationError(GatewayError):
    """Tool arguments failed schema or sandbox validation.

    Raised before any process is spawned, so a rejected call has no side
    effects.
    """

    code = "VALIDATION_FAILED"

    def __init__(self, kind: ValidationErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class SpawnError(GatewayError):
    """The host could not start the requested process."""

    code = "SPAWN_FAILED"

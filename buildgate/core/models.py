"""Wire models for the /mcp endpoint."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

PROTOCOL_VERSION = "2024-11-05"


class ToolCallParams(BaseModel):
    """``params`` of a ``tools/call`` request."""

    name: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)


class McpRequest(BaseModel):
    """A request envelope. JSON-RPC ``jsonrpc``/``id`` members are tolerated."""

    model_config = ConfigDict(extra="allow")

    method: str = Field(..., min_length=1)
    params: ToolCallParams = Field(default_factory=ToolCallParams)


class ToolDefinition(BaseModel):
    """Discovery record for one tool. ``input_schema`` is JSON Schema."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    description: str
    input_schema: dict[str, Any] = Field(alias="inputSchema")


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolResponse(BaseModel):
    """Result envelope. Tool-level failures set ``is_error``."""

    model_config = ConfigDict(populate_by_name=True)

    content: list[TextContent]
    is_error: bool = Field(default=False, alias="isError")

    @classmethod
    def text(cls, text: str, is_error: bool = False) -> ToolResponse:
        return cls(content=[TextContent(text=text)], is_error=is_error)

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        if not self.is_error:
            payload.pop("isError")
        return payload

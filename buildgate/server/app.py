"""FastAPI application for the gateway.

Endpoints:
- ``POST /mcp``: ``initialize``, ``tools/list`` and ``tools/call``; rate
  limited, then bearer-authenticated, before anything is dispatched
- ``GET /health``: unauthenticated liveness probe, rate limited

Both endpoints first check the caller against the optional IP allow-list.

Tool-level failures (unknown tool, rejected arguments, spawn failure) are
returned as data with HTTP 200. Only the IP allow-list (403), authentication (401),
rate limiting (429) and malformed bodies (400) change the status code.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from buildgate import __version__
from buildgate.core.auth import AuthGate, IpAllowList, RateLimiter
from buildgate.core.config import GatewayConfig
from buildgate.core.errors import (
    GatewayError,
    RateLimitedError,
    SpawnError,
    ToolValidationError,
    UnknownMethodError,
    UnknownToolError,
)
from buildgate.core.models import PROTOCOL_VERSION, McpRequest, ToolResponse
from buildgate.core.registry import ToolRegistry
from buildgate.core.tools import build_registry
from buildgate.sandbox.executor import ProcessExecutor

logger = logging.getLogger(__name__)

SERVER_NAME = "buildgate"

# How often a long-running tools/call checks whether its caller went away
DISCONNECT_POLL_SECONDS = 0.5


def get_client_ip(request: Request) -> str:
    """Caller address, from the first X-Forwarded-For hop behind a trusted proxy."""
    config: GatewayConfig = request.app.state.config
    if config.trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def check_ip_allowed(request: Request) -> str:
    allow_list: IpAllowList = request.app.state.ip_allow_list
    client = get_client_ip(request)
    allow_list.check(client)
    return client


async def check_rate_limit(
    request: Request, response: Response, client: str = Depends(check_ip_allowed)
) -> str:
    limiter: RateLimiter = request.app.state.limiter
    remaining = limiter.hit(client)
    if limiter.enabled:
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    return client


async def require_auth(request: Request, client: str = Depends(check_rate_limit)) -> str:
    gate: AuthGate = request.app.state.auth
    gate.check(request.headers.get("Authorization"), client=client)
    return client


async def _await_unless_disconnected(request: Request, task: asyncio.Task) -> Any:
    """Wait for ``task``, cancelling it if the caller disconnects first."""
    while True:
        done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
        if done:
            return task.result()
        if await request.is_disconnected():
            logger.warning("Client disconnected; cancelling tool call")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return None


def _tool_error(exc: GatewayError) -> dict[str, Any]:
    if isinstance(exc, ToolValidationError):
        text = f"Validation error: {exc.message}"
    elif isinstance(exc, SpawnError):
        text = f"Execution error: {exc.message}"
    else:
        text = exc.message
    return ToolResponse.text(text, is_error=True).to_wire()


async def _handle(request: Request, rpc: McpRequest, client: str) -> dict[str, Any]:
    registry: ToolRegistry = request.app.state.registry

    if rpc.method == "initialize":
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "capabilities": {"tools": {}},
        }

    if rpc.method == "tools/list":
        return {"tools": [tool.model_dump(by_alias=True) for tool in registry.list()]}

    if rpc.method == "tools/call":
        name = rpc.params.name
        logger.info(f"tools/call {name} from {client}")
        task = asyncio.ensure_future(registry.dispatch(name, rpc.params.arguments))
        try:
            result = await _await_unless_disconnected(request, task)
        except (UnknownToolError, ToolValidationError, SpawnError) as e:
            logger.warning(f"tools/call {name} from {client} rejected: {e.message}")
            return _tool_error(e)
        if result is None:
            return _tool_error(GatewayError("Request cancelled"))
        return result.to_wire()

    raise UnknownMethodError(rpc.method)


def create_app(
    config: GatewayConfig,
    registry: ToolRegistry | None = None,
    executor: ProcessExecutor | None = None,
) -> FastAPI:
    """Build the application around one immutable configuration."""
    app = FastAPI(
        title="buildgate",
        description="Authenticated remote build and command gateway",
        version=__version__,
    )
    app.state.config = config
    app.state.ip_allow_list = IpAllowList(config.allowed_networks())
    app.state.auth = AuthGate(config.auth_token)
    app.state.limiter = RateLimiter(config.rate_limit_requests, config.rate_limit_window_ms)
    app.state.registry = registry if registry is not None else build_registry(config, executor)

    @app.exception_handler(RateLimitedError)
    async def rate_limited_handler(request: Request, exc: RateLimitedError):
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": exc.message, "retryAfter": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after), "X-RateLimit-Remaining": "0"},
        )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=exc.http_status, content={"error": exc.message})

    @app.get("/health")
    async def health(client: str = Depends(check_rate_limit)) -> dict[str, Any]:
        return {"status": "ok", "server": SERVER_NAME, "version": __version__}

    @app.post("/mcp")
    async def mcp(request: Request, client: str = Depends(require_auth)):
        try:
            body = await request.json()
            rpc = McpRequest.model_validate(body)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            logger.warning(f"Malformed request from {client}: {e}")
            return JSONResponse(status_code=400, content={"error": f"Invalid request: {e}"})

        try:
            return await _handle(request, rpc, client)
        except GatewayError:
            raise
        except Exception as e:
            logger.exception(f"Unhandled error serving {rpc.method} for {client}")
            return JSONResponse(status_code=500, content={"error": f"Internal error: {e}"})

    return app

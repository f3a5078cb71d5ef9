"""The gateway's tool catalog.

Direct command tools (``run_powershell``, ``run_shell``, ``build_dotnet``,
``process_manager``, ``ping_host``) forward caller input to a process and are
gated by authentication alone. Path-gated tools (``run_batch``, ``file_sync``)
additionally run every caller-supplied path through a ``PathSandbox`` inside
``check``, before anything executes.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import os
import re
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any

from starlette.concurrency import run_in_threadpool

from buildgate.core.config import GatewayConfig
from buildgate.core.errors import ToolValidationError, ValidationErrorKind
from buildgate.core.models import ToolResponse
from buildgate.core.registry import Tool, ToolRegistry
from buildgate.sandbox.executor import ExecutionResult, OutputChunk, ProcessExecutor
from buildgate.sandbox.paths import PathSandbox, ValidatedPath
from buildgate.sandbox.sync import SyncError, SyncOptions, sync_paths

logger = logging.getLogger(__name__)

# Commands are cut to this length in log lines
LOG_COMMAND_CHARS = 100

PING_COUNT = 4
PING_TIMEOUT_MS = 30_000

SAFE_PROCESS_NAME = re.compile(r"^(?!-)[A-Za-z0-9_.\-]{1,128}$")
HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")

# Link-local, multicast and "this network" are never pinged
BLOCKED_NETWORKS = (
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("224.0.0.0/4"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("ff00::/8"),
)


def _short(command: str) -> str:
    if len(command) <= LOG_COMMAND_CHARS:
        return command
    return command[:LOG_COMMAND_CHARS] + "..."


def _json_text(payload: dict[str, Any]) -> ToolResponse:
    return ToolResponse.text(json.dumps(payload, indent=2))


def _result_payload(result: ExecutionResult, **extra: Any) -> dict[str, Any]:
    payload = result.model_dump(by_alias=True)
    payload.update(extra)
    return payload


def _reject_option_like(value: str, field: str) -> str:
    """Refuse values that a CLI would parse as a flag."""
    if value.startswith("-"):
        raise ToolValidationError(
            ValidationErrorKind.BAD_TYPE, f"Argument '{field}' must not start with '-'"
        )
    if "\x00" in value:
        raise ToolValidationError(
            ValidationErrorKind.BAD_TYPE, f"Argument '{field}' contains a null byte"
        )
    return value


# ---------------------------------------------------------------------------
# Direct command tools
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandArgs:
    command: str
    timeout_ms: int
    working_directory: str | None
    streaming: bool


class _CommandTool(Tool):
    """Shared plumbing for tools that run a caller-written command string."""

    def __init__(
        self,
        config: GatewayConfig,
        executor: ProcessExecutor,
        workdir_sandbox: PathSandbox,
    ) -> None:
        self.config = config
        self.executor = executor
        self.workdir_sandbox = workdir_sandbox
        self.input_schema = {
            "type": "object",
            "properties": {
                "command": {"type": "string", "minLength": 1},
                "timeout": {
                    "type": "number",
                    "minimum": 1,
                    "description": (
                        f"Timeout in seconds (default: {config.powershell_default_timeout}, "
                        f"max: {config.powershell_max_timeout})"
                    ),
                },
                "workingDirectory": {
                    "type": "string",
                    "description": "Directory to run in; must be inside the allowed build paths",
                },
                "streaming": {
                    "type": "boolean",
                    "description": "Include incremental output chunks in the response",
                },
            },
            "required": ["command"],
        }

    def check(self, arguments: dict[str, Any]) -> CommandArgs:
        timeout_s = arguments.get("timeout") or self.config.powershell_default_timeout
        timeout_s = min(float(timeout_s), self.config.powershell_max_timeout)

        workdir = arguments.get("workingDirectory")
        if workdir:
            workdir = self.workdir_sandbox.validate_directory(workdir)

        return CommandArgs(
            command=arguments["command"],
            timeout_ms=int(timeout_s * 1000),
            working_directory=workdir or None,
            streaming=bool(arguments.get("streaming", False)),
        )

    @abstractmethod
    def command_line(self, command: str) -> list[str]:
        """Argument vector that runs ``command``."""

    async def execute(self, validated: CommandArgs) -> ToolResponse:
        argv = self.command_line(validated.command)
        chunks: list[OutputChunk] = []
        logger.info(f"{self.name}: {_short(validated.command)}")

        result = await self.executor.run(
            argv[0],
            argv[1:],
            cwd=validated.working_directory,
            timeout_ms=validated.timeout_ms,
            on_output=chunks.append if validated.streaming else None,
        )
        logger.info(
            f"{self.name} finished: exit={result.exit_code} duration={result.duration_ms}ms"
            f"{' (timed out)' if result.timed_out else ''}"
        )

        response: dict[str, Any] = {
            "success": result.success,
            "exitCode": result.exit_code,
            "executionTime": result.duration_ms,
            "timedOut": result.timed_out,
            "truncated": result.truncated,
            "processId": result.pid,
            "workingDirectory": validated.working_directory,
            "output": result.stdout,
        }
        if result.stderr.strip():
            response["errors"] = result.stderr
        if validated.streaming:
            response["streamingData"] = [
                {"stream": c.stream, "text": c.text, "elapsedMs": c.elapsed_ms} for c in chunks
            ]
        return _json_text(response)


class RunPowerShellTool(_CommandTool):
    name = "run_powershell"
    description = "Execute a PowerShell command with an optional timeout"

    def command_line(self, command: str) -> list[str]:
        argv = [self.config.resolved_powershell(), "-NoProfile", "-NonInteractive"]
        if os.name == "nt":
            argv += ["-ExecutionPolicy", "Bypass"]
        return argv + ["-Command", command]


class RunShellTool(_CommandTool):
    name = "run_shell"
    description = "Execute a command with the host shell (cmd.exe or /bin/sh)"

    def command_line(self, command: str) -> list[str]:
        return self.config.resolved_shell() + [command]


@dataclass(frozen=True)
class DotnetArgs:
    project_path: str
    configuration: str
    output_directory: str | None


class BuildDotnetTool(Tool):
    name = "build_dotnet"
    description = "Build a .NET project with dotnet build"
    input_schema = {
        "type": "object",
        "properties": {
            "projectPath": {"type": "string", "minLength": 1},
            "configuration": {"type": "string", "enum": ["Debug", "Release"]},
            "outputDirectory": {"type": "string", "minLength": 1},
        },
        "required": ["projectPath"],
    }

    def __init__(self, config: GatewayConfig, executor: ProcessExecutor) -> None:
        self.config = config
        self.executor = executor

    def check(self, arguments: dict[str, Any]) -> DotnetArgs:
        output = arguments.get("outputDirectory")
        return DotnetArgs(
            project_path=_reject_option_like(arguments["projectPath"], "projectPath"),
            configuration=arguments.get("configuration", "Debug"),
            output_directory=_reject_option_like(output, "outputDirectory") if output else None,
        )

    async def execute(self, validated: DotnetArgs) -> ToolResponse:
        args = ["build", validated.project_path, "-c", validated.configuration]
        if validated.output_directory:
            args += ["-o", validated.output_directory]
        logger.info(f"build_dotnet: {validated.project_path} ({validated.configuration})")
        result = await self.executor.run("dotnet", args)
        return _json_text(
            _result_payload(
                result,
                projectPath=validated.project_path,
                configuration=validated.configuration,
                outputDirectory=validated.output_directory,
            )
        )


@dataclass(frozen=True)
class ProcessArgs:
    action: str
    process_name: str | None
    force: bool
    as_service: bool
    wait_time: float


class ProcessManagerTool(Tool):
    name = "process_manager"
    description = "List, start, stop, restart, query or kill processes and services"
    input_schema = {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": ["start", "stop", "restart", "status", "list", "kill"],
            },
            "processName": {
                "type": "string",
                "description": "Process or service name; the numeric PID for kill",
            },
            "options": {
                "type": "object",
                "properties": {
                    "force": {"type": "boolean"},
                    "asService": {"type": "boolean"},
                    "waitTime": {"type": "number", "minimum": 0, "maximum": 300},
                },
            },
        },
        "required": ["action"],
    }

    def __init__(
        self, config: GatewayConfig, executor: ProcessExecutor, windows: bool | None = None
    ) -> None:
        self.config = config
        self.executor = executor
        self.windows = os.name == "nt" if windows is None else windows

    def check(self, arguments: dict[str, Any]) -> ProcessArgs:
        action = arguments["action"]
        options = arguments.get("options") or {}
        name = arguments.get("processName")

        if action != "list":
            if not name:
                raise ToolValidationError(
                    ValidationErrorKind.MISSING_FIELD, "Missing required argument: processName"
                )
            if action == "kill":
                if not name.isdigit():
                    raise ToolValidationError(
                        ValidationErrorKind.BAD_TYPE, "kill requires a numeric process ID"
                    )
            elif not SAFE_PROCESS_NAME.match(name):
                raise ToolValidationError(
                    ValidationErrorKind.BAD_TYPE, f"Invalid process name: {name!r}"
                )

        return ProcessArgs(
            action=action,
            process_name=name,
            force=bool(options.get("force", False)),
            as_service=bool(options.get("asService", False)),
            wait_time=float(options.get("waitTime", 0)),
        )

    def plan(self, args: ProcessArgs) -> list[list[str]]:
        """Command lines to run, in order, for one action."""
        name = args.process_name or ""
        if self.windows:
            image = name if name.lower().endswith(".exe") else f"{name}.exe"
            force = ["/F"] if args.force else []
            if args.as_service:
                return {
                    "start": [["net", "start", name]],
                    "stop": [["net", "stop", name]],
                    "restart": [["net", "stop", name], ["net", "start", name]],
                    "status": [["sc", "query", name]],
                    "list": [["sc", "query", "type=", "service", "state=", "all"]],
                    "kill": [["taskkill", *force, "/PID", name]],
                }[args.action]
            return {
                "start": [["cmd.exe", "/d", "/c", "start", "", name]],
                "stop": [["taskkill", *force, "/IM", image]],
                "status": [["tasklist", "/FI", f"IMAGENAME eq {image}", "/FO", "CSV"]],
                "list": [["tasklist", "/FO", "CSV"]],
                "kill": [["taskkill", *force, "/PID", name]],
            }[args.action]

        signal_flag = ["-9"] if args.force else []
        if args.as_service:
            return {
                "start": [["systemctl", "start", name]],
                "stop": [["systemctl", "stop", name]],
                "restart": [["systemctl", "stop", name], ["systemctl", "start", name]],
                "status": [["systemctl", "status", "--no-pager", name]],
                "list": [["systemctl", "list-units", "--type=service", "--all", "--no-pager"]],
                "kill": [["kill", *signal_flag, name]],
            }[args.action]
        return {
            "start": [["setsid", "-f", name]],
            "stop": [["pkill", *signal_flag, "-x", name]],
            "status": [["pgrep", "-a", "-x", name]],
            "list": [["ps", "-eo", "pid,comm,args"]],
            "kill": [["kill", *signal_flag, name]],
        }[args.action]

    async def execute(self, validated: ProcessArgs) -> ToolResponse:
        if validated.action == "restart" and not validated.as_service:
            return ToolResponse.text("Restart only supported for services")

        steps = self.plan(validated)
        results: list[ExecutionResult] = []
        for i, argv in enumerate(steps):
            if i and validated.wait_time:
                await asyncio.sleep(validated.wait_time)
            result = await self.executor.run(argv[0], argv[1:])
            results.append(result)

        logger.info(
            f"process_manager {validated.action} {validated.process_name or ''}: "
            f"exit={results[-1].exit_code}"
        )
        payload = _result_payload(
            results[-1],
            action=validated.action,
            processName=validated.process_name,
            asService=validated.as_service,
        )
        if len(results) > 1:
            payload["steps"] = [r.model_dump(by_alias=True) for r in results[:-1]]
        return _json_text(payload)


def validate_host(raw: str) -> str:
    """Accept an IP literal or DNS name, refusing blocked address ranges."""
    host = raw.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = None

    if address is not None:
        if any(address in network for network in BLOCKED_NETWORKS if network.version == address.version):
            raise ToolValidationError(
                ValidationErrorKind.BAD_TYPE, f"Access to IP range blocked: {host}"
            )
        return str(address)

    name = host.rstrip(".")
    if not name or len(name) > 253 or not all(HOSTNAME_LABEL.match(p) for p in name.split(".")):
        raise ToolValidationError(ValidationErrorKind.BAD_TYPE, f"Invalid host format: {raw!r}")
    return name


class PingHostTool(Tool):
    name = "ping_host"
    description = "Check connectivity to a host with ping"
    input_schema = {
        "type": "object",
        "properties": {"host": {"type": "string", "minLength": 1}},
        "required": ["host"],
    }

    def __init__(
        self, config: GatewayConfig, executor: ProcessExecutor, windows: bool | None = None
    ) -> None:
        self.config = config
        self.executor = executor
        self.windows = os.name == "nt" if windows is None else windows

    def check(self, arguments: dict[str, Any]) -> str:
        return validate_host(arguments["host"])

    async def execute(self, validated: str) -> ToolResponse:
        if self.windows:
            args = ["-n", str(PING_COUNT), "-w", "2000", validated]
        else:
            args = ["-c", str(PING_COUNT), "-W", "2", validated]
        result = await self.executor.run("ping", args, timeout_ms=PING_TIMEOUT_MS)
        return _json_text(_result_payload(result, host=validated, alive=result.success))


# ---------------------------------------------------------------------------
# Path-gated tools
# ---------------------------------------------------------------------------


class RunBatchTool(Tool):
    name = "run_batch"
    description = "Execute a batch file from one of the allowed batch directories"

    def __init__(
        self,
        config: GatewayConfig,
        executor: ProcessExecutor,
        sandbox: PathSandbox,
        windows: bool | None = None,
    ) -> None:
        self.config = config
        self.executor = executor
        self.sandbox = sandbox
        self.windows = os.name == "nt" if windows is None else windows
        exts = " or ".join(config.allowed_batch_extensions)
        self.input_schema = {
            "type": "object",
            "properties": {
                "batchFile": {
                    "type": "string",
                    "description": f"Path to a {exts} file inside ALLOWED_BATCH_DIRS",
                },
                "workingDirectory": {
                    "type": "string",
                    "description": "Working directory; defaults to the batch file's directory",
                },
            },
            "required": ["batchFile"],
        }

    def check(self, arguments: dict[str, Any]) -> ValidatedPath:
        try:
            return self.sandbox.validate(
                arguments["batchFile"], arguments.get("workingDirectory")
            )
        except ToolValidationError:
            logger.warning(f"run_batch rejected {arguments['batchFile']!r}")
            raise

    async def execute(self, validated: ValidatedPath) -> ToolResponse:
        if self.windows:
            command, args = "cmd.exe", ["/d", "/c", validated.path]
        else:
            command, args = "/bin/sh", [validated.path]
        logger.info(f"run_batch: {validated.path} in {validated.working_directory}")
        result = await self.executor.run(command, args, cwd=validated.working_directory)
        return _json_text(
            _result_payload(
                result,
                batchFile=validated.path,
                workingDirectory=validated.working_directory,
            )
        )


@dataclass(frozen=True)
class SyncArgs:
    source: str
    destination: str
    options: SyncOptions


class FileSyncTool(Tool):
    name = "file_sync"
    description = "Copy a file or directory between locations inside the allowed build paths"
    input_schema = {
        "type": "object",
        "properties": {
            "source": {"type": "string", "description": "Source file or directory"},
            "destination": {"type": "string", "description": "Destination path"},
            "options": {
                "type": "object",
                "properties": {
                    "recursive": {"type": "boolean"},
                    "overwrite": {"type": "boolean"},
                    "pattern": {"type": "string"},
                    "excludePattern": {"type": "string"},
                    "verify": {"type": "boolean"},
                },
            },
        },
        "required": ["source", "destination"],
    }

    def __init__(self, sandbox: PathSandbox) -> None:
        self.sandbox = sandbox

    def check(self, arguments: dict[str, Any]) -> SyncArgs:
        options = arguments.get("options") or {}
        return SyncArgs(
            source=self.sandbox.validate_any(arguments["source"], "Source"),
            destination=self.sandbox.validate_any(arguments["destination"], "Destination"),
            options=SyncOptions(
                recursive=bool(options.get("recursive", False)),
                overwrite=bool(options.get("overwrite", False)),
                pattern=options.get("pattern") or None,
                exclude_pattern=options.get("excludePattern") or None,
                verify=bool(options.get("verify", False)),
            ),
        )

    async def execute(self, validated: SyncArgs) -> ToolResponse:
        try:
            report = await run_in_threadpool(
                sync_paths, validated.source, validated.destination, validated.options
            )
        except SyncError as e:
            return ToolResponse.text(f"File sync failed: {e}", is_error=True)

        logger.info(
            f"file_sync {validated.source} -> {validated.destination}: "
            f"{len(report.copied)} copied, {len(report.failures)} failed"
        )
        if report.ok:
            return ToolResponse.text(f"File sync completed successfully:\n{report.summary()}")
        return ToolResponse.text(f"File sync finished with errors:\n{report.summary()}", is_error=True)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def batch_sandbox(config: GatewayConfig) -> PathSandbox:
    return PathSandbox(
        config.allowed_batch_dirs,
        config.allowed_batch_extensions,
        windows=config.windows_paths,
        label="Batch file",
    )


def build_sandbox(config: GatewayConfig) -> PathSandbox:
    return PathSandbox(config.allowed_build_paths, windows=config.windows_paths, label="Build path")


def build_registry(
    config: GatewayConfig,
    executor: ProcessExecutor | None = None,
    windows: bool | None = None,
) -> ToolRegistry:
    """Register the full tool catalog against one configuration."""
    executor = executor or ProcessExecutor(
        default_timeout_ms=config.command_timeout_ms,
        max_output_bytes=config.max_output_bytes,
    )
    build_paths = build_sandbox(config)
    return ToolRegistry(
        [
            RunPowerShellTool(config, executor, build_paths),
            RunShellTool(config, executor, build_paths),
            BuildDotnetTool(config, executor),
            RunBatchTool(config, executor, batch_sandbox(config), windows=windows),
            ProcessManagerTool(config, executor, windows=windows),
            FileSyncTool(build_paths),
            PingHostTool(config, executor, windows=windows),
        ]
    )

"""Gateway configuration loading and validation.

Configuration is read exactly once at startup into an immutable
``GatewayConfig`` which is then handed to every component that needs it.
Sources, lowest to highest precedence: dataclass defaults, a YAML file,
environment variables.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from buildgate.core.errors import ConfigError

logger = logging.getLogger(__name__)

PLACEHOLDER_TOKEN = "change-this-to-a-secure-random-token"
MIN_TOKEN_LENGTH = 16

PATH_STYLES = ("auto", "windows", "posix")

# (minimum, maximum) for every numeric setting
NUMERIC_LIMITS: dict[str, tuple[int, int]] = {
    "port": (1, 65535),
    "command_timeout_ms": (1000, 3_600_000),
    "powershell_default_timeout": (1, 3600),
    "powershell_max_timeout": (1, 7200),
    "max_output_bytes": (1024, 1024 * 1024 * 1024),
    "rate_limit_requests": (0, 1000),
    "rate_limit_window_ms": (1000, 600_000),
}


def split_paths(value: str, separators: str = ";") -> tuple[str, ...]:
    """Split a delimited directory list, dropping blanks."""
    items = [value]
    for sep in separators:
        items = [part for item in items for part in item.split(sep)]
    return tuple(item.strip() for item in items if item.strip())


def _normalize_extensions(values: tuple[str, ...]) -> tuple[str, ...]:
    normalized = []
    for ext in values:
        ext = ext.strip().lower()
        if not ext:
            continue
        normalized.append(ext if ext.startswith(".") else f".{ext}")
    return tuple(normalized)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    """Immutable gateway settings."""

    # Authentication
    auth_token: str = ""

    # Listener
    host: str = "0.0.0.0"
    port: int = 8080
    trust_proxy: bool = False
    # Exact addresses or CIDR ranges. Empty admits every address.
    allowed_ips: tuple[str, ...] = ()

    # Path sandbox. Empty allow-lists reject every path-gated call.
    allowed_batch_dirs: tuple[str, ...] = ()
    allowed_build_paths: tuple[str, ...] = ()
    allowed_batch_extensions: tuple[str, ...] = (".bat", ".cmd")
    path_style: str = "auto"

    # Process execution
    command_timeout_ms: int = 1_800_000  # 30 minutes
    powershell_default_timeout: int = 300  # seconds
    powershell_max_timeout: int = 1800  # seconds
    max_output_bytes: int = 10 * 1024 * 1024
    powershell_executable: str | None = None
    shell_executable: str | None = None

    # Rate limiting (0 requests disables)
    rate_limit_requests: int = 60
    rate_limit_window_ms: int = 60_000

    log_level: str = "INFO"

    # File the settings were read from, if any
    source: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        for name, (low, high) in NUMERIC_LIMITS.items():
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
            if not low <= value <= high:
                raise ConfigError(f"{name} must be a number between {low} and {high}")
        if self.path_style not in PATH_STYLES:
            raise ConfigError(
                f"path_style must be one of {', '.join(PATH_STYLES)}, got {self.path_style!r}"
            )
        if self.powershell_default_timeout > self.powershell_max_timeout:
            raise ConfigError("powershell_default_timeout cannot exceed powershell_max_timeout")
        for ext in self.allowed_batch_extensions:
            if not ext.startswith("."):
                raise ConfigError(f"Extension must start with '.': {ext!r}")
        if not isinstance(self.log_level, str) or self.log_level not in logging.getLevelNamesMapping():
            raise ConfigError(f"log_level must be a logging level name, got {self.log_level!r}")
        self.allowed_networks()

    def allowed_networks(self) -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
        """Parsed ``allowed_ips``; a bare address becomes a single-host network."""
        networks = []
        for entry in self.allowed_ips:
            try:
                networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError as e:
                raise ConfigError(f"Invalid entry in allowed_ips: {entry!r}") from e
        return tuple(networks)

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth_token) and self.auth_token != PLACEHOLDER_TOKEN

    @property
    def windows_paths(self) -> bool:
        """True when caller paths are interpreted with Windows semantics."""
        if self.path_style == "auto":
            return os.name == "nt"
        return self.path_style == "windows"

    @property
    def rate_limit_enabled(self) -> bool:
        return self.rate_limit_requests > 0

    def resolved_powershell(self) -> str:
        if self.powershell_executable:
            return self.powershell_executable
        return "powershell.exe" if os.name == "nt" else "pwsh"

    def resolved_shell(self) -> list[str]:
        """Shell invocation prefix for raw command strings."""
        if self.shell_executable:
            return [self.shell_executable, "-c"]
        if os.name == "nt":
            return ["cmd.exe", "/d", "/s", "/c"]
        return ["/bin/sh", "-c"]

    def masked_token(self) -> str:
        if not self.auth_token:
            return "(not set)"
        return f"{self.auth_token[:4]}...({len(self.auth_token)} chars)"

    def warnings(self) -> list[str]:
        """Configuration issues worth telling the operator about."""
        issues: list[str] = []
        if not self.auth_enabled:
            issues.append("MCP_AUTH_TOKEN is not set; every authenticated request will be rejected")
        elif len(self.auth_token) < MIN_TOKEN_LENGTH:
            issues.append(
                f"Authentication token is too short (minimum {MIN_TOKEN_LENGTH} characters recommended)"
            )
        if not self.allowed_batch_dirs:
            issues.append("ALLOWED_BATCH_DIRS is empty; run_batch will reject every script")
        if not self.allowed_build_paths:
            issues.append("ALLOWED_BUILD_PATHS is empty; file_sync will reject every path")
        if not self.rate_limit_enabled:
            issues.append("Rate limiting is disabled (RATE_LIMIT_REQUESTS=0)")
        return issues


def _int(value: str) -> int:
    return int(value.strip())


# Environment variable -> (field name, parser)
ENV_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "MCP_AUTH_TOKEN": ("auth_token", str.strip),
    "MCP_SERVER_HOST": ("host", str.strip),
    "MCP_SERVER_PORT": ("port", _int),
    "TRUST_PROXY": ("trust_proxy", _parse_bool),
    "ALLOWED_IPS": ("allowed_ips", lambda v: split_paths(v, ",;")),
    "ALLOWED_BATCH_DIRS": ("allowed_batch_dirs", lambda v: split_paths(v, ";")),
    "ALLOWED_BUILD_PATHS": ("allowed_build_paths", lambda v: split_paths(v, ";,")),
    "ALLOWED_BATCH_EXTENSIONS": (
        "allowed_batch_extensions",
        lambda v: _normalize_extensions(split_paths(v, ";,")),
    ),
    "BUILDGATE_PATH_STYLE": ("path_style", lambda v: v.strip().lower()),
    "COMMAND_TIMEOUT": ("command_timeout_ms", _int),
    "POWERSHELL_DEFAULT_TIMEOUT": ("powershell_default_timeout", _int),
    "POWERSHELL_MAX_TIMEOUT": ("powershell_max_timeout", _int),
    "MAX_OUTPUT_BYTES": ("max_output_bytes", _int),
    "POWERSHELL_EXECUTABLE": ("powershell_executable", str.strip),
    "SHELL_EXECUTABLE": ("shell_executable", str.strip),
    "RATE_LIMIT_REQUESTS": ("rate_limit_requests", _int),
    "RATE_LIMIT_WINDOW": ("rate_limit_window_ms", _int),
    "BUILDGATE_LOG_LEVEL": ("log_level", lambda v: v.strip().upper()),
}

TUPLE_FIELDS = frozenset(
    {"allowed_ips", "allowed_batch_dirs", "allowed_build_paths", "allowed_batch_extensions"}
)


def default_search_paths() -> list[Path]:
    return [
        Path.cwd() / "buildgate.yaml",
        Path.home() / ".buildgate" / "config.yaml",
    ]


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _coerce_yaml(data: dict[str, Any], source: Path) -> dict[str, Any]:
    known = {f.name for f in fields(GatewayConfig)} - {"source"}
    values: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigError(f"Unknown setting '{key}' in {source}")
        if key in TUPLE_FIELDS:
            if isinstance(value, str):
                value = split_paths(value, ";," if key == "allowed_ips" else ";")
            elif isinstance(value, list):
                value = tuple(str(item) for item in value)
            else:
                raise ConfigError(f"'{key}' in {source} must be a list or a ';'-delimited string")
            if key == "allowed_batch_extensions":
                value = _normalize_extensions(value)
        elif key == "log_level" and isinstance(value, str):
            value = value.strip().upper()
        values[key] = value
    return values


def _coerce_env(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for var, (name, parser) in ENV_FIELDS.items():
        raw = environ.get(var)
        if raw is None or raw.strip() == "":
            continue
        try:
            values[name] = parser(raw)
        except ValueError as e:
            raise ConfigError(f"{var} has an invalid value: {raw!r}") from e
    return values


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> GatewayConfig:
    """Build the gateway configuration.

    Args:
        config_path: Explicit YAML file. When omitted the default search paths
            are tried and the first existing file wins.
        environ: Environment mapping (defaults to ``os.environ``).

    Raises:
        ConfigError: On unreadable files, unknown keys or out-of-range values.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    source: str | None = None

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        values.update(_coerce_yaml(_read_yaml(config_path), config_path))
        source = str(config_path)
    else:
        for candidate in default_search_paths():
            if candidate.exists():
                values.update(_coerce_yaml(_read_yaml(candidate), candidate))
                source = str(candidate)
                break

    values.update(_coerce_env(environ))

    config = GatewayConfig(**values, source=source)
    logger.debug(f"Configuration loaded: {len(values)} explicit settings")
    return config

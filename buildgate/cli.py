"""CLI entry point for the buildgate gateway.

Commands:
- buildgate serve: Run the HTTP gateway
- buildgate tools: List the tool catalog
- buildgate check-path: Test a path against the sandbox offline
- buildgate config: Show the effective configuration
- buildgate token: Generate a bearer token
"""

from __future__ import annotations

import logging
import secrets
import sys
from dataclasses import fields
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from buildgate import __version__
from buildgate.core.config import GatewayConfig, load_config
from buildgate.core.errors import ConfigError, ToolValidationError
from buildgate.core.tools import batch_sandbox, build_registry, build_sandbox

console = Console()

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    help="YAML config file (default: ./buildgate.yaml, then ~/.buildgate/config.yaml)",
)


def _load(config_path: Path | None) -> GatewayConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(e.message)}")
        sys.exit(1)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """buildgate - authenticated remote build and command gateway.

    Exposes a fixed menu of host operations (shell, batch scripts, process
    control, file sync) over one bearer-token protected HTTP endpoint.
    """
    pass


@main.command()
@config_option
@click.option("--host", help="Bind address (overrides MCP_SERVER_HOST)")
@click.option("--port", type=int, help="Listen port (overrides MCP_SERVER_PORT)")
def serve(config_path: Path | None, host: str | None, port: int | None) -> None:
    """Run the gateway."""
    import uvicorn

    from buildgate.server.app import create_app

    config = _load(config_path)
    setup_logging(config.log_level)

    if not config.auth_enabled:
        console.print(
            "[red]Error:[/red] MCP_AUTH_TOKEN is not set. "
            "Generate one with 'buildgate token' and export it before starting."
        )
        sys.exit(1)

    bind_host = host or config.host
    bind_port = port or config.port

    lines = [
        f"[bold]Endpoint:[/bold] http://{bind_host}:{bind_port}/mcp",
        f"[bold]Health:[/bold]   http://{bind_host}:{bind_port}/health",
        f"[bold]Token:[/bold]    {config.masked_token()}",
    ]
    if config.source:
        lines.append(f"[dim]Config: {escape(config.source)}[/dim]")
    for warning in config.warnings():
        lines.append(f"[yellow]Warning:[/yellow] {escape(warning)}")
    console.print(Panel("\n".join(lines), title=f"buildgate v{__version__}"))

    uvicorn.run(
        create_app(config),
        host=bind_host,
        port=bind_port,
        log_config=None,
        log_level=config.log_level.lower(),
    )


@main.command()
@config_option
def tools(config_path: Path | None) -> None:
    """List the tools the gateway exposes."""
    config = _load(config_path)
    registry = build_registry(config)

    table = Table(title="Available Tools")
    table.add_column("Tool", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Required", style="green")
    for definition in registry.list():
        required = ", ".join(definition.input_schema.get("required", []))
        table.add_row(definition.name, definition.description, required)
    console.print(table)


@main.command("check-path")
@click.argument("path")
@click.option(
    "--kind",
    type=click.Choice(["batch", "build"]),
    default="batch",
    show_default=True,
    help="Which allow-list to check against",
)
@config_option
def check_path(path: str, kind: str, config_path: Path | None) -> None:
    """Check PATH against the sandbox without running anything."""
    config = _load(config_path)
    try:
        if kind == "batch":
            validated = batch_sandbox(config).validate(path)
            console.print(f"[green]Allowed:[/green] {escape(validated.path)}")
            console.print(f"[dim]Working directory: {escape(validated.working_directory)}[/dim]")
        else:
            resolved = build_sandbox(config).validate_any(path, "Build path")
            console.print(f"[green]Allowed:[/green] {escape(resolved)}")
    except ToolValidationError as e:
        console.print(f"[red]Rejected ({e.kind.value}):[/red] {escape(e.message)}")
        sys.exit(1)


@main.command("config")
@config_option
def show_config(config_path: Path | None) -> None:
    """Show the effective configuration."""
    config = _load(config_path)

    table = Table(title="Effective Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    for f in fields(GatewayConfig):
        if f.name == "source":
            continue
        value = getattr(config, f.name)
        if f.name == "auth_token":
            value = config.masked_token()
        elif isinstance(value, tuple):
            value = "; ".join(value) or "(empty)"
        table.add_row(f.name, escape(str(value)))
    console.print(table)
    console.print(f"[dim]Source: {escape(config.source or 'defaults and environment')}[/dim]")

    for warning in config.warnings():
        console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


@main.command()
def token() -> None:
    """Print a new random bearer token."""
    click.echo(secrets.token_urlsafe(32))


if __name__ == "__main__":
    main()

"""Command-line entry point: serve the MCP server, run a single tool, inspect settings."""

from __future__ import annotations

import json
from typing import Optional

import typer
from fastmcp.exceptions import ToolError
from rich.console import Console
from rich.table import Table

from .config import get_settings

app = typer.Typer(no_args_is_help=True, add_completion=False, help="MCP Agent Comms server")
console = Console()


@app.command()
def serve(
    transport: str = typer.Option("stdio", "--transport", "-t", help="stdio or http"),
    host: Optional[str] = typer.Option(None, help="HTTP bind host (defaults to HTTP_HOST)."),
    port: Optional[int] = typer.Option(None, help="HTTP port (defaults to HTTP_PORT)."),
) -> None:
    """Run the MCP server."""
    from .app import build_mcp_server

    settings = get_settings()
    mcp = build_mcp_server(settings)
    if transport == "stdio":
        mcp.run()
        return
    if transport != "http":
        raise typer.BadParameter("transport must be 'stdio' or 'http'", param_hint="--transport")
    mcp.run(
        transport="http",
        host=host or settings.http.host,
        port=port or settings.http.port,
        path=settings.http.path,
    )


@app.command()
def tool(
    name: str = typer.Argument(..., help="Tool name, e.g. communicate"),
    args: str = typer.Option("{}", "--args", "-a", help="Tool arguments as a JSON object."),
) -> None:
    """Invoke one MCP tool in-process and print its JSON result."""
    from .tool_runner import run_mcp_tool_json

    try:
        result = run_mcp_tool_json(name, args)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    except ToolError as exc:
        console.print(f"[red]Tool '{name}' failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print_json(json.dumps(result, default=str))


@app.command()
def config() -> None:
    """Show the effective settings."""
    settings = get_settings()
    table = Table(title="Active Settings")
    table.add_column("Key", style="cyan", justify="right")
    table.add_column("Value")
    table.add_row("Environment", settings.environment)
    table.add_row("HTTP Endpoint", f"http://{settings.http.host}:{settings.http.port}{settings.http.path}")
    table.add_row("Database URL", settings.database.url)
    table.add_row("Max batch size", str(settings.messaging.max_batch_size))
    table.add_row("Default security level", settings.messaging.default_security_level)
    table.add_row("Session minutes", f"{settings.sessions.default_minutes} (max {settings.sessions.max_minutes})")
    table.add_row(
        "Session sweep",
        f"every {settings.sessions.sweep_interval_seconds}s" if settings.sessions.sweep_enabled else "disabled",
    )
    table.add_row("Codec secret", "set" if settings.codec_secret else "per-process random")
    table.add_row("Tool call logging", str(settings.tools_log_enabled))
    console.print(table)

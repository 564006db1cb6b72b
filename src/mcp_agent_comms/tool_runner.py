"""Run MCP tools directly from the CLI without a separate server process.

The server is built in-process and driven through an in-memory FastMCP client,
so tools run with a real request context and the server lifespan.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastmcp import Client
from rich.console import Console

console = Console()

# Cache for the MCP server instance
_mcp_server: Any = None


def _get_mcp_server() -> Any:
    """Get or create the MCP server instance."""
    global _mcp_server
    if _mcp_server is None:
        from .app import build_mcp_server

        _mcp_server = build_mcp_server()
    return _mcp_server


async def _run_tool_async(tool_name: str, arguments: dict[str, Any]) -> Any:
    """Invoke ``tool_name`` with ``arguments`` and return its structured result.

    Raises:
        ValueError: If the tool is not registered.
        fastmcp.exceptions.ToolError: If the tool itself fails.
    """
    mcp = _get_mcp_server()
    async with Client(mcp) as client:
        available = sorted(tool.name for tool in await client.list_tools())
        if tool_name not in available:
            raise ValueError(f"Tool '{tool_name}' not found. Available tools: {', '.join(available)}")
        result = await client.call_tool(tool_name, arguments)
    if result.structured_content is not None:
        return result.structured_content
    return result.data


def run_mcp_tool(tool_name: str, arguments: dict[str, Any]) -> Any:
    """Run an MCP tool synchronously; the entry point for CLI commands."""
    return asyncio.run(_run_tool_async(tool_name, arguments))


def run_mcp_tool_json(tool_name: str, json_args: str) -> Any:
    """Run an MCP tool with JSON-encoded arguments.

    Args:
        tool_name: Name of the MCP tool to invoke
        json_args: JSON string of arguments

    Returns:
        The tool's return value
    """
    try:
        arguments = json.loads(json_args) if json_args else {}
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON arguments: {e}") from e

    if not isinstance(arguments, dict):
        raise ValueError("Arguments must be a JSON object (dict)")

    return run_mcp_tool(tool_name, arguments)

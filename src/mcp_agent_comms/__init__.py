"""Top-level package for the MCP Agent Comms server."""

from __future__ import annotations

from typing import Any, cast


def __getattr__(name: str) -> Any:
    """Lazy import heavy modules to speed up CLI startup time."""
    if name == "build_mcp_server":
        import importlib

        _app_module = cast(Any, importlib.import_module(".app", __name__))
        return _app_module.build_mcp_server
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["build_mcp_server"]

"""Console logging: structlog/stdlib setup and rich panels for tool calls."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings

_LOGGING_CONFIGURED = False
_MAX_VALUE_CHARS = 200

console = Console(stderr=True)


def configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting once per process."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "agent_id", "tool"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    if settings.log_rich_enabled:
        from rich.logging import RichHandler

        logging.basicConfig(level=level, format="%(message)s", handlers=[RichHandler(console=console, show_path=False)])
    else:
        logging.basicConfig(level=level)
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    logging.getLogger("mcp.server.lowlevel.server").setLevel(logging.WARNING)
    _LOGGING_CONFIGURED = True


@dataclass(slots=True)
class ToolCallContext:
    tool_name: str
    kwargs: dict[str, Any]
    agent: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[BaseException] = None
    success: bool = True

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000


def _short(value: Any) -> str:
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            text = repr(value)
    if len(text) > _MAX_VALUE_CHARS:
        return text[: _MAX_VALUE_CHARS - 3] + "..."
    return text


def render_tool_call_panel(ctx: ToolCallContext, *, finished: bool) -> Panel:
    table = Table.grid(padding=(0, 1))
    table.add_column(style="bold cyan", no_wrap=True)
    table.add_column()
    if ctx.agent:
        table.add_row("agent", ctx.agent)
    for key, value in ctx.kwargs.items():
        if key == "session_token" and value:
            value = "***"
        table.add_row(key, _short(value))
    if finished:
        table.add_row("duration", f"{ctx.duration_ms:.1f} ms")
        if ctx.error is not None:
            table.add_row("error", _short(str(ctx.error)))
        else:
            result = ctx.result
            if isinstance(result, dict) and result.get("session_token"):
                result = {**result, "session_token": "***"}
            table.add_row("result", _short(result))
    if not finished:
        title, style = f"-> {ctx.tool_name}", "blue"
    elif ctx.success:
        title, style = f"<- {ctx.tool_name} ok", "green"
    else:
        title, style = f"<- {ctx.tool_name} failed", "red"
    return Panel(table, title=title, border_style=style, expand=False)


def log_tool_call_start(ctx: ToolCallContext) -> None:
    console.print(render_tool_call_panel(ctx, finished=False))


def log_tool_call_end(ctx: ToolCallContext) -> None:
    console.print(render_tool_call_panel(ctx, finished=True))
    structlog.get_logger("tool.calls").info(
        "tool_call",
        tool=ctx.tool_name,
        agent_id=ctx.agent,
        success=ctx.success,
        duration_ms=round(ctx.duration_ms, 2),
    )

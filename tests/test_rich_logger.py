from __future__ import annotations

from rich.console import Console

from mcp_agent_comms.rich_logger import ToolCallContext, render_tool_call_panel


def _render(panel) -> str:
    console = Console(width=200, record=True)
    console.print(panel)
    return console.export_text()


def test_tokens_are_masked_in_arguments_and_results():
    ctx = ToolCallContext(
        tool_name="login",
        kwargs={"agent_id": "alice", "session_token": "tok-123"},
        agent="alice",
        start_time=0.0,
        end_time=0.25,
        result={"agent_id": "alice", "session_token": "tok-456"},
    )
    text = _render(render_tool_call_panel(ctx, finished=True))
    assert "tok-123" not in text
    assert "tok-456" not in text
    assert "login ok" in text
    assert "250.0 ms" in text


def test_failed_call_panel_shows_error():
    ctx = ToolCallContext(
        tool_name="communicate",
        kwargs={"action": "send"},
        start_time=0.0,
        end_time=0.001,
        error=ValueError("bad title"),
        success=False,
    )
    text = _render(render_tool_call_panel(ctx, finished=True))
    assert "communicate failed" in text
    assert "bad title" in text

"""Tool-level tests through an in-memory FastMCP client."""

from __future__ import annotations

import json

import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError

from mcp_agent_comms.app import TOOL_METRICS, _identity_claims, _wrap_exception, build_mcp_server
from mcp_agent_comms.errors import BatchTooLarge


@pytest.fixture
def server(settings, coordinator):
    return build_mcp_server(settings, coordinator)


async def _call(client, name, **arguments):
    result = await client.call_tool(name, arguments)
    return result.structured_content


async def test_tools_are_registered(server):
    async with Client(server) as client:
        names = {tool.name for tool in await client.list_tools()}
    assert {
        "health_check",
        "login",
        "logout",
        "update_agent_status",
        "communicate",
        "manage_messages",
        "agent_sync_status",
        "list_threads",
        "get_thread_messages",
        "archive_thread",
        "close_thread",
        "thread_stats",
    } <= names


async def test_health_check(server, settings):
    async with Client(server) as client:
        payload = await _call(client, "health_check")
    assert payload["status"] == "ok"
    assert payload["database_url"] == settings.database.url
    assert payload["threads"]["total_threads"] == 0


async def test_conversation_round_trip(server):
    async with Client(server) as client:
        grant = await _call(client, "login", agent_id="bob", role="reviewer", capabilities=["review"])
        assert grant["identity"]["drift_detected"] is False

        sent = await _call(
            client,
            "communicate",
            action="send",
            from_agent="alice",
            to_agent="bob",
            title="Status Update",
            content="build is green",
            priority="urgent",
        )
        inbox = await _call(
            client, "communicate", action="receive", agent_id="bob", session_token=grant["session_token"]
        )
        assert inbox["messages"][0]["content"] == "build is green"

        reply = await _call(client, "communicate", action="reply", message_id=sent["message_id"], content="thanks")
        assert reply["thread_id"] == sent["thread_id"]

        threads = await _call(client, "list_threads", agent_id="alice")
        assert threads["threads"][0]["priority"] == "high"
        assert threads["threads"][0]["message_count"] == 2

        page = await _call(client, "get_thread_messages", thread_id=sent["thread_id"], limit=1)
        assert [m["message_id"] for m in page["messages"]] == [sent["message_id"]]


async def test_oversized_batch_is_a_tool_error(server):
    async with Client(server) as client:
        with pytest.raises(ToolError, match="Cannot process more than 1000 messages"):
            await client.call_tool(
                "manage_messages",
                {"action": "mark_read", "message_ids": [f"m{i}" for i in range(1001)]},
            )


async def test_bad_action_is_a_tool_error(server):
    async with Client(server) as client:
        with pytest.raises(ToolError, match="Invalid communicate request"):
            await client.call_tool("communicate", {"action": "shout"})


async def test_unknown_thread_is_a_tool_error(server):
    async with Client(server) as client:
        with pytest.raises(ToolError, match="not found"):
            await client.call_tool("get_thread_messages", {"thread_id": "thread-missing"})


async def test_metrics_resource_counts_calls_and_errors(server):
    before = dict(TOOL_METRICS["thread_stats"])
    errors_before = TOOL_METRICS["archive_thread"]["errors"]
    async with Client(server) as client:
        await client.call_tool("thread_stats", {})
        archived = await _call(client, "archive_thread", thread_id="thread-missing")
        assert archived == {"thread_id": "thread-missing", "archived": False}
        contents = await client.read_resource("resource://tooling/metrics")
    payload = json.loads(contents[0].text)
    by_name = {entry["name"]: entry for entry in payload["tools"]}
    assert by_name["thread_stats"]["calls"] == before["calls"] + 1
    assert by_name["thread_stats"]["cluster"] == "threads"
    assert by_name["archive_thread"]["errors"] == errors_before


def test_wrap_exception_keeps_error_type():
    wrapped = _wrap_exception("manage_messages", BatchTooLarge(1001, 1000))
    assert wrapped.error_type == "BATCH_TOO_LARGE"
    assert wrapped.to_payload()["error"]["data"]["limit"] == 1000
    assert _wrap_exception("x", KeyError("k")).error_type == "INVALID_ARGUMENT"
    assert _wrap_exception("x", RuntimeError("boom")).recoverable is False


def test_identity_claims_merge():
    assert _identity_claims(None, None, None) is None
    assert _identity_claims("planner", ["b", "a"], None, {"team": "x"}) == {
        "team": "x",
        "role": "planner",
        "capabilities": ["b", "a"],
    }

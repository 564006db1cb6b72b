"""End-to-end flows through the coordinator: send, receive, reply, sessions and threads."""

from __future__ import annotations

import pytest

from mcp_agent_comms.actions import parse_communicate, parse_manage
from mcp_agent_comms.codec import EnvelopeCodec, is_envelope
from mcp_agent_comms.coordinator import CommsCoordinator
from mcp_agent_comms.errors import InvalidSession, MessageNotFound, PersistenceError, ValidationError
from mcp_agent_comms.storage import SqlMessageStore


async def _send(coordinator, clock, *, sender="alice", recipient="bob", title="Status Update", **extra):
    clock.advance(seconds=1)
    return await coordinator.communicate(
        parse_communicate(
            {"action": "send", "from_agent": sender, "to_agent": recipient, "title": title, "content": "hi", **extra}
        )
    )


async def _receive(coordinator, agent_id="bob", **extra):
    return await coordinator.communicate(parse_communicate({"action": "receive", "agent_id": agent_id, **extra}))


async def test_send_then_receive(coordinator, clock):
    coordinator.login("bob")
    sent = await _send(coordinator, clock)
    assert sent["state"] == "sent"
    assert sent["security_level"] == "basic"
    assert sent["encrypted"] is True
    assert sent["thread_id"].startswith("thread-")
    assert sent["validation"]["interaction"]["ghost"] is False

    stored = await coordinator.store.get(sent["message_id"])
    assert is_envelope(stored.content)

    inbox = await _receive(coordinator)
    assert inbox["count"] == 1
    assert inbox["has_more"] is False
    message = inbox["messages"][0]
    assert message["content"] == "hi"
    assert message["state"] == "arrived"
    assert "decode_error" not in message
    assert sent["thread_id"] in coordinator.presence.get_status("bob").active_threads


async def test_send_to_self_is_rejected(coordinator, clock):
    with pytest.raises(ValidationError, match="Self-interaction"):
        await _send(coordinator, clock, recipient="alice")
    assert coordinator.thread_stats()["total_threads"] == 0


async def test_send_to_unknown_agent_is_flagged_as_ghost(coordinator, clock):
    sent = await _send(coordinator, clock, recipient="nobody")
    assert sent["validation"]["interaction"]["ghost"] is True
    assert coordinator.presence.get_agent_metrics("alice")["ghost_interaction_count"] == 1


class _UnwritableStore(SqlMessageStore):
    async def create(self, record):
        raise PersistenceError("disk full")


async def test_failed_write_does_not_count_ghost_interaction(settings, clock):
    coordinator = CommsCoordinator(settings, store=_UnwritableStore(), clock=clock)
    coordinator.login("alice")
    with pytest.raises(PersistenceError):
        await _send(coordinator, clock, recipient="nobody")
    assert coordinator.presence.get_agent_metrics("alice")["ghost_interaction_count"] == 0
    assert coordinator.presence.get_status("alice").message_count == 0


async def test_send_enforces_length_limits(coordinator, clock):
    with pytest.raises(ValidationError, match="title"):
        await _send(coordinator, clock, title="x" * 501)


async def test_plain_level_is_stored_verbatim(coordinator, clock):
    sent = await _send(coordinator, clock, security_level="none")
    assert (await coordinator.store.get(sent["message_id"])).content == "hi"
    assert sent["encrypted"] is False


async def test_receive_paginates_newest_first(coordinator, clock):
    for title in ("one", "two", "three"):
        await _send(coordinator, clock, title=title)
    page = await _receive(coordinator, limit=2)
    assert page["has_more"] is True
    assert [m["subject"] for m in page["messages"]] == ["three", "two"]


async def test_receive_filters_by_state(coordinator, clock):
    first = await _send(coordinator, clock, title="one")
    await _send(coordinator, clock, title="two")
    await _receive(coordinator)
    await coordinator.mark_read(first["message_id"])
    inbox = await _receive(coordinator, states=["read"])
    assert [m["id"] for m in inbox["messages"]] == [first["message_id"]]


@pytest.mark.parametrize("limit", [0, 501])
async def test_receive_limit_bounds(coordinator, limit):
    with pytest.raises(ValidationError):
        await _receive(coordinator, limit=limit)


async def test_receive_reports_unreadable_envelopes(coordinator, settings, clock):
    await _send(coordinator, clock, security_level="encrypted")
    stranger = CommsCoordinator(settings, codec=EnvelopeCodec("another-secret"), clock=clock)
    inbox = await _receive(stranger)
    message = inbox["messages"][0]
    assert message["content"] is None
    assert message["decode_error"]
    assert stranger.presence.get_status("bob").error_count == 1


async def test_reply_goes_back_to_sender_in_same_thread(coordinator, clock):
    sent = await _send(coordinator, clock)
    clock.advance(seconds=4)
    reply = await coordinator.communicate(
        parse_communicate({"action": "reply", "message_id": sent["message_id"], "content": "on it"})
    )
    assert reply["from_agent"] == "bob"
    assert reply["to_agent"] == "alice"
    assert reply["subject"] == "Re: Status Update"
    assert reply["thread_id"] == sent["thread_id"]
    assert reply["reply_to"] == sent["message_id"]
    assert reply["parent_state"] == "replied"
    assert coordinator.presence.get_status("bob").response_time_ms == pytest.approx(4000.0)

    alice_inbox = await _receive(coordinator, "alice")
    assert alice_inbox["messages"][0]["content"] == "on it"
    thread = coordinator.get_thread_messages(sent["thread_id"])
    assert [m["state"] for m in thread["messages"]] == ["replied", "arrived"]


async def test_reply_by_outsider_is_rejected(coordinator, clock):
    sent = await _send(coordinator, clock)
    with pytest.raises(ValidationError):
        await coordinator.communicate(
            parse_communicate(
                {"action": "reply", "message_id": sent["message_id"], "content": "me too", "from_agent": "carol"}
            )
        )


async def test_reply_to_missing_message(coordinator):
    with pytest.raises(MessageNotFound):
        await coordinator.communicate(parse_communicate({"action": "reply", "message_id": "nope", "content": "x"}))


async def test_session_tokens_are_checked_when_supplied(coordinator, clock):
    grant = coordinator.login("alice", metadata={"role": "planner"})
    assert grant["identity"]["confidence"] == 1.0
    await _send(coordinator, clock, session_token=grant["session_token"])
    with pytest.raises(InvalidSession):
        await _send(coordinator, clock, session_token="forged")

    assert coordinator.logout("alice", grant["session_token"]) == {"agent_id": "alice", "is_online": False}
    with pytest.raises(InvalidSession):
        coordinator.logout("alice", grant["session_token"])


async def test_session_sweep_expires_logins(coordinator, clock):
    coordinator.login("alice", session_minutes=1)
    clock.advance(minutes=2)
    assert coordinator.sweep_sessions() == ["alice"]
    assert coordinator.sweep_sessions() == []


async def test_manage_bulk_mark_read_and_delete(coordinator, clock):
    ids = [(await _send(coordinator, clock, title=f"t{i}"))["message_id"] for i in range(2)]
    result = await coordinator.manage(parse_manage({"action": "mark_read", "message_ids": [*ids, "missing"]}))
    assert result["succeeded"] == 2
    assert result["failed"] == 1
    assert result["new_state"] == "read"

    deleted = await coordinator.manage(parse_manage({"action": "delete", "agent_id": "bob", "message_ids": ids}))
    assert deleted["deleted_count"] == 2
    assert (await _receive(coordinator))["count"] == 0


async def test_update_agent_status_tracks_identity(coordinator):
    coordinator.update_agent_status("alice", metadata={"role": "planner"})
    result = coordinator.update_agent_status("alice", metadata={"role": "intruder"})
    assert result["identity"]["drift_detected"] is True
    view = coordinator.agent_sync_status("alice")
    assert view["known"] is True
    assert view["identity"]["drift_detected"] is True
    assert coordinator.agent_sync_status("stranger") == {"agent_id": "stranger", "known": False}


async def test_system_view(coordinator, clock):
    coordinator.login("bob")
    await _send(coordinator, clock)
    view = coordinator.agent_sync_status()
    assert view["online_agents"] == ["bob"]
    assert view["system"]["total_messages"] == 1
    assert view["threads"]["total_threads"] == 1


async def test_thread_lifecycle_detaches_agents(coordinator, clock):
    sent = await _send(coordinator, clock)
    listed = coordinator.list_threads("alice")
    assert listed["count"] == 1
    assert coordinator.archive_thread(sent["thread_id"]) == {"thread_id": sent["thread_id"], "archived": True}
    assert coordinator.presence.get_status("alice").active_threads == []
    assert coordinator.close_thread(sent["thread_id"])["closed"] is False

    again = await _send(coordinator, clock)
    assert again["thread_id"] != sent["thread_id"]


async def test_reply_into_archived_thread_keeps_it_detached(coordinator, clock):
    coordinator.login("alice")
    coordinator.login("bob")
    sent = await _send(coordinator, clock)
    assert coordinator.archive_thread(sent["thread_id"])["archived"] is True

    reply = await coordinator.communicate(
        parse_communicate({"action": "reply", "message_id": sent["message_id"], "content": "late answer"})
    )
    assert reply["thread_id"] == sent["thread_id"]
    assert coordinator.presence.get_status("alice").active_threads == []
    assert coordinator.presence.get_status("bob").active_threads == []
    assert len(coordinator.get_thread_messages(sent["thread_id"])["messages"]) == 2

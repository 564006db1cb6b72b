from __future__ import annotations

import pytest

from mcp_agent_comms.actions import (
    BulkMarkReadAction,
    DeleteAction,
    ReceiveAction,
    SendAction,
    UpdateStatesAction,
    parse_communicate,
    parse_manage,
)
from mcp_agent_comms.errors import ValidationError
from mcp_agent_comms.messages import MessagePriority


def test_send_variant_with_defaults():
    action = parse_communicate(
        {"action": "send", "from_agent": "a", "to_agent": "b", "title": "Hi", "content": "there", "priority": None}
    )
    assert isinstance(action, SendAction)
    assert action.priority is MessagePriority.NORMAL
    assert action.security_level is None
    assert action.metadata == {}


def test_receive_variant_ignores_unset_fields():
    action = parse_communicate({"action": "receive", "agent_id": "b", "message_id": None, "limit": 5})
    assert isinstance(action, ReceiveAction)
    assert action.limit == 5


def test_missing_action_is_rejected():
    with pytest.raises(ValidationError, match="action is required"):
        parse_communicate({"agent_id": "b"})


def test_unknown_action_is_rejected():
    with pytest.raises(ValidationError) as excinfo:
        parse_communicate({"action": "shout", "agent_id": "b"})
    assert excinfo.value.data["action"] == "shout"


def test_fields_from_other_variants_are_rejected():
    with pytest.raises(ValidationError, match="Invalid communicate request"):
        parse_communicate({"action": "receive", "agent_id": "b", "content": "stray"})


def test_send_requires_content_and_valid_level():
    with pytest.raises(ValidationError) as excinfo:
        parse_communicate({"action": "send", "from_agent": "a", "to_agent": "b", "title": "Hi", "content": ""})
    assert any(err["field"].endswith("content") for err in excinfo.value.data["errors"])
    with pytest.raises(ValidationError):
        parse_communicate(
            {
                "action": "send",
                "from_agent": "a",
                "to_agent": "b",
                "title": "Hi",
                "content": "x",
                "security_level": "paranoid",
            }
        )


def test_manage_variants():
    assert isinstance(parse_manage({"action": "mark_read", "message_ids": ["m1", 2]}), BulkMarkReadAction)
    update = parse_manage({"action": "update_states", "message_ids": ["m1"], "new_state": "ignored"})
    assert isinstance(update, UpdateStatesAction)
    delete = parse_manage({"action": "delete", "agent_id": "b", "message_ids": ["m1"]})
    assert isinstance(delete, DeleteAction)
    with pytest.raises(ValidationError):
        parse_manage({"action": "update_states", "message_ids": ["m1"]})
    with pytest.raises(ValidationError):
        parse_manage({"action": "delete", "message_ids": ["m1"]})

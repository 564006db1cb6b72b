"""Typed request variants for the ``communicate`` and ``manage_messages`` tools.

Each action is its own model keyed on the literal ``action`` field and carries
only the fields that action uses. ``parse_communicate``/``parse_manage`` turn a
flat parameter mapping into the matching variant or raise ``ValidationError``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .errors import ValidationError
from .messages import MessagePriority

SecurityLevel = Literal["none", "basic", "signed", "encrypted"]


class _Action(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class SendAction(_Action):
    action: Literal["send"]
    from_agent: str = Field(min_length=1)
    to_agent: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    priority: MessagePriority = MessagePriority.NORMAL
    security_level: Optional[SecurityLevel] = None
    session_token: Optional[str] = None
    requires_reply: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReceiveAction(_Action):
    action: Literal["receive"]
    agent_id: str = Field(min_length=1)
    limit: int = 50
    states: Optional[list[str]] = None
    session_token: Optional[str] = None


class ReplyAction(_Action):
    action: Literal["reply"]
    message_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    from_agent: Optional[str] = None
    title: Optional[str] = None
    priority: MessagePriority = MessagePriority.NORMAL
    security_level: Optional[SecurityLevel] = None
    session_token: Optional[str] = None


class MarkReadAction(_Action):
    action: Literal["mark_read"]
    message_id: str = Field(min_length=1)


class MarkRepliedAction(_Action):
    action: Literal["mark_replied"]
    message_id: str = Field(min_length=1)


CommunicateAction = Annotated[
    Union[SendAction, ReceiveAction, ReplyAction, MarkReadAction, MarkRepliedAction],
    Field(discriminator="action"),
]


# Bulk id lists stay list[Any]: a malformed element is a per-id failure, not a request failure
class BulkMarkReadAction(_Action):
    action: Literal["mark_read"]
    message_ids: list[Any]


class UpdateStatesAction(_Action):
    action: Literal["update_states"]
    message_ids: list[Any]
    new_state: str = Field(min_length=1)


class DeleteAction(_Action):
    action: Literal["delete"]
    agent_id: str = Field(min_length=1)
    message_ids: list[Any] = Field(default_factory=list)
    session_token: Optional[str] = None


class EmptyMailboxAction(_Action):
    action: Literal["empty_mailbox"]
    agent_id: str = Field(min_length=1)
    query: Optional[str] = None
    session_token: Optional[str] = None


ManageAction = Annotated[
    Union[BulkMarkReadAction, UpdateStatesAction, DeleteAction, EmptyMailboxAction],
    Field(discriminator="action"),
]

_communicate_adapter: TypeAdapter[Any] = TypeAdapter(CommunicateAction)
_manage_adapter: TypeAdapter[Any] = TypeAdapter(ManageAction)


def _parse(adapter: TypeAdapter[Any], payload: dict[str, Any], tool: str) -> Any:
    params = {key: value for key, value in payload.items() if value is not None}
    if "action" not in params:
        raise ValidationError(f"action is required for {tool}.")
    try:
        return adapter.validate_python(params)
    except pydantic.ValidationError as exc:
        problems = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        summary = "; ".join(f"{p['field'] or 'request'}: {p['message']}" for p in problems)
        raise ValidationError(
            f"Invalid {tool} request: {summary}",
            data={"action": params.get("action"), "errors": problems},
        ) from None


def parse_communicate(payload: dict[str, Any]) -> Any:
    return _parse(_communicate_adapter, payload, "communicate")


def parse_manage(payload: dict[str, Any]) -> Any:
    return _parse(_manage_adapter, payload, "manage_messages")

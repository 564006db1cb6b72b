"""Message lifecycle state machine and bulk message management.

Transition table (source -> targets)::

    sent    -> arrived, ignored
    arrived -> read, ignored
    read    -> replied, unread, ignored
    unread  -> read, ignored
    replied -> (terminal)
    ignored -> (terminal)

``mark_read``/``mark_replied`` walk the forward path sent -> arrived -> read ->
replied one table transition at a time, so every persisted change is a legal
single step. ``update_state`` applies exactly one transition.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .errors import (
    BatchEmpty,
    BatchTooLarge,
    InvalidStateTransition,
    MessageNotFound,
    ValidationError,
)
from .models import MessageRecord
from .storage import MessageFilter, MessageStore
from .utils import new_id, utcnow

logger = logging.getLogger(__name__)


class MessageState(str, Enum):
    SENT = "sent"
    ARRIVED = "arrived"
    READ = "read"
    REPLIED = "replied"
    IGNORED = "ignored"
    UNREAD = "unread"


class MessagePriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


TERMINAL_STATES: frozenset[MessageState] = frozenset({MessageState.REPLIED, MessageState.IGNORED})

ALLOWED_TRANSITIONS: dict[MessageState, frozenset[MessageState]] = {
    MessageState.SENT: frozenset({MessageState.ARRIVED, MessageState.IGNORED}),
    MessageState.ARRIVED: frozenset({MessageState.READ, MessageState.IGNORED}),
    MessageState.READ: frozenset({MessageState.REPLIED, MessageState.UNREAD, MessageState.IGNORED}),
    MessageState.UNREAD: frozenset({MessageState.READ, MessageState.IGNORED}),
    MessageState.REPLIED: frozenset(),
    MessageState.IGNORED: frozenset(),
}

_FORWARD_PATH: tuple[MessageState, ...] = (
    MessageState.SENT,
    MessageState.ARRIVED,
    MessageState.READ,
    MessageState.REPLIED,
)

# (record after the change, previous state, new state)
TransitionListener = Callable[[MessageRecord, MessageState, MessageState], None]


def can_transition(current: MessageState, target: MessageState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def parse_state(value: Any) -> MessageState:
    try:
        return MessageState(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in MessageState)
        raise ValidationError(
            f"Invalid message state '{value}'. Expected one of: {allowed}.",
            data={"provided": value, "allowed": [s.value for s in MessageState]},
        ) from None


def parse_priority(value: Any) -> MessagePriority:
    try:
        return MessagePriority(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid priority '{value}'. Expected one of: low, normal, high, urgent.",
            data={"provided": value},
        ) from None


def _next_step(current: MessageState, target: MessageState) -> Optional[MessageState]:
    """Next state on the way from ``current`` to forward-path ``target``; None if already there or past it."""
    if current is MessageState.UNREAD:
        if _FORWARD_PATH.index(target) >= _FORWARD_PATH.index(MessageState.READ):
            return MessageState.READ
        return None
    position = _FORWARD_PATH.index(current)
    if position >= _FORWARD_PATH.index(target):
        return None
    return _FORWARD_PATH[position + 1]


@dataclass(slots=True)
class BatchResult:
    action: str
    total: int
    succeeded: int = 0
    errors: list[str] = field(default_factory=list)
    new_state: Optional[str] = None
    execution_time_ms: float = 0.0

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "action": self.action,
            "total_messages": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "execution_time_ms": round(self.execution_time_ms, 3),
        }
        if self.new_state is not None:
            payload["new_state"] = self.new_state
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


class MessageStateMachine:
    """Validates and applies lifecycle transitions against a ``MessageStore``."""

    def __init__(
        self,
        store: MessageStore,
        *,
        max_batch_size: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._max_batch_size = max_batch_size
        self._clock = clock
        self._listeners: list[TransitionListener] = []

    @property
    def store(self) -> MessageStore:
        return self._store

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    async def create_message(
        self,
        *,
        sender_id: str,
        recipient_id: str,
        thread_id: str,
        subject: str,
        content: str,
        priority: MessagePriority = MessagePriority.NORMAL,
        security_level: str = "none",
        reply_to: Optional[str] = None,
        requires_reply: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ) -> MessageRecord:
        record = MessageRecord(
            id=new_id(),
            thread_id=thread_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            subject=subject,
            content=content,
            priority=priority.value,
            state=MessageState.SENT.value,
            security_level=security_level,
            created_ts=self._clock(),
            reply_to=reply_to,
            requires_reply=requires_reply,
            attributes=dict(metadata or {}),
        )
        await self._store.create(record)
        return record

    async def get_message(self, message_id: str) -> MessageRecord:
        record = await self._store.get(message_id)
        if record is None:
            raise MessageNotFound(message_id)
        return record

    async def update_state(self, message_id: str, new_state: MessageState | str) -> MessageRecord:
        target = parse_state(new_state) if not isinstance(new_state, MessageState) else new_state
        record = await self.get_message(message_id)
        return await self._apply(record, target)

    async def mark_arrived(self, message_id: str) -> MessageRecord:
        return await self._advance(message_id, MessageState.ARRIVED)

    async def mark_read(self, message_id: str) -> MessageRecord:
        return await self._advance(message_id, MessageState.READ)

    async def mark_replied(self, message_id: str) -> MessageRecord:
        return await self._advance(message_id, MessageState.REPLIED)

    async def delete_messages(self, owner_id: str, message_ids: Sequence[Any]) -> int:
        """Delete ``owner_id``'s messages among ``message_ids``; unknown or foreign ids are skipped."""
        if not owner_id:
            raise ValidationError("agent_id is required for delete action.")
        ids = list(dict.fromkeys(mid for mid in message_ids if isinstance(mid, str) and mid))
        deleted = await self._store.delete(owner_id, ids)
        logger.info("messages.deleted", extra={"owner_id": owner_id, "requested": len(message_ids), "deleted": deleted})
        return deleted

    async def empty_mailbox(self, owner_id: str, query: Optional[str] = None) -> int:
        if not owner_id:
            raise ValidationError("agent_id is required for empty_mailbox action.")
        records = await self._store.query(MessageFilter(recipient_id=owner_id, subject_contains=query or None))
        if not records:
            return 0
        deleted = await self._store.delete(owner_id, [r.id for r in records])
        logger.info("messages.mailbox_emptied", extra={"owner_id": owner_id, "query": query, "deleted": deleted})
        return deleted

    async def bulk_mark_read(self, message_ids: Sequence[Any]) -> BatchResult:
        self._check_batch(message_ids)
        result = BatchResult(action="mark_read", total=len(message_ids), new_state=MessageState.READ.value)
        started = time.perf_counter()
        for message_id in message_ids:
            if not isinstance(message_id, str) or not message_id:
                result.errors.append(f"Invalid message ID: {message_id!r}")
                continue
            try:
                await self.mark_read(message_id)
            except (MessageNotFound, InvalidStateTransition) as exc:
                result.errors.append(f"Error updating message {message_id}: {exc}")
                continue
            result.succeeded += 1
        result.execution_time_ms = (time.perf_counter() - started) * 1000
        logger.info("messages.bulk_mark_read", extra={"total": result.total, "failed": result.failed})
        return result

    async def bulk_update_states(self, message_ids: Sequence[Any], new_state: MessageState | str) -> BatchResult:
        self._check_batch(message_ids)
        target = parse_state(new_state) if not isinstance(new_state, MessageState) else new_state
        result = BatchResult(action="update_states", total=len(message_ids), new_state=target.value)
        started = time.perf_counter()
        for message_id in message_ids:
            if not isinstance(message_id, str) or not message_id:
                result.errors.append(f"Invalid message ID: {message_id!r}")
                continue
            try:
                await self.update_state(message_id, target)
            except (MessageNotFound, InvalidStateTransition) as exc:
                result.errors.append(f"Error updating message {message_id}: {exc}")
                continue
            result.succeeded += 1
        result.execution_time_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "messages.bulk_update_states",
            extra={"total": result.total, "failed": result.failed, "new_state": target.value},
        )
        return result

    def _check_batch(self, message_ids: Sequence[Any]) -> None:
        if isinstance(message_ids, (str, bytes)) or not isinstance(message_ids, Sequence):
            raise ValidationError("message_ids must be an array of message ids.")
        if len(message_ids) == 0:
            raise BatchEmpty()
        if len(message_ids) > self._max_batch_size:
            raise BatchTooLarge(len(message_ids), self._max_batch_size)

    async def _advance(self, message_id: str, target: MessageState) -> MessageRecord:
        record = await self.get_message(message_id)
        while True:
            current = MessageState(record.state)
            if current is target:
                return record
            if current in TERMINAL_STATES:
                raise InvalidStateTransition(message_id, current.value, target.value)
            step = _next_step(current, target)
            if step is None:
                return record
            record = await self._apply(record, step)

    async def _apply(self, record: MessageRecord, target: MessageState) -> MessageRecord:
        current = MessageState(record.state)
        if not can_transition(current, target):
            raise InvalidStateTransition(record.id, current.value, target.value)
        now = self._clock()
        if not await self._store.update_state(record.id, target.value, at=now):
            raise MessageNotFound(record.id)
        record.state = target.value
        if target is MessageState.READ and record.read_ts is None:
            record.read_ts = now
        elif target is MessageState.REPLIED and record.replied_ts is None:
            record.replied_ts = now
        for listener in self._listeners:
            listener(record, current, target)
        return record

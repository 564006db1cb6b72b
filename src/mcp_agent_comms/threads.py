"""Conversation threads: an in-memory thread store and the resolver that routes messages into it."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .errors import ThreadNotFound, ValidationError
from .messages import MessagePriority
from .utils import iso, new_id, utcnow

logger = logging.getLogger(__name__)

_PRIORITY_RANK: dict[str, int] = {"low": 0, "normal": 1, "high": 2}
_REPLY_PREFIX = re.compile(r"^re:\s*")


class ThreadState(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    CLOSED = "closed"


def thread_priority(priority: MessagePriority | str) -> str:
    """Map a message priority onto the three thread tiers.

    Threads rank ``low < normal < high``; message priority ``urgent`` has no
    tier of its own and collapses to ``high``.
    """
    value = priority.value if isinstance(priority, MessagePriority) else str(priority).strip().lower()
    if value == MessagePriority.URGENT.value:
        return "high"
    if value not in _PRIORITY_RANK:
        raise ValidationError(f"Invalid priority '{priority}'.", data={"provided": str(priority)})
    return value


def normalize_subject(subject: str) -> str:
    return _REPLY_PREFIX.sub("", subject.strip().lower(), count=1).strip()


def subjects_similar(first: str, second: str) -> bool:
    a = normalize_subject(first)
    b = normalize_subject(second)
    if not a or not b:
        return a == b
    if a in b or b in a:
        return True
    tokens_a = set(a.split())
    tokens_b = set(b.split())
    shorter = min(len(tokens_a), len(tokens_b))
    return len(tokens_a & tokens_b) >= 0.5 * shorter


@dataclass(slots=True)
class ThreadMessage:
    """Lightweight projection of a stored message; the store keeps the body."""

    message_id: str
    sender_id: str
    recipient_id: str
    subject: str
    timestamp: datetime
    state: str
    priority: str
    reply_to: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "subject": self.subject,
            "timestamp": iso(self.timestamp),
            "state": self.state,
            "priority": self.priority,
            "reply_to": self.reply_to,
        }


@dataclass(slots=True)
class ConversationThread:
    thread_id: str
    participants: tuple[str, ...]
    subject: str
    priority: str
    created_at: datetime
    last_activity: datetime
    state: ThreadState = ThreadState.ACTIVE
    messages: list[ThreadMessage] = field(default_factory=list)

    @property
    def participant_key(self) -> frozenset[str]:
        return frozenset(self.participants)

    def to_dict(self, *, include_messages: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "thread_id": self.thread_id,
            "participants": list(self.participants),
            "subject": self.subject,
            "priority": self.priority,
            "state": self.state.value,
            "created_at": iso(self.created_at),
            "last_activity": iso(self.last_activity),
            "message_count": len(self.messages),
        }
        if include_messages:
            payload["messages"] = [m.to_dict() for m in self.messages]
        return payload


class ThreadStore:
    """Registry of threads plus the per-agent and per-message secondary indexes."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        # dict insertion order doubles as thread creation order
        self._threads: dict[str, ConversationThread] = {}
        self._agent_index: dict[str, set[str]] = {}
        self._message_index: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._threads)

    def threads(self) -> Iterator[ConversationThread]:
        return iter(list(self._threads.values()))

    def active_threads(self) -> list[ConversationThread]:
        return [t for t in self._threads.values() if t.state is ThreadState.ACTIVE]

    def get_thread(self, thread_id: str) -> Optional[ConversationThread]:
        return self._threads.get(thread_id)

    def require_thread(self, thread_id: str) -> ConversationThread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise ThreadNotFound(thread_id)
        return thread

    def create_thread(
        self,
        participants: Iterable[str],
        subject: str,
        priority: MessagePriority | str = MessagePriority.NORMAL,
    ) -> ConversationThread:
        members = tuple(dict.fromkeys(p for p in participants if p))
        if len(members) < 2:
            raise ValidationError(
                "A thread needs at least two distinct participants.",
                data={"participants": list(members)},
            )
        now = self._clock()
        thread = ConversationThread(
            thread_id=new_id("thread"),
            participants=members,
            subject=subject,
            priority=thread_priority(priority),
            created_at=now,
            last_activity=now,
        )
        # registry and index are updated together, with no suspension point in between
        self._threads[thread.thread_id] = thread
        for agent_id in members:
            self._agent_index.setdefault(agent_id, set()).add(thread.thread_id)
        logger.info(
            "threads.created",
            extra={"thread_id": thread.thread_id, "participants": list(members), "priority": thread.priority},
        )
        return thread

    def find_thread_for_message(self, message_id: str) -> Optional[str]:
        return self._message_index.get(message_id)

    def add_message_to_thread(self, thread_id: str, message: ThreadMessage) -> bool:
        thread = self._threads.get(thread_id)
        if thread is None:
            return False
        thread.messages.append(message)
        self._message_index[message.message_id] = thread_id
        thread.last_activity = self._clock()
        incoming = thread_priority(message.priority)
        if _PRIORITY_RANK[incoming] > _PRIORITY_RANK[thread.priority]:
            logger.debug(
                "threads.priority_promoted",
                extra={"thread_id": thread_id, "from": thread.priority, "to": incoming},
            )
            thread.priority = incoming
        return True

    def update_message_state(self, message_id: str, state: str) -> bool:
        thread_id = self._message_index.get(message_id)
        if thread_id is None or thread_id not in self._threads:
            return False
        for projection in self._threads[thread_id].messages:
            if projection.message_id == message_id:
                projection.state = state
                return True
        return False

    def get_agent_threads(self, agent_id: str) -> list[ConversationThread]:
        thread_ids = self._agent_index.get(agent_id, set())
        threads = [self._threads[tid] for tid in thread_ids if tid in self._threads]
        return sorted(threads, key=lambda t: t.last_activity, reverse=True)

    def get_thread_messages(self, thread_id: str, limit: int = 50, offset: int = 0) -> list[ThreadMessage]:
        thread = self.require_thread(thread_id)
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be non-negative.", data={"limit": limit, "offset": offset})
        ordered = sorted(thread.messages, key=lambda m: m.timestamp)
        return ordered[offset : offset + limit]

    def archive_thread(self, thread_id: str) -> bool:
        return self._finish(thread_id, ThreadState.ARCHIVED)

    def close_thread(self, thread_id: str) -> bool:
        return self._finish(thread_id, ThreadState.CLOSED)

    def _finish(self, thread_id: str, target: ThreadState) -> bool:
        thread = self._threads.get(thread_id)
        if thread is None or thread.state is not ThreadState.ACTIVE:
            return False
        thread.state = target
        logger.info("threads.state_changed", extra={"thread_id": thread_id, "state": target.value})
        return True

    def get_thread_stats(self) -> dict[str, int]:
        stats = {
            "total_threads": 0,
            "active_threads": 0,
            "archived_threads": 0,
            "closed_threads": 0,
            "total_messages": 0,
        }
        for thread in self._threads.values():
            stats["total_threads"] += 1
            stats[f"{thread.state.value}_threads"] += 1
            stats["total_messages"] += len(thread.messages)
        return stats


class ThreadResolver:
    """Decides which thread a new message belongs to, creating one when nothing matches."""

    def __init__(self, store: ThreadStore) -> None:
        self._store = store

    def resolve_thread(
        self,
        from_agent: str,
        to_agent: str,
        subject: str,
        priority: MessagePriority | str = MessagePriority.NORMAL,
        reply_to: Optional[str] = None,
    ) -> str:
        if reply_to:
            parent_thread = self._store.find_thread_for_message(reply_to)
            if parent_thread is not None:
                return parent_thread

        key = frozenset((from_agent, to_agent))
        for thread in self._store.active_threads():
            if thread.participant_key == key and subjects_similar(thread.subject, subject):
                return thread.thread_id

        return self._store.create_thread(sorted(key), subject, priority).thread_id

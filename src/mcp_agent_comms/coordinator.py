"""The coordinator wires the messaging core together and implements the tool-call operations.

One ``CommsCoordinator`` owns one instance of every component, so separate
servers (and tests) never share registries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional

from .actions import (
    BulkMarkReadAction,
    DeleteAction,
    EmptyMailboxAction,
    MarkReadAction,
    MarkRepliedAction,
    ReceiveAction,
    ReplyAction,
    SendAction,
    UpdateStatesAction,
)
from .codec import EnvelopeCodec, MessageCodec
from .config import Settings
from .errors import DecryptionFailure, InvalidSession, ValidationError
from .messages import (
    TERMINAL_STATES,
    MessagePriority,
    MessageState,
    MessageStateMachine,
    parse_state,
)
from .models import MessageRecord
from .presence import AgentPresenceMonitor
from .sessions import SessionIssuer
from .storage import MessageFilter, MessageStore, SqlMessageStore
from .threads import ThreadMessage, ThreadResolver, ThreadState, ThreadStore
from .utils import iso, utcnow

logger = logging.getLogger(__name__)

_REPLY_PREFIX = "Re: "


def _message_payload(record: MessageRecord, content: Optional[str]) -> dict[str, Any]:
    return {
        "id": record.id,
        "thread_id": record.thread_id,
        "from_agent": record.sender_id,
        "to_agent": record.recipient_id,
        "subject": record.subject,
        "content": content,
        "priority": record.priority,
        "state": record.state,
        "security_level": record.security_level,
        "created_at": iso(record.created_ts),
        "read_at": iso(record.read_ts),
        "replied_at": iso(record.replied_ts),
        "reply_to": record.reply_to,
        "requires_reply": record.requires_reply,
        "metadata": dict(record.attributes or {}),
    }


class CommsCoordinator:
    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[MessageStore] = None,
        codec: Optional[MessageCodec] = None,
        sessions: Optional[SessionIssuer] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.store: MessageStore = store or SqlMessageStore()
        self.messages = MessageStateMachine(
            self.store, max_batch_size=settings.messaging.max_batch_size, clock=clock
        )
        self.threads = ThreadStore(clock=clock)
        self.resolver = ThreadResolver(self.threads)
        self.presence = AgentPresenceMonitor.from_settings(settings.monitor, clock=clock)
        self.codec: MessageCodec = codec or EnvelopeCodec(settings.codec_secret or None)
        self.sessions = sessions or SessionIssuer(
            default_minutes=settings.sessions.default_minutes,
            max_minutes=settings.sessions.max_minutes,
            clock=clock,
        )
        self.messages.add_listener(self._sync_thread_projection)

    def _sync_thread_projection(self, record: MessageRecord, previous: MessageState, new: MessageState) -> None:
        self.threads.update_message_state(record.id, new.value)

    # -- helpers -----------------------------------------------------------

    def _authenticate(self, agent_id: str, session_token: Optional[str]) -> None:
        """A supplied token must belong to ``agent_id`` and be unexpired; omitting it is allowed."""
        if session_token is None:
            return
        if not self.presence.validate_session(agent_id, session_token):
            raise InvalidSession(
                "Session token is invalid or expired for this agent.",
                data={"agent_id": agent_id},
            )

    def _check_lengths(self, title: str, content: str) -> None:
        limits = self.settings.messaging
        if len(title) > limits.max_title_length:
            raise ValidationError(
                f"title must be {limits.max_title_length} characters or less.",
                data={"length": len(title), "limit": limits.max_title_length},
            )
        if len(content) > limits.max_content_length:
            raise ValidationError(
                f"content must be {limits.max_content_length} characters or less.",
                data={"length": len(content), "limit": limits.max_content_length},
            )

    async def _deliver(
        self,
        *,
        sender_id: str,
        recipient_id: str,
        subject: str,
        content: str,
        priority: MessagePriority,
        security_level: Optional[str],
        reply_to: Optional[str] = None,
        requires_reply: bool = False,
        metadata: Optional[dict[str, Any]] = None,
        response_time_ms: Optional[float] = None,
    ) -> dict[str, Any]:
        self._check_lengths(subject, content)
        check = self.presence.assess_interaction(sender_id, recipient_id)
        if not check.is_valid:
            self.presence.record_interaction(sender_id, recipient_id, check)
            raise ValidationError(
                f"Invalid interaction: {check.reason}",
                data={"from_agent": sender_id, "to_agent": recipient_id},
            )
        if check.ghost:
            logger.warning("comms.ghost_recipient", extra={"from_agent": sender_id, "to_agent": recipient_id})

        level = security_level or self.settings.messaging.default_security_level
        envelope = self.codec.encode(content, sender_id, recipient_id, level)
        thread_id = self.resolver.resolve_thread(sender_id, recipient_id, subject, priority, reply_to)
        record = await self.messages.create_message(
            sender_id=sender_id,
            recipient_id=recipient_id,
            thread_id=thread_id,
            subject=subject,
            content=envelope,
            priority=priority,
            security_level=level,
            reply_to=reply_to,
            requires_reply=requires_reply,
            metadata=metadata,
        )
        self.presence.record_interaction(sender_id, recipient_id, check)
        self.threads.add_message_to_thread(
            thread_id,
            ThreadMessage(
                message_id=record.id,
                sender_id=sender_id,
                recipient_id=recipient_id,
                subject=subject,
                timestamp=record.created_ts,
                state=record.state,
                priority=record.priority,
                reply_to=reply_to,
            ),
        )
        self.presence.record_message(sender_id, response_time_ms)
        thread = self.threads.get_thread(thread_id)
        if thread is not None and thread.state is ThreadState.ACTIVE:
            self.presence.attach_thread(sender_id, thread_id)
            if self.presence.get_status(recipient_id) is not None:
                self.presence.attach_thread(recipient_id, thread_id)

        sender_status = self.presence.get_status(sender_id)
        logger.info(
            "comms.sent",
            extra={"message_id": record.id, "thread_id": thread_id, "from_agent": sender_id, "to_agent": recipient_id},
        )
        return {
            "message_id": record.id,
            "thread_id": thread_id,
            "from_agent": sender_id,
            "to_agent": recipient_id,
            "subject": subject,
            "state": record.state,
            "priority": record.priority,
            "security_level": level,
            "encrypted": level in {"basic", "encrypted"},
            "created_at": iso(record.created_ts),
            "reply_to": reply_to,
            "requires_reply": requires_reply,
            "validation": {
                "interaction": check.to_dict(),
                "sender_role_consistency": sender_status.role_consistency if sender_status else 1.0,
            },
        }

    # -- communicate -------------------------------------------------------

    async def communicate(self, action: Any) -> dict[str, Any]:
        if isinstance(action, SendAction):
            return await self.send(action)
        if isinstance(action, ReceiveAction):
            return await self.receive(action)
        if isinstance(action, ReplyAction):
            return await self.reply(action)
        if isinstance(action, MarkReadAction):
            return await self.mark_read(action.message_id)
        if isinstance(action, MarkRepliedAction):
            return await self.mark_replied(action.message_id)
        raise ValidationError(f"Unknown communicate action: {getattr(action, 'action', action)!r}")

    async def send(self, action: SendAction) -> dict[str, Any]:
        self._authenticate(action.from_agent, action.session_token)
        return await self._deliver(
            sender_id=action.from_agent,
            recipient_id=action.to_agent,
            subject=action.title,
            content=action.content,
            priority=action.priority,
            security_level=action.security_level,
            requires_reply=action.requires_reply,
            metadata=action.metadata,
        )

    async def receive(self, action: ReceiveAction) -> dict[str, Any]:
        max_limit = self.settings.messaging.receive_max_limit
        if action.limit < 1 or action.limit > max_limit:
            raise ValidationError(
                f"limit must be between 1 and {max_limit}.",
                data={"limit": action.limit},
            )
        states = tuple(parse_state(s).value for s in action.states) if action.states else None
        self._authenticate(action.agent_id, action.session_token)

        records = await self.store.query(
            MessageFilter(recipient_id=action.agent_id, states=states), limit=action.limit + 1
        )
        has_more = len(records) > action.limit
        records = records[: action.limit]

        self.presence.record_activity(action.agent_id)
        payloads: list[dict[str, Any]] = []
        for record in records:
            if record.state == MessageState.SENT.value:
                record = await self.messages.mark_arrived(record.id)
            self.presence.attach_thread(action.agent_id, record.thread_id)
            try:
                content: Optional[str] = self.codec.decode(record.content, action.agent_id)
                decode_error = None
            except DecryptionFailure as exc:
                # one unreadable envelope must not hide the rest of the mailbox
                content = None
                decode_error = str(exc)
                self.presence.record_error(action.agent_id, f"decode {record.id}: {exc}")
            payload = _message_payload(record, content)
            if decode_error is not None:
                payload["decode_error"] = decode_error
            payloads.append(payload)

        return {
            "agent_id": action.agent_id,
            "messages": payloads,
            "count": len(payloads),
            "has_more": has_more,
        }

    async def reply(self, action: ReplyAction) -> dict[str, Any]:
        parent = await self.messages.get_message(action.message_id)
        replier = action.from_agent or parent.recipient_id
        if replier not in (parent.sender_id, parent.recipient_id):
            raise ValidationError(
                "Only a participant of the original message can reply to it.",
                data={"message_id": parent.id, "from_agent": replier},
            )
        self._authenticate(replier, action.session_token)
        recipient = parent.sender_id if replier == parent.recipient_id else parent.recipient_id

        base_subject = action.title or parent.subject
        subject = base_subject if base_subject.lower().startswith("re:") else _REPLY_PREFIX + base_subject
        elapsed_ms = max(0.0, (self._clock() - parent.created_ts).total_seconds() * 1000)

        sent = await self._deliver(
            sender_id=replier,
            recipient_id=recipient,
            subject=subject,
            content=action.content,
            priority=action.priority,
            security_level=action.security_level,
            reply_to=parent.id,
            response_time_ms=elapsed_ms if replier == parent.recipient_id else None,
        )
        parent_state = parent.state
        if replier == parent.recipient_id and MessageState(parent.state) not in TERMINAL_STATES:
            parent_state = (await self.messages.mark_replied(parent.id)).state
        sent["parent_message_id"] = parent.id
        sent["parent_state"] = parent_state
        return sent

    async def mark_read(self, message_id: str) -> dict[str, Any]:
        record = await self.messages.mark_read(message_id)
        self.presence.record_activity(record.recipient_id)
        return {"message_id": record.id, "new_state": record.state, "read_at": iso(record.read_ts), "success": True}

    async def mark_replied(self, message_id: str) -> dict[str, Any]:
        record = await self.messages.mark_replied(message_id)
        self.presence.record_activity(record.recipient_id)
        return {
            "message_id": record.id,
            "new_state": record.state,
            "replied_at": iso(record.replied_ts),
            "success": True,
        }

    # -- manage_messages ---------------------------------------------------

    async def manage(self, action: Any) -> dict[str, Any]:
        if isinstance(action, BulkMarkReadAction):
            return (await self.messages.bulk_mark_read(action.message_ids)).to_dict()
        if isinstance(action, UpdateStatesAction):
            return (await self.messages.bulk_update_states(action.message_ids, action.new_state)).to_dict()
        if isinstance(action, DeleteAction):
            self._authenticate(action.agent_id, action.session_token)
            deleted = await self.messages.delete_messages(action.agent_id, action.message_ids)
            return {"action": "delete", "agent_id": action.agent_id, "deleted_count": deleted}
        if isinstance(action, EmptyMailboxAction):
            self._authenticate(action.agent_id, action.session_token)
            deleted = await self.messages.empty_mailbox(action.agent_id, action.query)
            return {
                "action": "empty_mailbox",
                "agent_id": action.agent_id,
                "deleted_count": deleted,
                "query": action.query,
            }
        raise ValidationError(f"Unknown manage_messages action: {getattr(action, 'action', action)!r}")

    # -- sessions and presence ---------------------------------------------

    def login(
        self,
        agent_id: str,
        *,
        session_minutes: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        grant = self.sessions.issue(agent_id, session_minutes)
        self.presence.mark_online(agent_id, grant.token, grant.expires_at)
        validation = None
        if metadata is not None:
            self.presence.update_status(agent_id, metadata=metadata)
            found = self.presence.last_validation(agent_id)
            validation = found.to_dict() if found else None
        return {
            "agent_id": agent_id,
            "session_token": grant.token,
            "expires_at": iso(grant.expires_at),
            "identity": validation,
        }

    def logout(self, agent_id: str, session_token: str) -> dict[str, Any]:
        if not session_token:
            raise ValidationError("session_token is required for logout.")
        self._authenticate(agent_id, session_token)
        status = self.presence.mark_offline(agent_id)
        return {"agent_id": agent_id, "is_online": status.is_online}

    def update_agent_status(
        self,
        agent_id: str,
        *,
        session_token: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        self._authenticate(agent_id, session_token)
        fields: dict[str, Any] = {}
        if metadata is not None:
            fields["metadata"] = metadata
        status = self.presence.update_status(agent_id, **fields)
        validation = self.presence.last_validation(agent_id) if metadata is not None else None
        return {
            "status": status.to_dict(),
            "identity": validation.to_dict() if validation else None,
        }

    def agent_sync_status(self, agent_id: Optional[str] = None) -> dict[str, Any]:
        monitor = self.settings.monitor
        if agent_id is None:
            return {
                "system": self.presence.get_system_health(),
                "online_agents": [s.agent_id for s in self.presence.online_agents()],
                "poor_performing_agents": [
                    s.agent_id for s in self.presence.get_poor_performing_agents(monitor.poor_performance_threshold_ms)
                ],
                "high_error_agents": [
                    s.agent_id for s in self.presence.get_high_error_agents(monitor.high_error_threshold)
                ],
                "threads": self.threads.get_thread_stats(),
            }
        status = self.presence.get_status(agent_id)
        if status is None:
            return {"agent_id": agent_id, "known": False}
        validation = self.presence.last_validation(agent_id)
        return {
            "agent_id": agent_id,
            "known": True,
            "status": status.to_dict(),
            "metrics": self.presence.get_agent_metrics(agent_id),
            "identity": validation.to_dict() if validation else None,
            "threads": [t.to_dict() for t in self.threads.get_agent_threads(agent_id)],
        }

    def sweep_sessions(self) -> list[str]:
        return self.presence.cleanup_expired_sessions()

    # -- threads -----------------------------------------------------------

    def list_threads(self, agent_id: str) -> dict[str, Any]:
        threads = self.threads.get_agent_threads(agent_id)
        return {"agent_id": agent_id, "threads": [t.to_dict() for t in threads], "count": len(threads)}

    def get_thread_messages(self, thread_id: str, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        projections = self.threads.get_thread_messages(thread_id, limit, offset)
        thread = self.threads.require_thread(thread_id)
        return {
            "thread": thread.to_dict(),
            "messages": [m.to_dict() for m in projections],
            "limit": limit,
            "offset": offset,
        }

    def archive_thread(self, thread_id: str) -> dict[str, Any]:
        changed = self.threads.archive_thread(thread_id)
        if changed:
            self.presence.detach_thread(thread_id)
        return {"thread_id": thread_id, "archived": changed}

    def close_thread(self, thread_id: str) -> dict[str, Any]:
        changed = self.threads.close_thread(thread_id)
        if changed:
            self.presence.detach_thread(thread_id)
        return {"thread_id": thread_id, "closed": changed}

    def thread_stats(self) -> dict[str, Any]:
        return self.threads.get_thread_stats()

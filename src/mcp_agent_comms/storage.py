"""Durable message storage.

``MessageStore`` is the contract the core talks to; ``SqlMessageStore`` is the
SQLModel/SQLAlchemy implementation used by the server. The store is the sole
source of truth for message bodies; it knows nothing about lifecycle rules.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, cast

from sqlalchemy import delete, desc, select
from sqlalchemy.exc import SQLAlchemyError

from .db import ensure_schema, get_session
from .errors import PersistenceError
from .models import MessageRecord
from .utils import ensure_utc

logger = logging.getLogger(__name__)

# Timestamp column stamped the first time a message enters the given state
_STATE_TIMESTAMPS: dict[str, str] = {"read": "read_ts", "replied": "replied_ts"}


@dataclass(slots=True, frozen=True)
class MessageFilter:
    """Conjunctive filter; ``None`` fields are ignored."""

    recipient_id: Optional[str] = None
    sender_id: Optional[str] = None
    thread_id: Optional[str] = None
    states: Optional[tuple[str, ...]] = None
    subject_contains: Optional[str] = None
    since: Optional[datetime] = None


class MessageStore(Protocol):
    async def create(self, record: MessageRecord) -> str: ...

    async def get(self, message_id: str) -> Optional[MessageRecord]: ...

    async def query(self, filters: MessageFilter, limit: Optional[int] = None) -> list[MessageRecord]: ...

    async def update_state(self, message_id: str, state: str, *, at: datetime) -> bool: ...

    async def delete(self, owner_id: str, message_ids: Sequence[str]) -> int: ...


@contextmanager
def _persistence_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("store.failure", extra={"operation": operation, "error": type(exc).__name__})
        raise PersistenceError(f"Message store {operation} failed: {exc}", data={"operation": operation}) from exc


def _normalize(record: MessageRecord) -> MessageRecord:
    # SQLite hands back naive datetimes
    record.created_ts = cast(datetime, ensure_utc(record.created_ts))
    record.read_ts = ensure_utc(record.read_ts)
    record.replied_ts = ensure_utc(record.replied_ts)
    return record


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlMessageStore:
    """Message store backed by the async engine configured in ``db``."""

    async def create(self, record: MessageRecord) -> str:
        await ensure_schema()
        with _persistence_errors("create"):
            async with get_session() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        _normalize(record)
        return record.id

    async def get(self, message_id: str) -> Optional[MessageRecord]:
        await ensure_schema()
        with _persistence_errors("get"):
            async with get_session() as session:
                record = await session.get(MessageRecord, message_id)
        return _normalize(record) if record is not None else None

    async def query(self, filters: MessageFilter, limit: Optional[int] = None) -> list[MessageRecord]:
        await ensure_schema()
        stmt: Any = select(MessageRecord).order_by(desc(MessageRecord.created_ts))  # type: ignore[arg-type]
        if filters.recipient_id is not None:
            stmt = stmt.where(MessageRecord.recipient_id == filters.recipient_id)
        if filters.sender_id is not None:
            stmt = stmt.where(MessageRecord.sender_id == filters.sender_id)
        if filters.thread_id is not None:
            stmt = stmt.where(MessageRecord.thread_id == filters.thread_id)
        if filters.states:
            stmt = stmt.where(cast(Any, MessageRecord.state).in_(list(filters.states)))
        if filters.subject_contains:
            pattern = f"%{_escape_like(filters.subject_contains)}%"
            stmt = stmt.where(cast(Any, MessageRecord.subject).ilike(pattern, escape="\\"))
        if filters.since is not None:
            stmt = stmt.where(MessageRecord.created_ts > filters.since)
        if limit is not None:
            stmt = stmt.limit(limit)
        with _persistence_errors("query"):
            async with get_session() as session:
                result = await session.execute(stmt)
                rows = list(result.scalars().all())
        return [_normalize(row) for row in rows]

    async def update_state(self, message_id: str, state: str, *, at: datetime) -> bool:
        await ensure_schema()
        with _persistence_errors("update_state"):
            async with get_session() as session:
                record = await session.get(MessageRecord, message_id)
                if record is None:
                    return False
                record.state = state
                stamp_field = _STATE_TIMESTAMPS.get(state)
                if stamp_field and getattr(record, stamp_field) is None:
                    setattr(record, stamp_field, at)
                session.add(record)
                await session.commit()
        return True

    async def delete(self, owner_id: str, message_ids: Sequence[str]) -> int:
        if not message_ids:
            return 0
        await ensure_schema()
        stmt = delete(MessageRecord).where(
            cast(Any, MessageRecord.recipient_id == owner_id),
            cast(Any, MessageRecord.id).in_(list(message_ids)),
        )
        with _persistence_errors("delete"):
            async with get_session() as session:
                result = await session.execute(stmt)
                await session.commit()
        return int(getattr(result, "rowcount", 0) or 0)

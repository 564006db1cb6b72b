"""SQLModel table definitions for durable message storage."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from .utils import utcnow


class MessageRecord(SQLModel, table=True):
    __tablename__ = "messages"

    id: str = Field(primary_key=True, max_length=64)
    thread_id: str = Field(index=True, max_length=128)
    sender_id: str = Field(index=True, max_length=128)
    recipient_id: str = Field(index=True, max_length=128)
    subject: str = Field(max_length=512)
    # Opaque to the core: plain text or an encoded envelope
    content: str
    priority: str = Field(default="normal", max_length=16)
    state: str = Field(default="sent", index=True, max_length=16)
    security_level: str = Field(default="none", max_length=16)
    created_ts: datetime = Field(default_factory=utcnow, index=True)
    read_ts: Optional[datetime] = Field(default=None)
    replied_ts: Optional[datetime] = Field(default=None)
    reply_to: Optional[str] = Field(default=None, max_length=64)
    requires_reply: bool = Field(default=False)
    attributes: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False, default=dict))

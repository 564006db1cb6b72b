"""Small shared helpers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional, cast


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return a timezone-aware UTC datetime.

    Naive datetimes (as returned by SQLite) are assumed to be UTC already.
    """
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: Any) -> Optional[str]:
    """Return ISO-8601 in UTC for a datetime, ``None`` for ``None``."""
    if dt is None:
        return None
    if isinstance(dt, datetime):
        return cast(datetime, ensure_utc(dt)).isoformat()
    return str(dt)


def new_id(prefix: Optional[str] = None) -> str:
    if prefix:
        return f"{prefix}-{uuid.uuid4().hex}"
    return str(uuid.uuid4())

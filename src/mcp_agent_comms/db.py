"""Async database engine and session management utilities for the message store."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from functools import wraps
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, get_settings
from .models import MessageRecord  # noqa: F401  (registers the table on SQLModel.metadata)

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None

_LOCK_PHRASES = ("database is locked", "database is busy", "locked")


def retry_on_db_lock(max_retries: int = 5, base_delay: float = 0.1, max_delay: float = 5.0) -> Callable[..., Any]:
    """Retry an async function on SQLite lock errors with exponential backoff and ±25% jitter.

    Non-lock ``OperationalError``s and the final failed attempt are re-raised unchanged.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except OperationalError as e:
                    error_msg = str(e).lower()
                    is_lock_error = any(phrase in error_msg for phrase in _LOCK_PHRASES)
                    if not is_lock_error or attempt >= max_retries:
                        raise
                    delay = min(base_delay * (2**attempt), max_delay)
                    total_delay = delay + delay * 0.25 * (2 * random.random() - 1)
                    logger.warning(
                        "db.locked_retry",
                        extra={
                            "function": getattr(func, "__qualname__", "<callable>"),
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "delay_s": round(total_delay, 3),
                        },
                    )
                    await asyncio.sleep(total_delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build the async engine; SQLite connections get WAL and a busy timeout."""
    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()

    if is_sqlite:
        # "sqlite+aiosqlite:///path/to/db.sqlite3" -> make sure the parent directory exists
        match = re.search(r"sqlite.*:///(.+)$", settings.url)
        if match and match.group(1) != ":memory:":
            db_path = Path(match.group(1)).expanduser().resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
        connect_args = {"timeout": 30.0, "check_same_thread": False}

    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args=connect_args,
    )

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return engine


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    engine = _build_engine(resolved_settings.database)
    _engine = engine
    _session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    factory = get_session_factory()
    async with factory() as session:
        yield session


@retry_on_db_lock(max_retries=5, base_delay=0.1, max_delay=5.0)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Create the messages table and its mailbox indexes if they do not exist yet."""
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        init_engine(settings)
        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
            await conn.run_sync(_setup_indexes)
        _schema_ready = True


async def dispose_engine() -> None:
    """Close pooled connections; the engine can still be reused afterwards."""
    if _engine is not None:
        await _engine.dispose()


def reset_database_state() -> None:
    """Test helper to reset global engine/session state."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None


def _setup_indexes(connection: Any) -> None:
    # Mailbox listings filter by recipient and order by creation time
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_messages_recipient_created ON messages(recipient_id, created_ts DESC)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_messages_sender_created ON messages(sender_id, created_ts DESC)"
    )

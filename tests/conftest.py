"""Shared fixtures: isolated settings and SQLite database per test, plus a controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mcp_agent_comms import db
from mcp_agent_comms.config import Settings, clear_settings_cache, get_settings
from mcp_agent_comms.coordinator import CommsCoordinator
from mcp_agent_comms.messages import MessageStateMachine
from mcp_agent_comms.storage import SqlMessageStore


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
async def settings(tmp_path, monkeypatch) -> Settings:
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'comms.sqlite3'}")
    monkeypatch.setenv("SESSION_SWEEP_ENABLED", "false")
    monkeypatch.setenv("CODEC_SECRET", "test-secret")
    monkeypatch.setenv("TOOLS_LOG_ENABLED", "false")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    db.reset_database_state()
    yield get_settings()
    await db.dispose_engine()
    db.reset_database_state()
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(settings) -> SqlMessageStore:
    return SqlMessageStore()


@pytest.fixture
def machine(store, clock) -> MessageStateMachine:
    return MessageStateMachine(store, max_batch_size=1000, clock=clock)


@pytest.fixture
def coordinator(settings, clock) -> CommsCoordinator:
    return CommsCoordinator(settings, clock=clock)

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from mcp_agent_comms.cli import app
from mcp_agent_comms.config import clear_settings_cache

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.sqlite3'}")
    monkeypatch.setenv("SESSION_SWEEP_ENABLED", "false")
    monkeypatch.setenv("MESSAGING_MAX_BATCH_SIZE", "250")
    clear_settings_cache()
    yield
    clear_settings_cache()


def test_config_shows_effective_settings():
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "Active Settings" in result.stdout
    assert "250" in result.stdout
    assert "disabled" in result.stdout


def test_tool_rejects_invalid_json():
    result = runner.invoke(app, ["tool", "health_check", "--args", "{nope"])
    assert result.exit_code == 2
    assert "Invalid JSON arguments" in result.stdout


def test_tool_rejects_non_object_arguments():
    result = runner.invoke(app, ["tool", "health_check", "--args", "[1, 2]"])
    assert result.exit_code == 2


def test_serve_rejects_unknown_transport(monkeypatch):
    import mcp_agent_comms.app as app_module

    class _Server:
        def run(self, **kwargs):
            raise AssertionError("server should not start")

    monkeypatch.setattr(app_module, "build_mcp_server", lambda settings=None: _Server())
    result = runner.invoke(app, ["serve", "--transport", "carrier-pigeon"])
    assert result.exit_code != 0

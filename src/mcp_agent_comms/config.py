"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from decouple import (  # type: ignore[import-untyped,attr-defined]
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

# Read .env from the dedicated config directory, never from CWD
_MCP_AGENT_COMMS_CONFIG_DIR: Final[Path] = Path.home() / ".mcp_agent_comms"
_DOTENV_PATH: Final[Path] = _MCP_AGENT_COMMS_CONFIG_DIR / ".env"

# Missing .env (CI/tests) falls back to os.environ only
try:
    _decouple_config: Final[DecoupleConfig] = DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
except FileNotFoundError:
    _decouple_config = DecoupleConfig(RepositoryEmpty())  # type: ignore[arg-type,misc]


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport related settings."""

    host: str
    port: int
    path: str


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool


@dataclass(slots=True, frozen=True)
class MessagingSettings:
    """Limits applied to send/receive and bulk management calls."""

    max_batch_size: int
    max_title_length: int
    max_content_length: int
    receive_max_limit: int
    default_security_level: str  # "none" | "basic" | "signed" | "encrypted"


@dataclass(slots=True, frozen=True)
class SessionSettings:
    """Session issuance and expiry sweep settings."""

    default_minutes: int
    max_minutes: int
    sweep_enabled: bool
    sweep_interval_seconds: int


@dataclass(slots=True, frozen=True)
class MonitorSettings:
    """Window capacities and thresholds for presence, identity and performance tracking."""

    response_time_window: int
    activity_window: int
    error_window: int
    fingerprint_history: int
    consistency_history: int
    drift_threshold: float
    validity_threshold: float
    poor_performance_threshold_ms: float
    high_error_threshold: int


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    database: DatabaseSettings
    messaging: MessagingSettings
    sessions: SessionSettings
    monitor: MonitorSettings
    # Secret used to derive envelope keys; empty means a per-process random secret
    codec_secret: str
    # Logging
    log_rich_enabled: bool
    log_level: str
    log_json_enabled: bool
    # Tools logging
    tools_log_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _security_level(value: str) -> str:
    v = (value or "").strip().lower()
    if v in {"none", "basic", "signed", "encrypted"}:
        return v
    return "basic"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8766"), default=8766),
        path=_decouple_config("HTTP_PATH", default="/mcp/"),
    )

    # Absolute path in the user's home directory so no DB files land in CWD
    _default_db_path = _MCP_AGENT_COMMS_CONFIG_DIR / "messages.sqlite3"
    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default=f"sqlite+aiosqlite:///{_default_db_path}"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
    )

    messaging_settings = MessagingSettings(
        max_batch_size=_int(_decouple_config("MESSAGING_MAX_BATCH_SIZE", default="1000"), default=1000),
        max_title_length=_int(_decouple_config("MESSAGING_MAX_TITLE_LENGTH", default="500"), default=500),
        max_content_length=_int(_decouple_config("MESSAGING_MAX_CONTENT_LENGTH", default="10000"), default=10000),
        receive_max_limit=_int(_decouple_config("MESSAGING_RECEIVE_MAX_LIMIT", default="500"), default=500),
        default_security_level=_security_level(_decouple_config("MESSAGING_DEFAULT_SECURITY_LEVEL", default="basic")),
    )

    session_settings = SessionSettings(
        default_minutes=_int(_decouple_config("SESSION_DEFAULT_MINUTES", default="4320"), default=4320),
        max_minutes=_int(_decouple_config("SESSION_MAX_MINUTES", default="4320"), default=4320),
        sweep_enabled=_bool(_decouple_config("SESSION_SWEEP_ENABLED", default="true"), default=True),
        sweep_interval_seconds=_int(_decouple_config("SESSION_SWEEP_INTERVAL_SECONDS", default="60"), default=60),
    )

    monitor_settings = MonitorSettings(
        response_time_window=_int(_decouple_config("MONITOR_RESPONSE_TIME_WINDOW", default="100"), default=100),
        activity_window=_int(_decouple_config("MONITOR_ACTIVITY_WINDOW", default="1000"), default=1000),
        error_window=_int(_decouple_config("MONITOR_ERROR_WINDOW", default="100"), default=100),
        fingerprint_history=_int(_decouple_config("MONITOR_FINGERPRINT_HISTORY", default="10"), default=10),
        consistency_history=_int(_decouple_config("MONITOR_CONSISTENCY_HISTORY", default="20"), default=20),
        drift_threshold=_float(_decouple_config("MONITOR_DRIFT_THRESHOLD", default="0.7"), default=0.7),
        validity_threshold=_float(_decouple_config("MONITOR_VALIDITY_THRESHOLD", default="0.5"), default=0.5),
        poor_performance_threshold_ms=_float(
            _decouple_config("MONITOR_POOR_PERFORMANCE_THRESHOLD_MS", default="10000"), default=10000.0
        ),
        high_error_threshold=_int(_decouple_config("MONITOR_HIGH_ERROR_THRESHOLD", default="5"), default=5),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        database=database_settings,
        messaging=messaging_settings,
        sessions=session_settings,
        monitor=monitor_settings,
        codec_secret=_decouple_config("CODEC_SECRET", default=""),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        tools_log_enabled=_bool(_decouple_config("TOOLS_LOG_ENABLED", default="false"), default=False),
    )


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a mypy-friendly way."""
    cache_clear = getattr(get_settings, "cache_clear", None)
    if callable(cache_clear):
        cache_clear()

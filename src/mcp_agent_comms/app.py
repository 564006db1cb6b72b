"""Application factory for the MCP Agent Comms server."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from functools import wraps
from typing import Any, Optional, cast

import structlog
from fastmcp import Context, FastMCP

from . import rich_logger
from .actions import parse_communicate, parse_manage
from .config import Settings, get_settings
from .coordinator import CommsCoordinator
from .db import dispose_engine, ensure_schema, init_engine
from .errors import CommsError
from .utils import utcnow

logger = logging.getLogger(__name__)

CLUSTER_SETUP = "infrastructure"
CLUSTER_IDENTITY = "identity"
CLUSTER_MESSAGING = "messaging"
CLUSTER_THREADS = "threads"

TOOL_METRICS: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"calls": 0, "errors": 0})
TOOL_CLUSTER_MAP: dict[str, str] = {}
RECENT_TOOL_USAGE: deque[tuple[datetime, str, Optional[str]]] = deque(maxlen=4096)


class ToolExecutionError(Exception):
    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


def _record_tool_error(tool_name: str, exc: Exception) -> None:
    logger.warning(
        "tool_error",
        extra={
            "tool": tool_name,
            "error": type(exc).__name__,
            "error_message": str(exc),
        },
    )


def _wrap_exception(tool_name: str, exc: Exception) -> ToolExecutionError:
    if isinstance(exc, CommsError):
        return ToolExecutionError(
            exc.error_type,
            str(exc),
            recoverable=exc.recoverable,
            data={"tool": tool_name, **exc.data},
        )
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ToolExecutionError(
            "INVALID_ARGUMENT",
            f"Invalid argument: {exc}. Check that all parameters have valid values.",
            data={"tool": tool_name, "error_detail": str(exc)},
        )
    if isinstance(exc, TimeoutError):
        return ToolExecutionError(
            "TIMEOUT",
            f"Operation timed out: {exc}. Try again in a moment.",
            data={"tool": tool_name, "error_detail": str(exc)},
        )
    return ToolExecutionError(
        "UNHANDLED_EXCEPTION",
        f"Unexpected error ({type(exc).__name__}): {exc}",
        recoverable=False,
        data={"tool": tool_name, "original_error": type(exc).__name__, "error_detail": str(exc)},
    )


def _instrument_tool(
    tool_name: str,
    *,
    cluster: str,
    agent_arg: Optional[str] = None,
) -> Callable[[Any], Any]:
    TOOL_CLUSTER_MAP[tool_name] = cluster

    def decorator(func: Any) -> Any:
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            metrics = TOOL_METRICS[tool_name]
            metrics["calls"] += 1
            bound = signature.bind_partial(*args, **kwargs)
            agent_value = bound.arguments.get(agent_arg) if agent_arg else None
            agent_value = str(agent_value) if agent_value is not None else None

            log_ctx = None
            if get_settings().tools_log_enabled:
                log_ctx = rich_logger.ToolCallContext(
                    tool_name=tool_name,
                    kwargs={k: v for k, v in bound.arguments.items() if k != "ctx"},
                    agent=agent_value,
                    start_time=start_time,
                )
                rich_logger.log_tool_call_start(log_ctx)

            result = None
            error: Optional[Exception] = None
            try:
                result = await func(*args, **kwargs)
            except ToolExecutionError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                error = exc
                raise
            except Exception as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = _wrap_exception(tool_name, exc)
                error = wrapped_exc
                raise wrapped_exc from exc
            finally:
                RECENT_TOOL_USAGE.append((utcnow(), tool_name, agent_value))
                if log_ctx is not None:
                    log_ctx.end_time = time.perf_counter()
                    log_ctx.result = result
                    log_ctx.error = error
                    log_ctx.success = error is None
                    rich_logger.log_tool_call_end(log_ctx)
            return result

        # Preserve annotations so FastMCP can infer output schema
        with suppress(Exception):
            wrapper.__annotations__ = getattr(func, "__annotations__", {})
        return wrapper

    return decorator


def _tool_metrics_snapshot() -> list[dict[str, Any]]:
    return [
        {
            "name": name,
            "calls": data["calls"],
            "errors": data["errors"],
            "cluster": TOOL_CLUSTER_MAP.get(name, "unclassified"),
        }
        for name, data in sorted(TOOL_METRICS.items())
    ]


def _identity_claims(
    role: Optional[str],
    capabilities: Optional[list[str]],
    workspace: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
) -> Optional[dict[str, Any]]:
    """Merge explicit identity arguments over free-form metadata; ``None`` when nothing was claimed."""
    if role is None and capabilities is None and workspace is None and metadata is None:
        return None
    claims = dict(metadata or {})
    if role is not None:
        claims["role"] = role
    if capabilities is not None:
        claims["capabilities"] = list(capabilities)
    if workspace is not None:
        claims["workspace"] = workspace
    return claims


async def _ctx_info_safe(ctx: Any, message: str) -> None:
    info = getattr(ctx, "info", None)
    if info is None:
        return
    try:
        await info(message)
    except RuntimeError:
        # No active request (e.g. direct invocation outside a session)
        return


def _lifespan_factory(settings: Settings, coordinator: CommsCoordinator) -> Callable[[FastMCP], AsyncIterator[None]]:
    @asynccontextmanager
    async def lifespan(app: FastMCP) -> AsyncIterator[None]:
        init_engine(settings)
        await ensure_schema(settings)

        async def _worker_session_sweep() -> None:
            log = structlog.get_logger("tasks")
            while True:
                await asyncio.sleep(max(1, settings.sessions.sweep_interval_seconds))
                expired = coordinator.sweep_sessions()
                if expired:
                    log.info("session_sweep", expired=len(expired), agents=expired)

        tasks: list[asyncio.Task[None]] = []
        if settings.sessions.sweep_enabled:
            tasks.append(asyncio.create_task(_worker_session_sweep()))
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError):
                    await task
            await dispose_engine()

    return lifespan  # type: ignore[return-value]


def build_mcp_server(
    settings: Optional[Settings] = None,
    coordinator: Optional[CommsCoordinator] = None,
) -> FastMCP:
    """Create and configure the FastMCP server instance."""
    settings = settings or get_settings()
    coordinator = coordinator or CommsCoordinator(settings)
    rich_logger.configure_logging(settings)
    lifespan = _lifespan_factory(settings, coordinator)

    instructions = (
        "You are the MCP Agent Comms server. Agents log in, exchange addressed messages grouped "
        "into conversation threads, manage their mailboxes in bulk, and query presence and "
        "identity-consistency status."
    )

    mcp = FastMCP(name="mcp-agent-comms", instructions=instructions, lifespan=lifespan)  # type: ignore[arg-type]

    @mcp.tool(name="health_check", description="Return basic readiness information for the Agent Comms server.")
    @_instrument_tool("health_check", cluster=CLUSTER_SETUP)
    async def health_check(ctx: Context) -> dict[str, Any]:
        """
        Quick readiness check.

        Returns
        -------
        dict
            {"status": "ok", "environment": str, "http_host": str, "http_port": int,
             "database_url": str, "agents": {...system health...}, "threads": {...}}
        """
        await _ctx_info_safe(ctx, "Running health check.")
        return {
            "status": "ok",
            "environment": settings.environment,
            "http_host": settings.http.host,
            "http_port": settings.http.port,
            "database_url": settings.database.url,
            "agents": coordinator.presence.get_system_health(),
            "threads": coordinator.thread_stats(),
        }

    @mcp.tool(name="login")
    @_instrument_tool("login", cluster=CLUSTER_IDENTITY, agent_arg="agent_id")
    async def login(
        ctx: Context,
        agent_id: str,
        session_minutes: Optional[int] = None,
        role: Optional[str] = None,
        capabilities: Optional[list[str]] = None,
        workspace: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Open a session for an agent and mark it online.

        Parameters
        ----------
        agent_id : str
            The agent logging in.
        session_minutes : int, optional
            Session lifetime, 1..4320 (defaults to the configured session length).
        role, capabilities, workspace : optional
            Identity claims; when any is given they are fingerprinted and checked for drift.

        Returns
        -------
        dict
            {"agent_id", "session_token", "expires_at", "identity": {...} | null}
        """
        result = coordinator.login(
            agent_id,
            session_minutes=session_minutes,
            metadata=_identity_claims(role, capabilities, workspace),
        )
        await _ctx_info_safe(ctx, f"Agent '{agent_id}' logged in until {result['expires_at']}.")
        return result

    @mcp.tool(name="logout")
    @_instrument_tool("logout", cluster=CLUSTER_IDENTITY, agent_arg="agent_id")
    async def logout(ctx: Context, agent_id: str, session_token: str) -> dict[str, Any]:
        """Close the agent's session and mark it offline."""
        return coordinator.logout(agent_id, session_token)

    @mcp.tool(name="update_agent_status")
    @_instrument_tool("update_agent_status", cluster=CLUSTER_IDENTITY, agent_arg="agent_id")
    async def update_agent_status(
        ctx: Context,
        agent_id: str,
        session_token: Optional[str] = None,
        role: Optional[str] = None,
        capabilities: Optional[list[str]] = None,
        workspace: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Replace-merge an agent's status.

        Supplying any identity claim (role, capabilities, workspace or metadata) makes
        the update identity-relevant: the response carries the drift check result.
        """
        return coordinator.update_agent_status(
            agent_id,
            session_token=session_token,
            metadata=_identity_claims(role, capabilities, workspace, metadata),
        )

    @mcp.tool(name="communicate")
    @_instrument_tool("communicate", cluster=CLUSTER_MESSAGING, agent_arg="from_agent")
    async def communicate(
        ctx: Context,
        action: str,
        from_agent: Optional[str] = None,
        to_agent: Optional[str] = None,
        agent_id: Optional[str] = None,
        message_id: Optional[str] = None,
        title: Optional[str] = None,
        content: Optional[str] = None,
        priority: Optional[str] = None,
        security_level: Optional[str] = None,
        session_token: Optional[str] = None,
        limit: Optional[int] = None,
        states: Optional[list[str]] = None,
        requires_reply: Optional[bool] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Send, receive and reply to messages.

        Actions and their parameters
        ----------------------------
        - send: from_agent, to_agent, title, content, [priority, security_level, session_token,
          requires_reply, metadata]. The message is routed into a conversation thread.
        - receive: agent_id, [limit (1..500, default 50), states, session_token]. Newly
          delivered messages move from "sent" to "arrived".
        - reply: message_id, content, [from_agent, title, priority, security_level, session_token].
          Always lands in the parent's thread; the parent is marked replied.
        - mark_read: message_id
        - mark_replied: message_id

        priority is one of low|normal|high|urgent; security_level one of none|basic|signed|encrypted.
        """
        request = parse_communicate(
            {
                "action": action,
                "from_agent": from_agent,
                "to_agent": to_agent,
                "agent_id": agent_id,
                "message_id": message_id,
                "title": title,
                "content": content,
                "priority": priority,
                "security_level": security_level,
                "session_token": session_token,
                "limit": limit,
                "states": states,
                "requires_reply": requires_reply,
                "metadata": metadata,
            }
        )
        return await coordinator.communicate(request)

    @mcp.tool(name="manage_messages")
    @_instrument_tool("manage_messages", cluster=CLUSTER_MESSAGING, agent_arg="agent_id")
    async def manage_messages(
        ctx: Context,
        action: str,
        agent_id: Optional[str] = None,
        message_ids: Optional[list[Any]] = None,
        new_state: Optional[str] = None,
        query: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Bulk mailbox management.

        Actions
        -------
        - mark_read: message_ids (1..1000). Best effort; per-id failures are reported in "errors".
        - update_states: message_ids (1..1000), new_state. Best effort, as above.
        - delete: agent_id, message_ids. Only the agent's own messages are removed.
        - empty_mailbox: agent_id, [query]. query matches subjects case-insensitively.
        """
        request = parse_manage(
            {
                "action": action,
                "agent_id": agent_id,
                "message_ids": message_ids,
                "new_state": new_state,
                "query": query,
                "session_token": session_token,
            }
        )
        return await coordinator.manage(request)

    @mcp.tool(name="agent_sync_status")
    @_instrument_tool("agent_sync_status", cluster=CLUSTER_IDENTITY, agent_arg="agent_id")
    async def agent_sync_status(ctx: Context, agent_id: Optional[str] = None) -> dict[str, Any]:
        """
        Presence, performance and identity-consistency report.

        With agent_id: that agent's status, metrics (uptime, success rate, identity stability,
        ghost/self interaction counts), last identity check and threads. Without: system health,
        online agents, poor performers, high-error agents and thread statistics.
        """
        return coordinator.agent_sync_status(agent_id)

    @mcp.tool(name="list_threads")
    @_instrument_tool("list_threads", cluster=CLUSTER_THREADS, agent_arg="agent_id")
    async def list_threads(ctx: Context, agent_id: str) -> dict[str, Any]:
        """Threads the agent participates in, most recently active first."""
        return coordinator.list_threads(agent_id)

    @mcp.tool(name="get_thread_messages")
    @_instrument_tool("get_thread_messages", cluster=CLUSTER_THREADS)
    async def get_thread_messages(ctx: Context, thread_id: str, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        """Message projections of one thread, oldest first, paginated by limit/offset."""
        return coordinator.get_thread_messages(thread_id, limit, offset)

    @mcp.tool(name="archive_thread")
    @_instrument_tool("archive_thread", cluster=CLUSTER_THREADS)
    async def archive_thread(ctx: Context, thread_id: str) -> dict[str, Any]:
        """Archive an active thread. "archived" is false for unknown or already finished threads."""
        return coordinator.archive_thread(thread_id)

    @mcp.tool(name="close_thread")
    @_instrument_tool("close_thread", cluster=CLUSTER_THREADS)
    async def close_thread(ctx: Context, thread_id: str) -> dict[str, Any]:
        """Close an active thread. "closed" is false for unknown or already finished threads."""
        return coordinator.close_thread(thread_id)

    @mcp.tool(name="thread_stats")
    @_instrument_tool("thread_stats", cluster=CLUSTER_THREADS)
    async def thread_stats(ctx: Context) -> dict[str, Any]:
        """Thread totals per lifecycle state and total message count."""
        return coordinator.thread_stats()

    @mcp.resource("resource://tooling/metrics", mime_type="application/json")
    def tooling_metrics_resource() -> dict[str, Any]:
        """Per-tool call and error counters."""
        return {"generated_at": utcnow().isoformat(), "tools": _tool_metrics_snapshot()}

    @mcp.resource("resource://config/environment", mime_type="application/json")
    def environment_resource() -> dict[str, Any]:
        """The server's environment and HTTP binding."""
        return {
            "environment": settings.environment,
            "database_url": settings.database.url,
            "http": {"host": settings.http.host, "port": settings.http.port, "path": settings.http.path},
        }

    cast(Any, mcp).coordinator = coordinator
    return mcp

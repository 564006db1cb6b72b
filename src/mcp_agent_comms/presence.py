"""Agent presence: one status record per agent plus liveness, session and interaction checks.

Subscribers receive ``MonitorEvent`` objects through ``subscribe``; the
returned callable removes the subscription.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .config import MonitorSettings
from .errors import ValidationError
from .identity import IdentityDriftDetector, IdentityValidation
from .performance import PerformanceTracker
from .utils import iso, utcnow

logger = logging.getLogger(__name__)


class PresenceEvent(str, Enum):
    STATUS_UPDATED = "status_updated"
    IDENTITY_DRIFT = "identity_drift"
    GHOST_INTERACTION = "ghost_interaction"
    SELF_INTERACTION = "self_interaction"
    AGENT_ERROR = "agent_error"
    SESSION_EXPIRED = "session_expired"


@dataclass(slots=True, frozen=True)
class MonitorEvent:
    kind: PresenceEvent
    agent_id: str
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)


PresenceListener = Callable[[MonitorEvent], None]


@dataclass(slots=True)
class AgentStatus:
    agent_id: str
    last_seen: datetime
    last_activity: datetime
    is_online: bool = False
    response_time_ms: float = 0.0
    message_count: int = 0
    error_count: int = 0
    session_token: Optional[str] = None
    session_expires: Optional[datetime] = None
    identity_fingerprint: Optional[str] = None
    role_consistency: float = 1.0
    active_threads: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    last_identity_check: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        # the session token itself is never serialized
        return {
            "agent_id": self.agent_id,
            "is_online": self.is_online,
            "last_seen": iso(self.last_seen),
            "last_activity": iso(self.last_activity),
            "response_time_ms": round(self.response_time_ms, 3),
            "message_count": self.message_count,
            "error_count": self.error_count,
            "session_expires": iso(self.session_expires),
            "identity_fingerprint": self.identity_fingerprint,
            "role_consistency": round(self.role_consistency, 4),
            "active_threads": list(self.active_threads),
            "metadata": dict(self.metadata),
            "last_identity_check": iso(self.last_identity_check),
        }


@dataclass(slots=True, frozen=True)
class InteractionCheck:
    is_valid: bool
    reason: Optional[str] = None
    ghost: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"is_valid": self.is_valid, "ghost": self.ghost}
        if self.reason:
            payload["reason"] = self.reason
        return payload


_UPDATABLE_FIELDS = frozenset(
    {"is_online", "last_seen", "session_token", "session_expires", "active_threads", "metadata"}
)


class AgentPresenceMonitor:
    def __init__(
        self,
        *,
        identity: Optional[IdentityDriftDetector] = None,
        performance: Optional[PerformanceTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        self.identity = identity or IdentityDriftDetector(clock=clock)
        self.performance = performance or PerformanceTracker(clock=clock)
        self._statuses: dict[str, AgentStatus] = {}
        self._validations: dict[str, IdentityValidation] = {}
        self._ghost_counts: dict[str, int] = {}
        self._self_counts: dict[str, int] = {}
        self._listeners: list[PresenceListener] = []

    @classmethod
    def from_settings(
        cls, settings: MonitorSettings, *, clock: Callable[[], datetime] = utcnow
    ) -> AgentPresenceMonitor:
        return cls(
            identity=IdentityDriftDetector(
                fingerprint_history=settings.fingerprint_history,
                consistency_history=settings.consistency_history,
                drift_threshold=settings.drift_threshold,
                validity_threshold=settings.validity_threshold,
                clock=clock,
            ),
            performance=PerformanceTracker(
                response_time_window=settings.response_time_window,
                activity_window=settings.activity_window,
                error_window=settings.error_window,
                clock=clock,
            ),
            clock=clock,
        )

    # -- observers ---------------------------------------------------------

    def subscribe(self, listener: PresenceListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: PresenceEvent, agent_id: str, **data: Any) -> None:
        event = MonitorEvent(kind=kind, agent_id=agent_id, timestamp=self._clock(), data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("presence.listener_failed", extra={"event": kind.value, "agent_id": agent_id})

    # -- status table ------------------------------------------------------

    def get_status(self, agent_id: str) -> Optional[AgentStatus]:
        return self._statuses.get(agent_id)

    def last_validation(self, agent_id: str) -> Optional[IdentityValidation]:
        return self._validations.get(agent_id)

    def all_statuses(self) -> list[AgentStatus]:
        return list(self._statuses.values())

    def online_agents(self) -> list[AgentStatus]:
        return [s for s in self._statuses.values() if s.is_online]

    def _ensure(self, agent_id: str) -> AgentStatus:
        status = self._statuses.get(agent_id)
        if status is None:
            now = self._clock()
            status = AgentStatus(agent_id=agent_id, last_seen=now, last_activity=now)
            self._statuses[agent_id] = status
        return status

    def update_status(self, agent_id: str, **fields: Any) -> AgentStatus:
        """Replace-merge ``fields`` into the agent's status.

        An update that carries ``metadata`` is identity-relevant: the claimed
        identity is fingerprinted and checked for drift.
        """
        if not agent_id:
            raise ValidationError("agent_id is required.")
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown status field(s): {', '.join(sorted(unknown))}.",
                data={"allowed": sorted(_UPDATABLE_FIELDS)},
            )
        status = self._ensure(agent_id)
        for name, value in fields.items():
            if name == "metadata":
                value = dict(value or {})
            elif name == "active_threads":
                value = list(value or [])
            setattr(status, name, value)
        status.last_activity = self._clock()

        if "metadata" in fields:
            validation = self.identity.validate(agent_id, status.metadata)
            self._validations[agent_id] = validation
            status.identity_fingerprint = validation.fingerprint
            status.role_consistency = validation.confidence
            status.last_identity_check = validation.timestamp
            if validation.drift_detected:
                logger.warning(
                    "presence.identity_drift",
                    extra={"agent_id": agent_id, "confidence": validation.confidence},
                )
                self._emit(PresenceEvent.IDENTITY_DRIFT, agent_id, validation=validation.to_dict())

        self._emit(PresenceEvent.STATUS_UPDATED, agent_id, status=status.to_dict())
        return status

    # -- activity ----------------------------------------------------------

    def record_activity(self, agent_id: str) -> None:
        status = self._ensure(agent_id)
        moment = self.performance.record_activity(agent_id)
        status.last_seen = moment
        status.last_activity = moment

    def record_response_time(self, agent_id: str, ms: float) -> None:
        if ms < 0:
            raise ValidationError("response time must be non-negative.", data={"response_time_ms": ms})
        status = self._ensure(agent_id)
        self.performance.record_response_time(agent_id, ms)
        status.response_time_ms = self.performance.average_response_time(agent_id)

    def record_message(self, agent_id: str, response_time_ms: Optional[float] = None) -> None:
        status = self._ensure(agent_id)
        self.performance.record_message(agent_id)
        status.message_count = self.performance.message_count(agent_id)
        self.record_activity(agent_id)
        if response_time_ms is not None:
            self.record_response_time(agent_id, response_time_ms)

    def record_error(self, agent_id: str, error: str | BaseException) -> None:
        status = self._ensure(agent_id)
        message = str(error) if isinstance(error, BaseException) else error
        status.error_count = self.performance.record_error(agent_id, message)
        self._emit(PresenceEvent.AGENT_ERROR, agent_id, error=message, error_count=status.error_count)

    def attach_thread(self, agent_id: str, thread_id: str) -> None:
        status = self._ensure(agent_id)
        if thread_id not in status.active_threads:
            status.active_threads.append(thread_id)

    def detach_thread(self, thread_id: str) -> None:
        for status in self._statuses.values():
            if thread_id in status.active_threads:
                status.active_threads.remove(thread_id)

    # -- sessions ----------------------------------------------------------

    def mark_online(self, agent_id: str, session_token: str, expires_at: datetime) -> AgentStatus:
        status = self.update_status(
            agent_id,
            is_online=True,
            last_seen=self._clock(),
            session_token=session_token,
            session_expires=expires_at,
        )
        self.performance.mark_online(agent_id)
        self.record_activity(agent_id)
        logger.info("presence.online", extra={"agent_id": agent_id, "expires_at": iso(expires_at)})
        return status

    def mark_offline(self, agent_id: str) -> AgentStatus:
        status = self.update_status(
            agent_id,
            is_online=False,
            last_seen=self._clock(),
            session_token=None,
            session_expires=None,
        )
        self.performance.mark_offline(agent_id)
        logger.info("presence.offline", extra={"agent_id": agent_id})
        return status

    def validate_session(self, agent_id: str, token: Optional[str]) -> bool:
        status = self._statuses.get(agent_id)
        if status is None or not token or not status.session_token or status.session_expires is None:
            return False
        if not hmac.compare_digest(status.session_token, token):
            return False
        return status.session_expires > self._clock()

    def cleanup_expired_sessions(self) -> list[str]:
        """Mark every agent whose session has expired offline; returns the agents transitioned."""
        now = self._clock()
        expired = [
            s.agent_id
            for s in self._statuses.values()
            if s.is_online and s.session_expires is not None and s.session_expires <= now
        ]
        for agent_id in expired:
            self.mark_offline(agent_id)
            self._emit(PresenceEvent.SESSION_EXPIRED, agent_id)
        return expired

    # -- interactions ------------------------------------------------------

    def assess_interaction(self, sender_id: str, recipient_id: str) -> InteractionCheck:
        """Classify a sender/recipient pair without touching any counters."""
        if sender_id == recipient_id:
            return InteractionCheck(is_valid=False, reason="Self-interaction detected")
        if recipient_id not in self._statuses:
            return InteractionCheck(is_valid=True, reason="Recipient agent has never been seen", ghost=True)
        return InteractionCheck(is_valid=True)

    def record_interaction(self, sender_id: str, recipient_id: str, check: InteractionCheck) -> None:
        if not check.is_valid:
            count = self._self_counts.get(sender_id, 0) + 1
            self._self_counts[sender_id] = count
            self._emit(PresenceEvent.SELF_INTERACTION, sender_id, count=count)
        elif check.ghost:
            count = self._ghost_counts.get(sender_id, 0) + 1
            self._ghost_counts[sender_id] = count
            self._emit(PresenceEvent.GHOST_INTERACTION, sender_id, recipient_id=recipient_id, count=count)

    def validate_interaction(self, sender_id: str, recipient_id: str) -> InteractionCheck:
        check = self.assess_interaction(sender_id, recipient_id)
        self.record_interaction(sender_id, recipient_id, check)
        return check

    # -- metrics -----------------------------------------------------------

    def uptime(self, agent_id: str) -> float:
        return self.performance.uptime_percent(agent_id)

    def get_agent_metrics(self, agent_id: str) -> Optional[dict[str, Any]]:
        if agent_id not in self._statuses:
            return None
        metrics = self.performance.metrics(agent_id).to_dict()
        metrics.update(
            identity_stability=round(self.identity.identity_stability(agent_id), 4),
            ghost_interaction_count=self._ghost_counts.get(agent_id, 0),
            self_interaction_count=self._self_counts.get(agent_id, 0),
        )
        return metrics

    def get_poor_performing_agents(self, threshold_ms: float = 10000) -> list[AgentStatus]:
        matches = [s for s in self._statuses.values() if s.response_time_ms > threshold_ms]
        return sorted(matches, key=lambda s: s.response_time_ms, reverse=True)

    def get_high_error_agents(self, threshold: int = 5) -> list[AgentStatus]:
        matches = [s for s in self._statuses.values() if s.error_count > threshold]
        return sorted(matches, key=lambda s: s.error_count, reverse=True)

    def get_system_health(self) -> dict[str, Any]:
        statuses = list(self._statuses.values())
        total_messages = sum(s.message_count for s in statuses)
        total_errors = sum(s.error_count for s in statuses)
        average = sum(s.response_time_ms for s in statuses) / len(statuses) if statuses else 0.0
        return {
            "total_agents": len(statuses),
            "online_agents": sum(1 for s in statuses if s.is_online),
            "average_response_time_ms": round(average, 3),
            "total_messages": total_messages,
            "total_errors": total_errors,
            "error_rate": round(total_errors / total_messages, 4) if total_messages else 0.0,
        }

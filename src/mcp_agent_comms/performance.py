"""Per-agent performance windows and the metrics derived from them."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from .utils import utcnow

UPTIME_BUCKETS = 60
_BUCKET = timedelta(minutes=1)


@dataclass(slots=True, frozen=True)
class PerformanceMetrics:
    agent_id: str
    avg_response_time_ms: float
    total_messages: int
    error_count: int
    success_rate: float  # percent
    error_rate: float  # errors per message, 0..1
    throughput_per_minute: float
    uptime_percent: float
    online_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "avg_response_time_ms": round(self.avg_response_time_ms, 3),
            "total_messages": self.total_messages,
            "error_count": self.error_count,
            "success_rate": round(self.success_rate, 2),
            "error_rate": round(self.error_rate, 4),
            "throughput_per_minute": round(self.throughput_per_minute, 4),
            "uptime_percent": round(self.uptime_percent, 2),
            "online_seconds": round(self.online_seconds, 3),
        }


class PerformanceTracker:
    """Bounded FIFO windows per agent; every metric is recomputed from the windows on read."""

    def __init__(
        self,
        *,
        response_time_window: int = 100,
        activity_window: int = 1000,
        error_window: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._response_time_window = response_time_window
        self._activity_window = activity_window
        self._error_window = error_window
        self._clock = clock
        self._response_times: dict[str, deque[float]] = {}
        self._activity: dict[str, deque[datetime]] = {}
        self._message_times: dict[str, deque[datetime]] = {}
        self._errors: dict[str, deque[tuple[datetime, str]]] = {}
        self._message_counts: dict[str, int] = {}
        self._error_counts: dict[str, int] = {}
        # agent -> (current session start or None, accumulated seconds)
        self._online: dict[str, tuple[Optional[datetime], float]] = {}

    def record_response_time(self, agent_id: str, ms: float) -> None:
        self._response_times.setdefault(agent_id, deque(maxlen=self._response_time_window)).append(float(ms))

    def record_activity(self, agent_id: str, at: Optional[datetime] = None) -> datetime:
        moment = at or self._clock()
        self._activity.setdefault(agent_id, deque(maxlen=self._activity_window)).append(moment)
        return moment

    def record_message(self, agent_id: str) -> None:
        self._message_counts[agent_id] = self._message_counts.get(agent_id, 0) + 1
        self._message_times.setdefault(agent_id, deque(maxlen=self._activity_window)).append(self._clock())

    def record_error(self, agent_id: str, error: str) -> int:
        self._errors.setdefault(agent_id, deque(maxlen=self._error_window)).append((self._clock(), error))
        self._error_counts[agent_id] = self._error_counts.get(agent_id, 0) + 1
        return self._error_counts[agent_id]

    def mark_online(self, agent_id: str) -> None:
        start, total = self._online.get(agent_id, (None, 0.0))
        now = self._clock()
        if start is not None:
            total += (now - start).total_seconds()
        self._online[agent_id] = (now, total)

    def mark_offline(self, agent_id: str) -> None:
        start, total = self._online.get(agent_id, (None, 0.0))
        if start is not None:
            total += (self._clock() - start).total_seconds()
        self._online[agent_id] = (None, total)

    def average_response_time(self, agent_id: str) -> float:
        window = self._response_times.get(agent_id)
        if not window:
            return 0.0
        return sum(window) / len(window)

    def error_count(self, agent_id: str) -> int:
        return self._error_counts.get(agent_id, 0)

    def message_count(self, agent_id: str) -> int:
        return self._message_counts.get(agent_id, 0)

    def recent_errors(self, agent_id: str) -> list[str]:
        return [message for _, message in self._errors.get(agent_id, ())]

    def uptime_percent(self, agent_id: str) -> float:
        """Share of the last 60 one-minute buckets holding at least one activity, as a percentage."""
        now = self._clock()
        buckets: set[int] = set()
        for moment in self._activity.get(agent_id, ()):
            age = now - moment
            if age < timedelta(0):
                continue
            index = int(age / _BUCKET)
            if index < UPTIME_BUCKETS:
                buckets.add(index)
        return min(100.0, len(buckets) / UPTIME_BUCKETS * 100.0)

    def throughput_per_minute(self, agent_id: str) -> float:
        cutoff = self._clock() - UPTIME_BUCKETS * _BUCKET
        recent = sum(1 for moment in self._message_times.get(agent_id, ()) if moment >= cutoff)
        return recent / UPTIME_BUCKETS

    def online_seconds(self, agent_id: str) -> float:
        start, total = self._online.get(agent_id, (None, 0.0))
        if start is not None:
            total += (self._clock() - start).total_seconds()
        return total

    def metrics(self, agent_id: str) -> PerformanceMetrics:
        total_messages = self.message_count(agent_id)
        windowed_errors = len(self._errors.get(agent_id, ()))
        if total_messages > 0:
            error_rate = windowed_errors / total_messages
            success_rate = max(0.0, 1.0 - error_rate) * 100.0
        else:
            error_rate = 0.0
            success_rate = 100.0
        return PerformanceMetrics(
            agent_id=agent_id,
            avg_response_time_ms=self.average_response_time(agent_id),
            total_messages=total_messages,
            error_count=self.error_count(agent_id),
            success_rate=success_rate,
            error_rate=error_rate,
            throughput_per_minute=self.throughput_per_minute(agent_id),
            uptime_percent=self.uptime_percent(agent_id),
            online_seconds=self.online_seconds(agent_id),
        )

    def clear(self, agent_id: str) -> None:
        for table in (
            self._response_times,
            self._activity,
            self._message_times,
            self._errors,
            self._message_counts,
            self._error_counts,
            self._online,
        ):
            table.pop(agent_id, None)

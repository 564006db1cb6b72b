"""Session token issuance."""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .errors import ValidationError
from .utils import utcnow


@dataclass(slots=True, frozen=True)
class SessionGrant:
    agent_id: str
    token: str
    expires_at: datetime


class SessionIssuer:
    """Issues opaque tokens; validity is tracked by the presence monitor, not here."""

    def __init__(
        self,
        *,
        default_minutes: int = 4320,
        max_minutes: int = 4320,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._default_minutes = default_minutes
        self._max_minutes = max_minutes
        self._clock = clock

    def issue(self, agent_id: str, minutes: Optional[int] = None) -> SessionGrant:
        if not agent_id:
            raise ValidationError("agent_id is required to open a session.")
        duration = self._default_minutes if minutes is None else minutes
        if duration < 1 or duration > self._max_minutes:
            raise ValidationError(
                f"Session duration must be between 1 and {self._max_minutes} minutes.",
                data={"minutes": duration, "max_minutes": self._max_minutes},
            )
        return SessionGrant(
            agent_id=agent_id,
            token=secrets.token_urlsafe(32),
            expires_at=self._clock() + timedelta(minutes=duration),
        )

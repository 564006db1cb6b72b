"""Identity drift detection.

An agent's claimed identity (role, capabilities, workspace) is hashed into a
fingerprint on every identity-relevant status update. Consistency is the share
of adjacent equal fingerprints in a short history; a drop below the drift
threshold flags drift.
"""

from __future__ import annotations

import hashlib
import json
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .utils import iso, utcnow


@dataclass(slots=True, frozen=True)
class IdentityValidation:
    is_valid: bool
    confidence: float
    drift_detected: bool
    fingerprint: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence": round(self.confidence, 4),
            "drift_detected": self.drift_detected,
            "fingerprint": self.fingerprint,
            "timestamp": iso(self.timestamp),
        }


def identity_fingerprint(agent_id: str, metadata: Optional[Mapping[str, Any]]) -> str:
    """SHA-256 over the canonical JSON of the claimed identity.

    The payload carries no timestamp, so identical claims hash identically.
    Capabilities are order-insensitive.
    """
    claims = metadata or {}
    capabilities = claims.get("capabilities") or []
    if isinstance(capabilities, str):
        capabilities = [capabilities]
    payload = {
        "agent_id": agent_id,
        "role": claims.get("role") or "unknown",
        "capabilities": sorted(str(c) for c in capabilities),
        "workspace": claims.get("workspace") or "",
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def consistency_score(history: Any) -> float:
    items = list(history)
    if len(items) < 2:
        return 1.0
    equal_pairs = sum(1 for prev, cur in zip(items, items[1:]) if prev == cur)
    return equal_pairs / (len(items) - 1)


class IdentityDriftDetector:
    def __init__(
        self,
        *,
        fingerprint_history: int = 10,
        consistency_history: int = 20,
        drift_threshold: float = 0.7,
        validity_threshold: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._fingerprint_history = fingerprint_history
        self._consistency_history = consistency_history
        self._drift_threshold = drift_threshold
        self._validity_threshold = validity_threshold
        self._clock = clock
        self._fingerprints: dict[str, deque[str]] = {}
        self._scores: dict[str, deque[float]] = {}

    def validate(self, agent_id: str, metadata: Optional[Mapping[str, Any]]) -> IdentityValidation:
        fingerprint = identity_fingerprint(agent_id, metadata)
        history = self._fingerprints.setdefault(agent_id, deque(maxlen=self._fingerprint_history))
        history.append(fingerprint)
        consistency = consistency_score(history)
        self._scores.setdefault(agent_id, deque(maxlen=self._consistency_history)).append(consistency)
        # The two thresholds overlap: between them an identity is both valid and drifting
        return IdentityValidation(
            is_valid=consistency > self._validity_threshold,
            confidence=consistency,
            drift_detected=consistency < self._drift_threshold,
            fingerprint=fingerprint,
            timestamp=self._clock(),
        )

    def identity_stability(self, agent_id: str) -> float:
        scores = self._scores.get(agent_id)
        if not scores:
            return 1.0
        return sum(scores) / len(scores)

    def fingerprint_history(self, agent_id: str) -> list[str]:
        return list(self._fingerprints.get(agent_id, ()))

    def clear(self, agent_id: str) -> None:
        self._fingerprints.pop(agent_id, None)
        self._scores.pop(agent_id, None)

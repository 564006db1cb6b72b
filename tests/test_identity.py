from __future__ import annotations

import pytest

from mcp_agent_comms.identity import IdentityDriftDetector, consistency_score, identity_fingerprint


@pytest.fixture
def detector(clock) -> IdentityDriftDetector:
    return IdentityDriftDetector(clock=clock)


CLAIMS = {"role": "planner", "capabilities": ["search", "write"], "workspace": "/repo"}


def test_identical_claims_stay_consistent(detector):
    results = [detector.validate("X", CLAIMS) for _ in range(3)]
    last = results[-1]
    assert last.confidence == 1.0
    assert last.drift_detected is False
    assert last.is_valid is True
    assert len({r.fingerprint for r in results}) == 1


def test_fingerprint_ignores_call_time(clock):
    first = identity_fingerprint("X", CLAIMS)
    clock.advance(hours=5)
    assert identity_fingerprint("X", CLAIMS) == first


def test_fingerprint_ignores_capability_order():
    reordered = dict(CLAIMS, capabilities=["write", "search"])
    assert identity_fingerprint("X", reordered) == identity_fingerprint("X", CLAIMS)


def test_fingerprint_defaults_missing_fields():
    assert identity_fingerprint("X", None) == identity_fingerprint("X", {"role": "unknown", "workspace": ""})
    assert identity_fingerprint("X", CLAIMS) != identity_fingerprint("Y", CLAIMS)


def test_changing_role_every_update_drifts(detector):
    results = [detector.validate("X", dict(CLAIMS, role=f"role-{i}")) for i in range(10)]
    assert results[0].confidence == 1.0
    assert results[0].drift_detected is False
    for result in results[1:]:
        assert result.confidence == 0.0
        assert result.drift_detected is True
        assert result.is_valid is False
    assert detector.identity_stability("X") == pytest.approx(0.1)


def test_overlapping_band_is_valid_and_drifting(clock):
    detector = IdentityDriftDetector(fingerprint_history=3, clock=clock)
    detector.validate("X", CLAIMS)
    detector.validate("X", CLAIMS)
    result = detector.validate("X", dict(CLAIMS, role="other"))
    # one of two adjacent pairs matches
    assert result.confidence == 0.5
    assert result.drift_detected is True
    assert result.is_valid is False

    detector = IdentityDriftDetector(fingerprint_history=4, clock=clock)
    for claims in (CLAIMS, CLAIMS, CLAIMS, dict(CLAIMS, role="other")):
        result = detector.validate("Y", claims)
    assert result.confidence == pytest.approx(2 / 3)
    assert result.is_valid is True
    assert result.drift_detected is True


def test_fingerprint_history_is_bounded(detector):
    for i in range(15):
        detector.validate("X", dict(CLAIMS, role=f"role-{i}"))
    assert len(detector.fingerprint_history("X")) == 10


def test_stability_defaults_and_clear(detector):
    assert detector.identity_stability("nobody") == 1.0
    detector.validate("X", CLAIMS)
    detector.clear("X")
    assert detector.fingerprint_history("X") == []


def test_consistency_score_bounds():
    assert consistency_score([]) == 1.0
    assert consistency_score(["a"]) == 1.0
    assert consistency_score(["a", "b", "b"]) == 0.5
    assert 0.0 <= consistency_score(["a", "b", "c"]) <= 1.0


def test_validation_payload(detector, clock):
    payload = detector.validate("X", CLAIMS).to_dict()
    assert payload["confidence"] == 1.0
    assert payload["timestamp"] == clock.now.isoformat()

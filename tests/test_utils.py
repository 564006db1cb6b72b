from __future__ import annotations

from datetime import datetime, timedelta, timezone

from mcp_agent_comms.utils import ensure_utc, iso


def test_iso_treats_naive_datetimes_as_utc():
    assert iso(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05+00:00"


def test_iso_converts_other_offsets_to_utc():
    plus_two = timezone(timedelta(hours=2))
    assert iso(datetime(2024, 1, 2, 5, 0, tzinfo=plus_two)) == "2024-01-02T03:00:00+00:00"


def test_iso_passes_through_none_and_non_datetimes():
    assert iso(None) is None
    assert iso("already-a-string") == "already-a-string"
    assert ensure_utc(None) is None

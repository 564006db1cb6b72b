from __future__ import annotations

import json

import pytest

from mcp_agent_comms.codec import ENVELOPE_PREFIX, EnvelopeCodec, is_envelope
from mcp_agent_comms.errors import DecryptionFailure, ValidationError


@pytest.fixture
def codec() -> EnvelopeCodec:
    return EnvelopeCodec("test-secret")


def _tamper(envelope: str, **changes) -> str:
    data = json.loads(envelope[len(ENVELOPE_PREFIX) :])
    data.update(changes)
    return ENVELOPE_PREFIX + json.dumps(data)


def test_none_level_is_passthrough(codec):
    assert codec.encode("hello", "a", "b", "none") == "hello"
    assert codec.decode("hello", "b") == "hello"


@pytest.mark.parametrize("level", ["basic", "signed", "encrypted"])
def test_levels_produce_envelopes_readable_by_recipient(codec, level):
    envelope = codec.encode("hello wörld", "a", "b", level)
    assert is_envelope(envelope)
    assert codec.decode(envelope, "b") == "hello wörld"


@pytest.mark.parametrize("level", ["basic", "encrypted"])
def test_confidential_levels_hide_plaintext(codec, level):
    assert "secret plan" not in codec.encode("secret plan", "a", "b", level)


def test_other_process_with_same_secret_can_decode(codec):
    envelope = codec.encode("hello", "a", "b", "encrypted")
    assert EnvelopeCodec("test-secret").decode(envelope, "b") == "hello"


def test_different_secret_cannot_decode(codec):
    envelope = codec.encode("hello", "a", "b", "basic")
    with pytest.raises(DecryptionFailure):
        EnvelopeCodec("other-secret").decode(envelope, "b")


def test_encrypted_envelope_is_bound_to_recipient(codec):
    envelope = codec.encode("hello", "a", "b", "encrypted")
    with pytest.raises(DecryptionFailure):
        codec.decode(envelope, "c")
    with pytest.raises(DecryptionFailure):
        codec.decode(_tamper(envelope, recipient="c"), "c")


def test_signed_content_tampering_is_detected(codec):
    envelope = codec.encode("pay 10", "a", "b", "signed")
    with pytest.raises(DecryptionFailure):
        codec.decode(_tamper(envelope, content="pay 1000"), "b")
    with pytest.raises(DecryptionFailure):
        codec.decode(_tamper(envelope, sender="mallory"), "b")


@pytest.mark.parametrize(
    "broken",
    [
        ENVELOPE_PREFIX + "{not json",
        ENVELOPE_PREFIX + json.dumps({"v": 99, "level": "basic"}),
        ENVELOPE_PREFIX + json.dumps({"v": 1, "level": "basic", "nonce": "!!", "ciphertext": "AA=="}),
        ENVELOPE_PREFIX + json.dumps({"v": 1, "level": "mystery"}),
    ],
)
def test_malformed_envelopes_fail_cleanly(codec, broken):
    with pytest.raises(DecryptionFailure) as excinfo:
        codec.decode(broken, "b")
    assert excinfo.value.recoverable is False


def test_unknown_level_on_encode(codec):
    with pytest.raises(ValidationError):
        codec.encode("hello", "a", "b", "top-secret")

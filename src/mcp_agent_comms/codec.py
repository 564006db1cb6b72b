"""Content envelopes for the four security levels.

``none`` stores content as-is. The other levels wrap it in a JSON envelope
tagged with ``ENVELOPE_PREFIX``:

* ``basic``     AES-GCM under a key shared by the whole deployment
* ``signed``    plaintext plus an HMAC-SHA256 tag keyed per sender
* ``encrypted`` AES-GCM under a per-pair key, bound to sender and recipient,
                plus a sender HMAC over the ciphertext

Keys are derived from one secret with HKDF, so every process configured with
the same ``CODEC_SECRET`` can read every other's envelopes.
"""

from __future__ import annotations

import base64
import json
import os
from typing import Any, Optional, Protocol

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import DecryptionFailure, ValidationError

SECURITY_LEVELS: tuple[str, ...] = ("none", "basic", "signed", "encrypted")
ENVELOPE_PREFIX = "mcp-env:"
_ENVELOPE_VERSION = 1
_NONCE_BYTES = 12


class MessageCodec(Protocol):
    def encode(self, content: str, sender_id: str, recipient_id: str, level: str) -> str: ...

    def decode(self, envelope: str, recipient_id: str) -> str: ...


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: Any) -> bytes:
    if not isinstance(value, str):
        raise DecryptionFailure("Envelope field is missing or malformed.")
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as exc:
        raise DecryptionFailure("Envelope field is not valid base64.") from exc


def is_envelope(content: str) -> bool:
    return content.startswith(ENVELOPE_PREFIX)


class EnvelopeCodec:
    def __init__(self, secret: Optional[str | bytes] = None) -> None:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        # an empty secret means envelopes only survive for this process
        self._secret: bytes = secret or os.urandom(32)

    def _derive(self, label: str) -> bytes:
        hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=label.encode("utf-8"))
        return hkdf.derive(self._secret)

    def _pair_key(self, sender_id: str, recipient_id: str) -> bytes:
        first, second = sorted((sender_id, recipient_id))
        return self._derive(f"pair:{first}\x00{second}")

    def _sign(self, sender_id: str, payload: bytes) -> bytes:
        mac = crypto_hmac.HMAC(self._derive(f"signer:{sender_id}"), hashes.SHA256())
        mac.update(payload)
        return mac.finalize()

    def _verify(self, sender_id: str, payload: bytes, signature: bytes) -> None:
        mac = crypto_hmac.HMAC(self._derive(f"signer:{sender_id}"), hashes.SHA256())
        mac.update(payload)
        try:
            mac.verify(signature)
        except InvalidSignature as exc:
            raise DecryptionFailure("Envelope signature check failed.") from exc

    def encode(self, content: str, sender_id: str, recipient_id: str, level: str) -> str:
        if level not in SECURITY_LEVELS:
            raise ValidationError(
                f"Invalid security level '{level}'. Expected one of: {', '.join(SECURITY_LEVELS)}.",
                data={"provided": level},
            )
        if level == "none":
            return content

        envelope: dict[str, Any] = {
            "v": _ENVELOPE_VERSION,
            "level": level,
            "sender": sender_id,
            "recipient": recipient_id,
        }
        raw = content.encode("utf-8")
        if level == "basic":
            nonce = os.urandom(_NONCE_BYTES)
            envelope["nonce"] = _b64(nonce)
            envelope["ciphertext"] = _b64(AESGCM(self._derive("basic")).encrypt(nonce, raw, None))
        elif level == "signed":
            envelope["content"] = content
            envelope["signature"] = _b64(self._sign(sender_id, raw))
        else:
            nonce = os.urandom(_NONCE_BYTES)
            aad = f"{sender_id}->{recipient_id}".encode("utf-8")
            ciphertext = AESGCM(self._pair_key(sender_id, recipient_id)).encrypt(nonce, raw, aad)
            envelope["nonce"] = _b64(nonce)
            envelope["ciphertext"] = _b64(ciphertext)
            envelope["signature"] = _b64(self._sign(sender_id, ciphertext))
        return ENVELOPE_PREFIX + json.dumps(envelope, separators=(",", ":"))

    def decode(self, envelope: str, recipient_id: str) -> str:
        if not is_envelope(envelope):
            return envelope
        try:
            data = json.loads(envelope[len(ENVELOPE_PREFIX) :])
        except json.JSONDecodeError as exc:
            raise DecryptionFailure("Envelope is not valid JSON.") from exc
        if not isinstance(data, dict) or data.get("v") != _ENVELOPE_VERSION:
            raise DecryptionFailure("Unsupported envelope format.")

        level = data.get("level")
        sender_id = str(data.get("sender", ""))
        try:
            if level == "basic":
                plain = AESGCM(self._derive("basic")).decrypt(_unb64(data.get("nonce")), _unb64(data.get("ciphertext")), None)
                return plain.decode("utf-8")
            if level == "signed":
                content = data.get("content")
                if not isinstance(content, str):
                    raise DecryptionFailure("Signed envelope has no content.")
                self._verify(sender_id, content.encode("utf-8"), _unb64(data.get("signature")))
                return content
            if level == "encrypted":
                if data.get("recipient") != recipient_id:
                    raise DecryptionFailure(
                        "Envelope is not addressed to this agent.",
                        data={"recipient_id": recipient_id},
                    )
                ciphertext = _unb64(data.get("ciphertext"))
                self._verify(sender_id, ciphertext, _unb64(data.get("signature")))
                aad = f"{sender_id}->{recipient_id}".encode("utf-8")
                plain = AESGCM(self._pair_key(sender_id, recipient_id)).decrypt(_unb64(data.get("nonce")), ciphertext, aad)
                return plain.decode("utf-8")
        except InvalidTag as exc:
            raise DecryptionFailure("Envelope content failed authentication.") from exc
        except UnicodeDecodeError as exc:
            raise DecryptionFailure("Envelope content is not UTF-8.") from exc
        raise DecryptionFailure(f"Unknown envelope level '{level}'.")

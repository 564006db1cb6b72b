"""Error kinds raised by the messaging core.

Every error carries a stable ``error_type`` code so the tool layer can turn it
into a structured failure payload without inspecting messages.
"""

from __future__ import annotations

from typing import Any, Optional


class CommsError(Exception):
    error_type: str = "COMMS_ERROR"
    recoverable: bool = True

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.data = data or {}


class ValidationError(CommsError):
    """A required parameter is missing or malformed; nothing was mutated."""

    error_type = "INVALID_ARGUMENT"


class InvalidSession(ValidationError):
    error_type = "INVALID_SESSION"


class MessageNotFound(CommsError):
    error_type = "MESSAGE_NOT_FOUND"

    def __init__(self, message_id: str):
        super().__init__(f"Message '{message_id}' not found.", data={"message_id": message_id})
        self.message_id = message_id


class ThreadNotFound(CommsError):
    error_type = "THREAD_NOT_FOUND"

    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' not found.", data={"thread_id": thread_id})
        self.thread_id = thread_id


class InvalidStateTransition(CommsError):
    error_type = "INVALID_STATE_TRANSITION"

    def __init__(self, message_id: str, current: str, target: str):
        super().__init__(
            f"Message '{message_id}' cannot move from '{current}' to '{target}'.",
            data={"message_id": message_id, "current_state": current, "target_state": target},
        )
        self.message_id = message_id
        self.current = current
        self.target = target


class BatchEmpty(CommsError):
    error_type = "BATCH_EMPTY"

    def __init__(self) -> None:
        super().__init__("message_ids array cannot be empty.")


class BatchTooLarge(CommsError):
    error_type = "BATCH_TOO_LARGE"

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Cannot process more than {limit} messages at once (got {size}).",
            data={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class PersistenceError(CommsError):
    """Raised by the message store adapter; propagated to callers as-is."""

    error_type = "PERSISTENCE_ERROR"


class DecryptionFailure(CommsError):
    error_type = "DECRYPTION_FAILURE"
    recoverable = False

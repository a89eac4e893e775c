"""
Error taxonomy for the chat core.

Every error carries a stable ``code`` so REST handlers and the WebSocket
gateway can report it the same way. "Not found" and "not yours" are the same
error: callers must not learn whether another user's chat exists.
"""

from typing import Any, Optional


class ChatCoreError(Exception):
    """Base exception for the chat core."""

    code = "chat_core_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        payload = {"code": self.code, "detail": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(ChatCoreError):
    """Malformed input or missing required field."""

    code = "validation_error"
    status_code = 400


class ChatNotFound(ChatCoreError):
    """Chat does not exist, is deleted, or belongs to someone else."""

    code = "chat_not_found"
    status_code = 404

    def __init__(self, chat_id: str):
        super().__init__("Chat not found", details={"chat_id": chat_id})
        self.chat_id = chat_id


class MessageNotFound(ChatCoreError):
    """Message does not exist in the chat (or is hidden from the caller)."""

    code = "message_not_found"
    status_code = 404

    def __init__(self, message_id: str):
        super().__init__("Message not found", details={"message_id": message_id})
        self.message_id = message_id


class EditNotAllowed(ChatCoreError):
    """Only user messages can be edited."""

    code = "edit_not_allowed"
    status_code = 422


class EditWindowExpired(ChatCoreError):
    """The edit window for the message has passed."""

    code = "edit_window_expired"
    status_code = 422


class InvalidStatusTransition(ChatCoreError):
    """Delivery status cannot move in the requested direction."""

    code = "invalid_status_transition"
    status_code = 422

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move message status from '{current}' to '{requested}'",
            details={"current": current, "requested": requested},
        )


class InvalidStateTransition(ChatCoreError):
    """Bot reply state machine was asked for an illegal transition."""

    code = "invalid_state_transition"
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move bot reply from '{current}' to '{requested}'",
            details={"current": current, "requested": requested},
        )


class ConflictError(ChatCoreError):
    """Stale version on a chat metadata update."""

    code = "conflict"
    status_code = 409

    def __init__(self, current_version: int, current: dict, fields: Optional[list] = None):
        super().__init__(
            "Chat was modified by another device",
            details={"current_version": current_version, "conflicting_fields": fields or []},
        )
        self.current_version = current_version
        self.current = current
        self.fields = fields or []

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["current"] = self.current
        return payload


class GenerationInProgress(ChatCoreError):
    """A bot reply is already being generated for the chat."""

    code = "generation_in_progress"
    status_code = 409


class GenerationError(ChatCoreError):
    """The generation collaborator failed."""

    code = "generation_failed"
    status_code = 502


class GenerationTimeout(GenerationError):
    """The generation collaborator did not finish in time."""

    code = "generation_timeout"
    status_code = 504


class TransientError(ChatCoreError):
    """Temporary infrastructure failure; the caller may retry."""

    code = "transient_error"
    status_code = 503

"""
ChatRelay error types.

Each error carries a stable ``code`` that is sent to WebSocket clients in
``error`` frames and mapped to an HTTP status by the REST layer.
"""
from typing import Any, Optional


class RelayError(Exception):
    code = "relay_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class Unauthorized(RelayError):
    """No session, or the presented token did not verify."""
    code = "unauthorized"
    status_code = 401


class AuthTimeout(RelayError):
    """The identity provider did not answer within the configured bound."""
    code = "auth_timeout"
    status_code = 504


class Forbidden(RelayError):
    """Authenticated, but not allowed to act on the conversation."""
    code = "forbidden"
    status_code = 403


class PersistenceFailed(RelayError):
    """The storage layer rejected a write; nothing was fanned out."""
    code = "persistence_failed"
    status_code = 503


class DeliveryExpired(RelayError):
    """A message could not be delivered within the retry budget."""
    code = "delivery_expired"
    status_code = 410

    def __init__(self, message_id: str, recipient: str, conversation_id: str, attempts: int) -> None:
        self.message_id = message_id
        self.recipient = recipient
        self.conversation_id = conversation_id
        self.attempts = attempts
        super().__init__(
            f"Message {message_id} undeliverable to {recipient} after {attempts} attempts",
            {
                "message_id": message_id,
                "recipient": recipient,
                "conversation_id": conversation_id,
                "attempts": attempts,
            },
        )


class ConversationNotFound(RelayError):
    code = "conversation_not_found"
    status_code = 404

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' not found")


class InvalidFrame(RelayError):
    """A client frame could not be parsed or named an unknown type."""
    code = "invalid_frame"
    status_code = 400

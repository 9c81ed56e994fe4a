"""
Error taxonomy for the relay.

Every error carries the HTTP status it maps to; the handlers registered in
``smsrelay.main`` render them as ``{"status": "error", "message": ..., "code": ...}``.
"""

from typing import Any, Optional


class RelayError(Exception):
    """Base exception for the relay."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Any] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class InvalidPhoneFormat(RelayError):
    """Raised when a phone number cannot be normalized."""

    def __init__(self, message: str = "Invalid US phone number", details: Optional[Any] = None):
        super().__init__(message, code="INVALID_PHONE_FORMAT", status_code=400, details=details)


class InvalidRequest(RelayError):
    def __init__(self, message: str = "Invalid request", details: Optional[Any] = None):
        super().__init__(message, code="INVALID_REQUEST", status_code=400, details=details)


class Unauthorized(RelayError):
    def __init__(self, message: str = "Unauthorized", details: Optional[Any] = None):
        super().__init__(message, code="UNAUTHORIZED", status_code=401, details=details)


class NotFound(RelayError):
    def __init__(self, message: str = "User not found", details: Optional[Any] = None):
        super().__init__(message, code="NOT_FOUND", status_code=404, details=details)


class StoreUnavailable(RelayError):
    """Raised when the subscriber store fails a query or commit."""

    def __init__(self, message: str = "Subscriber store unavailable", details: Optional[Any] = None):
        super().__init__(message, code="STORE_UNAVAILABLE", status_code=500, details=details)


class CarrierError(RelayError):
    """Raised when the SMS carrier rejects a send or cannot be reached."""

    def __init__(self, message: str = "SMS carrier error", details: Optional[Any] = None):
        super().__init__(message, code="CARRIER_ERROR", status_code=500, details=details)


class BroadcastAborted(CarrierError):
    """
    Raised when a broadcast stops at a failing recipient.

    ``sent`` is the number of recipients that were sent to before the failure.
    """

    def __init__(self, message: str, sent: int):
        self.sent = sent
        super().__init__(message, details={"sent": sent})
        self.code = "BROADCAST_ABORTED"


class ChatError(RelayError):
    """Raised when the Slack Web API answers ``ok: false`` or cannot be reached."""

    def __init__(self, message: str = "Slack API error", error: Optional[str] = None):
        self.error = error
        super().__init__(message, code="CHAT_ERROR", status_code=502, details={"error": error})

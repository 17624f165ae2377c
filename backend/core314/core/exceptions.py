"""
Core314 Automation Engine - Error Taxonomy
===========================================

Domain exceptions raised by the engine. The API layer maps each class to
an HTTP status and renders ``{"success": false, "error": message}``.
"""

from typing import Any, Optional


class AutomationError(Exception):
    """Base class for all engine errors."""

    status_code: int = 500
    error_code: str = "AUTOMATION_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthenticationError(AutomationError):
    """Missing, invalid, expired or under-scoped credential."""

    status_code = 401
    error_code = "AUTHENTICATION_FAILED"


class NotFoundError(AutomationError):
    """No matching flow, queue entry or rule."""

    status_code = 404
    error_code = "NOT_FOUND"


class ValidationError(AutomationError):
    """Malformed request body or flow definition."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class InvalidTransitionError(AutomationError):
    """Attempt to move a queue entry or event out of a terminal status."""

    status_code = 409
    error_code = "INVALID_TRANSITION"


class PersistenceError(AutomationError):
    """Store read/write failed. Fatal for the current request."""

    status_code = 500
    error_code = "PERSISTENCE_ERROR"


class ImmutableRecordError(PersistenceError):
    """Write attempted against an append-only record."""

    error_code = "IMMUTABLE_RECORD"


class DeliveryError(AutomationError):
    """
    An external side-effect call failed.

    Captured per channel and never aborts sibling deliveries. The executor
    retries these within the queue entry's attempt budget.
    """

    status_code = 502
    error_code = "DELIVERY_FAILED"
    retryable = True

    def __init__(
        self,
        message: str,
        channel: Optional[str] = None,
        http_status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.channel = channel
        self.http_status = http_status


class ActionError(DeliveryError):
    """Action could not be performed and retrying will not help."""

    error_code = "ACTION_FAILED"
    retryable = False

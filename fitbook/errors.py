from __future__ import annotations

"""
EMBED_SUMMARY: Domain error taxonomy raised by services and mapped to HTTP responses in one place.
EMBED_TAGS: errors, exceptions, http, booking, credits
"""

from typing import Optional


class DomainError(Exception):
    """Base error for business rule violations.

    Services raise these; the API layer renders them with the shared error envelope.
    """

    code = "DOMAIN_ERROR"
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.field = field
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"code": self.code, "field": self.field, "message": self.message}


class NotFoundError(DomainError):
    code = "RESOURCE_NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class UnauthorizedError(DomainError):
    code = "UNAUTHORIZED"
    status_code = 403
    default_message = "Not allowed to act on this resource"


class ActionNotAllowedError(DomainError):
    code = "ACTION_NOT_ALLOWED"
    status_code = 409
    default_message = "Action not allowed in the current state"


class ValidationError(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class InvalidPriceError(ValidationError):
    code = "INVALID_PRICE"
    default_message = "Class price must be greater than zero"


class InsufficientCreditsError(DomainError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402
    default_message = "Not enough credits"


class ClassFullError(DomainError):
    code = "CLASS_FULL"
    status_code = 409
    default_message = "Class is full"


class ClassCancelledError(DomainError):
    code = "CLASS_CANCELLED"
    status_code = 409
    default_message = "Class has been cancelled"


class ClassCompletedError(DomainError):
    code = "CLASS_COMPLETED"
    status_code = 409
    default_message = "Class has already taken place"


class ClassStartedError(DomainError):
    code = "CLASS_STARTED"
    status_code = 409
    default_message = "Class has already started"


class TooLateError(DomainError):
    code = "TOO_LATE"
    status_code = 409
    default_message = "Booking window has closed"


class TooEarlyError(DomainError):
    code = "TOO_EARLY"
    status_code = 409
    default_message = "Booking window is not open yet"


class MaxActiveBookingsError(DomainError):
    code = "MAX_ACTIVE_BOOKINGS_EXCEEDED"
    status_code = 409
    default_message = "Too many active bookings"


class PaymentGatewayError(DomainError):
    code = "PAYMENT_GATEWAY_ERROR"
    status_code = 502
    default_message = "Payment provider request failed"


class WebhookSignatureError(DomainError):
    code = "INVALID_SIGNATURE"
    status_code = 400
    default_message = "Invalid webhook signature"

"""Error taxonomy for the reservation and payment engine.

Every error carries the short ``error`` code and the customer-facing
``message`` the routes render as JSON, plus the HTTP status to use.
"""
from __future__ import annotations


class BookingError(Exception):
    error = "booking_error"
    status_code = 400
    default_message = "The booking request could not be processed."

    def __init__(self, message: str | None = None, *, details: dict[str, object] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"error": self.error, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BookingError):
    error = "invalid_payload"
    status_code = 400
    default_message = "The request is invalid."


class OfferNotApplicableError(ValidationError):
    error = "offer_not_applicable"
    default_message = "Offer no longer valid."

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message, details={"reason": reason})
        self.reason = reason


class NotFoundError(BookingError):
    error = "not_found"
    status_code = 404
    default_message = "Resource not found."


class ConflictError(BookingError):
    error = "conflict"
    status_code = 409
    default_message = "Scheduling conflict."


class IllegalTransitionError(BookingError):
    error = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(
            message or f"Cannot change booking status from '{current}' to '{target}'",
            details={"from": current, "to": target},
        )


class AuthenticityError(BookingError):
    """Settlement data could not be authenticated against the provider."""

    error = "payment_verification_failed"
    status_code = 400
    default_message = "Payment could not be verified."


class EligibilityViolation(BookingError):
    """Offer usage cap exceeded between quote and settlement."""

    error = "offer_no_longer_valid"
    status_code = 409
    default_message = "Offer no longer valid."

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message, details={"reason": reason})
        self.reason = reason


class UpstreamError(BookingError):
    error = "upstream_unavailable"
    status_code = 502
    default_message = "A dependent service is currently unavailable. Please retry."


class ForbiddenError(BookingError):
    error = "forbidden"
    status_code = 403
    default_message = "You are not allowed to perform this action."

"""Booking engine error taxonomy.

Every business-rule rejection raised by the engine derives from
``BookingError`` and carries a machine-readable ``reason`` plus the HTTP status
the API layer reports for it.
"""

from __future__ import annotations


class BookingError(Exception):
    """Base class for rejections surfaced to the caller."""

    reason = "booking_error"
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.reason.replace("_", " ")
        super().__init__(self.message)


class NotFound(BookingError):
    """A listing, booking or review does not exist (or is not visible)."""

    reason = "not_found"
    status_code = 404


class Unauthorized(BookingError):
    """The acting principal may not perform the attempted operation."""

    reason = "not_authorized"
    status_code = 403


class InvalidState(BookingError):
    """The requested transition is illegal from the current status."""

    reason = "invalid_state"
    status_code = 409


class InvalidDateRange(BookingError):
    """Check-out not after check-in, or check-in in the past."""

    reason = "invalid_dates"
    status_code = 400


class CapacityExceeded(BookingError):
    """Requested guests exceed the listing's maximum."""

    reason = "capacity_exceeded"
    status_code = 400


class Conflict(BookingError):
    """The requested dates overlap an open booking on the same listing."""

    reason = "overlapping_dates"
    status_code = 409


class PaymentGatewayError(BookingError):
    """Upstream gateway failure or a non-success payment status."""

    reason = "payment_gateway_error"
    status_code = 502


class UpstreamEventUnrecognized(Exception):
    """A gateway event the engine does not handle. Never surfaced to callers."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"Unrecognized gateway event: {event_type}")

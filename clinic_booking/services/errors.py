"""Booking outcomes that callers are expected to handle."""


class BookingError(Exception):
    """Base exception for slot booking operations."""

    reason = 'booking failed'

    def __init__(self, reason: str | None = None):
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class ValidationError(BookingError):
    """Raised when a request is malformed or refers to an unusable slot."""

    reason = 'invalid request'


class NotFoundError(ValidationError):
    """Raised when a doctor or appointment cannot be located."""

    reason = 'not found'


class InvalidTransitionError(ValidationError):
    """Raised when an appointment is already cancelled or completed."""

    reason = 'appointment is already closed'


class ConflictError(BookingError):
    """Raised when the requested slot is taken or the race for it was lost."""

    reason = 'slot unavailable'


class UnavailableError(BookingError):
    """Raised when the doctor is not accepting bookings."""

    reason = 'doctor unavailable'


class IntegrityError(BookingError):
    """Raised when booked slots and appointments disagree for a doctor/day."""

    reason = 'booked slots are inconsistent with appointments'


class TransientError(BookingError):
    """Raised for storage failures that are safe to retry."""

    reason = 'storage temporarily unavailable'

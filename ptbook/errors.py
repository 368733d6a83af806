"""Error taxonomy shared by services and the HTTP layer.

Every error carries a short user-facing message, a machine-readable code and
the HTTP status the request boundary answers with.
"""
from __future__ import annotations


class BookingError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class Unauthenticated(BookingError):
    code = "unauthenticated"
    status_code = 401


class AccessDenied(BookingError):
    code = "access_denied"
    status_code = 403


class NotFound(BookingError):
    code = "not_found"
    status_code = 404


class ValidationError(BookingError):
    code = "validation_error"
    status_code = 400


class SlotUnavailable(BookingError):
    code = "slot_unavailable"
    status_code = 409


class InsufficientPoints(BookingError):
    code = "insufficient_points"
    status_code = 409


class CancellationWindowExpired(BookingError):
    code = "cancellation_window_expired"
    status_code = 409


class InvalidTransition(BookingError):
    code = "invalid_transition"
    status_code = 409


class DependencyFailure(BookingError):
    code = "dependency_failure"
    status_code = 503

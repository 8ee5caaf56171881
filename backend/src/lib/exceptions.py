"""
Application exception hierarchy.

Generic HTTP-flavoured errors plus the booking error taxonomy raised by the
booking core. Every error carries the status code the API layer answers with,
so the core never has to know about FastAPI.
"""
from typing import Optional, Dict, Any

from fastapi import status


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "resource_id": resource_id},
        )


class UnauthorizedException(AppException):
    """Unauthenticated access exception."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
        )


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details or {},
        )


class ConflictException(AppException):
    """Resource conflict exception."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details or {},
        )


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str, errors: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": errors or {}},
        )


# ===== Booking errors =====

class BookingError(AppException):
    """
    Base for errors raised by the booking core.

    A raised BookingError guarantees the booking was not mutated.
    """

    code = "booking_error"
    default_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("code", self.code)
        super().__init__(
            message=message,
            status_code=self.default_status,
            details=details,
        )


class InvalidTransition(BookingError):
    """Command is not legal from the booking's current status."""

    code = "invalid_transition"
    default_status = status.HTTP_409_CONFLICT


class Unauthorized(BookingError):
    """Actor role (or actor identity) may not issue this command."""

    code = "unauthorized"
    default_status = status.HTTP_403_FORBIDDEN


class VersionConflict(BookingError):
    """Optimistic concurrency check failed; re-read and retry."""

    code = "version_conflict"
    default_status = status.HTTP_409_CONFLICT

    def __init__(self, booking_id: str, expected_version: int, current_version: int):
        super().__init__(
            f"Booking {booking_id} is at version {current_version}, "
            f"expected {expected_version}",
            details={
                "booking_id": booking_id,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )
        self.expected_version = expected_version
        self.current_version = current_version


class PendingChargesUnresolved(BookingError):
    """Completion blocked until every additional charge is approved or rejected."""

    code = "pending_charges_unresolved"
    default_status = status.HTTP_409_CONFLICT


class InvalidOffer(BookingError):
    """Negotiation price must be positive."""

    code = "invalid_offer"
    default_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class PaymentCaptureFailed(BookingError):
    """Gateway declined or timed out; booking status is unchanged."""

    code = "payment_capture_failed"
    default_status = status.HTTP_402_PAYMENT_REQUIRED


class GuardViolation(BookingError):
    """Catch-all for invariant breaches (e.g. provider acting before admin approval)."""

    code = "guard_violation"
    default_status = status.HTTP_422_UNPROCESSABLE_ENTITY

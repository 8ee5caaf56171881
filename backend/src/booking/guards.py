"""
Guard functions consulted by the state machine.

Each guard either returns None or raises a BookingError. Guards never build
a new document.
"""
from typing import Any, Iterable, Mapping, Optional

from src.booking.document import (
    ActorRole,
    BookingDocument,
    BookingStatus,
    ChargeStatus,
    PaymentPreference,
    PaymentStatus,
)
from src.booking.pricing import expected_total, fee
from src.lib.exceptions import GuardViolation, InvalidTransition, Unauthorized

IMMUTABLE_FIELDS = (
    "id",
    "client_id",
    "created_at",
    "title",
    "service_category",
    "notes",
    "scheduled_at",
    "media_urls",
    "is_negotiable",
    "system_fee_percentage",
)


def require_not_terminal(booking: BookingDocument, command: str) -> None:
    if booking.is_terminal:
        raise InvalidTransition(
            f"Booking is {booking.status.value}; '{command}' is not allowed",
            details={"status": booking.status.value, "command": command},
        )


def require_status(
    booking: BookingDocument,
    allowed: Iterable[BookingStatus],
    command: str,
) -> None:
    allowed = frozenset(allowed)
    if booking.status not in allowed:
        raise InvalidTransition(
            f"Cannot {command} a booking in status {booking.status.value}",
            details={
                "status": booking.status.value,
                "command": command,
                "allowed": sorted(s.value for s in allowed),
            },
        )


def require_client(booking: BookingDocument, actor_id: Optional[str]) -> None:
    if actor_id is not None and actor_id != booking.client_id:
        raise Unauthorized(
            "Only the booking's client may issue this command",
            details={"actor_id": actor_id},
        )


def require_assigned_provider(
    booking: BookingDocument,
    actor_id: Optional[str],
    may_claim: bool = False,
) -> None:
    """
    The acting provider must be the one assigned to the booking.

    With ``may_claim`` an unassigned booking can be taken by any provider
    (accepting a job or an offer is how a provider gets assigned).
    """
    if booking.provider_id is None:
        if may_claim:
            return
        raise Unauthorized("No provider is assigned to this booking")
    if actor_id is not None and actor_id != booking.provider_id:
        raise Unauthorized(
            "Booking is assigned to another provider",
            details={"actor_id": actor_id},
        )


def require_admin_approved(booking: BookingDocument) -> None:
    """Providers may not act on a booking the admin has not approved."""
    if booking.admin_rejected:
        raise GuardViolation("Booking was rejected by an admin")
    if not booking.admin_approved:
        raise GuardViolation(
            "Booking is awaiting admin approval",
            details={"admin_approved": False},
        )


def require_negotiable(booking: BookingDocument) -> None:
    if not booking.is_negotiable:
        raise GuardViolation("Booking is not negotiable")


def require_pay_first(booking: BookingDocument) -> None:
    if booking.payment_preference is not PaymentPreference.PAY_FIRST:
        raise GuardViolation("Upfront payment applies to pay_first bookings only")


def require_upfront_paid(booking: BookingDocument) -> None:
    """pay_first bookings cannot start work until the upfront payment has cleared."""
    if booking.payment_preference is PaymentPreference.PAY_FIRST and not booking.is_paid_upfront:
        raise GuardViolation(
            "Upfront payment is required before work can start",
            details={"payment_preference": booking.payment_preference.value},
        )


def require_no_payment_in_flight(booking: BookingDocument) -> None:
    if booking.payment_status is PaymentStatus.PENDING:
        raise GuardViolation("A payment capture is in progress for this booking")


def require_reason(payload: Mapping[str, Any], key: str = "reason") -> str:
    reason = payload.get(key)
    if not isinstance(reason, str) or not reason.strip():
        raise GuardViolation(f"'{key}' is required", details={"field": key})
    return reason.strip()


def check_invariants(before: BookingDocument, after: BookingDocument) -> None:
    """
    Cross-field invariants every transition result must satisfy.

    Raised errors mean a handler produced a broken document; the caller
    discards ``after``.
    """
    if after.payment_preference is not before.payment_preference:
        raise GuardViolation("payment_preference is immutable")
    if before.is_paid_upfront and not after.is_paid_upfront:
        raise GuardViolation("is_paid_upfront cannot revert")
    if after.version != before.version:
        raise GuardViolation("version is owned by the hosting service")

    previous = {c.id: c for c in before.additional_charges}
    if len(after.additional_charges) < len(previous):
        raise GuardViolation("additional charges are append-only")
    for charge in after.additional_charges:
        old = previous.get(charge.id)
        if old is not None and old.status is not ChargeStatus.PENDING and old != charge:
            raise GuardViolation(
                "resolved additional charges are immutable",
                details={"charge_id": charge.id},
            )

    if after.system_fee != fee(after.provider_price, after.system_fee_percentage):
        raise GuardViolation("system_fee is out of date")
    if after.total_amount != expected_total(after):
        raise GuardViolation("total_amount is out of date")

    for name in IMMUTABLE_FIELDS:
        if getattr(after, name) != getattr(before, name):
            raise GuardViolation(f"{name} is immutable", details={"field": name})


def actor_may_view(booking: BookingDocument, role: ActorRole, actor_id: Optional[str]) -> bool:
    """Read access: admins and system see everything, parties see their own bookings."""
    if role in (ActorRole.ADMIN, ActorRole.SYSTEM):
        return True
    if role is ActorRole.CLIENT:
        return actor_id == booking.client_id
    return booking.provider_id is None or booking.provider_id == actor_id

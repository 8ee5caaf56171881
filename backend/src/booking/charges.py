"""
Additional-charge ledger.

Providers request extra money after committing to a job; the client
approves or rejects each request on its own. Charges are append-only and a
resolved charge never changes again.
"""
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from src.booking.document import AdditionalCharge, BookingDocument, ChargeStatus
from src.booking.pricing import reprice, to_money
from src.lib.exceptions import GuardViolation, InvalidTransition


def add_charge(
    booking: BookingDocument,
    reason: Any,
    amount: Any,
    now: datetime,
) -> BookingDocument:
    if not isinstance(reason, str) or not reason.strip():
        raise GuardViolation("Additional charge needs a reason", details={"field": "reason"})
    value = to_money(amount)
    if value <= 0:
        raise GuardViolation(
            "Additional charge amount must be greater than zero",
            details={"amount": str(amount)},
        )

    charge = AdditionalCharge(
        id=uuid4().hex,
        reason=reason.strip(),
        amount=value,
        status=ChargeStatus.PENDING,
        requested_at=now,
    )
    # Pending charges do not count toward the total; reprice keeps that explicit
    return reprice(
        booking,
        additional_charges=booking.additional_charges + (charge,),
        updated_at=now,
    )


def _resolve(
    booking: BookingDocument,
    charge_id: Any,
    status: ChargeStatus,
    now: datetime,
    rejection_reason: Optional[str] = None,
) -> BookingDocument:
    charge = booking.charge(str(charge_id)) if charge_id else None
    if charge is None:
        raise GuardViolation(
            "Additional charge not found",
            details={"charge_id": charge_id},
        )
    if charge.status is not ChargeStatus.PENDING:
        raise InvalidTransition(
            f"Additional charge is already {charge.status.value}",
            details={"charge_id": charge.id, "charge_status": charge.status.value},
        )

    resolved = charge.model_copy(update={
        "status": status,
        "resolved_at": now,
        "rejection_reason": rejection_reason,
    })
    charges = tuple(resolved if c.id == charge.id else c for c in booking.additional_charges)
    return reprice(booking, additional_charges=charges, updated_at=now)


def approve_charge(booking: BookingDocument, charge_id: Any, now: datetime) -> BookingDocument:
    """Approved charges are added to ``total_amount``."""
    return _resolve(booking, charge_id, ChargeStatus.APPROVED, now)


def reject_charge(
    booking: BookingDocument,
    charge_id: Any,
    now: datetime,
    reason: Optional[str] = None,
) -> BookingDocument:
    reason = reason.strip() if isinstance(reason, str) and reason.strip() else None
    return _resolve(booking, charge_id, ChargeStatus.REJECTED, now, rejection_reason=reason)


def has_pending_charges(booking: BookingDocument) -> bool:
    return booking.has_pending_charges

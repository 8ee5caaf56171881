"""
Payment settlement - upfront, pay-later, escrow hold/release and refunds.

Cash is trust-based and settles immediately. gcash/maya go through gateway
escrow: a settlement starts ``pending`` with a CapturePayment intent, becomes
``held`` when the gateway confirms, then ``released`` or ``refunded`` once
the matching intent has been executed.

The booking's ``payment_status`` is always derived from its settlements.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Tuple
from uuid import uuid4

from src.booking.document import (
    BookingDocument,
    BookingStatus,
    ChargeStatus,
    PaymentMethod,
    PaymentStatus,
    Settlement,
    SettlementPurpose,
    SettlementStatus,
)
from src.booking.guards import require_no_payment_in_flight, require_pay_first
from src.booking.intents import (
    CapturePayment,
    Intent,
    NotificationEvent,
    NotifyClient,
    NotifyProvider,
    RefundEscrow,
    ReleaseEscrow,
)
from src.booking.pricing import round_money
from src.lib.exceptions import GuardViolation, InvalidTransition, PendingChargesUnresolved

ZERO = Decimal("0")

# First match wins
_STATUS_PRECEDENCE = (
    (SettlementStatus.PENDING, PaymentStatus.PENDING),
    (SettlementStatus.HELD, PaymentStatus.HELD),
    (SettlementStatus.RELEASED, PaymentStatus.RELEASED),
    (SettlementStatus.REFUNDED, PaymentStatus.REFUNDED),
)

Result = Tuple[BookingDocument, List[Intent]]


def derive_payment_status(settlements: Iterable[Settlement]) -> PaymentStatus:
    statuses = {s.status for s in settlements}
    for settlement_status, payment_status in _STATUS_PRECEDENCE:
        if settlement_status in statuses:
            return payment_status
    return PaymentStatus.NONE


def parse_method(value: Any) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise GuardViolation(
            "Unsupported payment method",
            details={"method": value, "allowed": [m.value for m in PaymentMethod]},
        )


def _with_settlements(
    booking: BookingDocument,
    settlements: Tuple[Settlement, ...],
    **updates: Any,
) -> BookingDocument:
    updates["settlements"] = settlements
    updates["payment_status"] = derive_payment_status(settlements)
    return booking.model_copy(update=updates)


def _replace(booking: BookingDocument, settlement: Settlement) -> Tuple[Settlement, ...]:
    return tuple(settlement if s.id == settlement.id else s for s in booking.settlements)


def _require_minimum(method: PaymentMethod, amount: Decimal, minimum: Decimal) -> None:
    if method.is_electronic and amount < minimum:
        raise GuardViolation(
            f"Minimum {method.value} payment is {minimum}",
            details={"amount": str(amount), "minimum": str(minimum), "method": method.value},
        )


def _held_settlements(booking: BookingDocument) -> List[Settlement]:
    return [s for s in booking.settlements if s.status is SettlementStatus.HELD]


def _release_intents(booking: BookingDocument) -> List[Intent]:
    return [
        ReleaseEscrow(
            booking_id=booking.id,
            settlement_id=s.id,
            amount=s.amount,
            external_ref=s.external_ref,
        )
        for s in _held_settlements(booking)
    ]


def _start_settlement(
    booking: BookingDocument,
    purpose: SettlementPurpose,
    method: PaymentMethod,
    amount: Decimal,
    source_ref: Optional[str],
    now: datetime,
) -> Tuple[Settlement, List[Intent]]:
    """Cash settles on the spot; electronic methods wait for the gateway."""
    if method.is_electronic:
        settlement = Settlement(
            id=uuid4().hex,
            purpose=purpose,
            method=method,
            amount=amount,
            status=SettlementStatus.PENDING,
            created_at=now,
            updated_at=now,
            source_ref=source_ref,
        )
        intent = CapturePayment(
            booking_id=booking.id,
            settlement_id=settlement.id,
            amount=amount,
            method=method,
            purpose=purpose,
            source_ref=source_ref,
        )
        return settlement, [intent]

    settlement = Settlement(
        id=uuid4().hex,
        purpose=purpose,
        method=method,
        amount=amount,
        status=SettlementStatus.RELEASED,
        created_at=now,
        updated_at=now,
    )
    return settlement, []


def _mark_upfront_paid(
    booking: BookingDocument,
    settlement: Settlement,
    settlements: Tuple[Settlement, ...],
    now: datetime,
) -> Result:
    updated = _with_settlements(
        booking,
        settlements,
        is_paid_upfront=True,
        upfront_paid_amount=settlement.amount,
        payment_method=settlement.method,
        updated_at=now,
    )
    intents: List[Intent] = [
        NotifyProvider(
            booking_id=booking.id,
            provider_id=booking.provider_id,
            event=NotificationEvent.UPFRONT_PAYMENT_RECEIVED,
            detail={"amount": settlement.amount, "method": settlement.method.value},
        )
    ]
    return updated, intents


def _mark_paid(
    booking: BookingDocument,
    settlement: Settlement,
    settlements: Tuple[Settlement, ...],
    now: datetime,
) -> Result:
    """Final (or post-upfront delta) payment cleared: booking moves to payment_received."""
    additional_paid = booking.additional_paid_amount
    if settlement.purpose is SettlementPurpose.ADDITIONAL:
        additional_paid += settlement.amount

    updated = _with_settlements(
        booking,
        settlements,
        status=BookingStatus.PAYMENT_RECEIVED,
        payment_method=settlement.method,
        final_amount=round_money(booking.total_amount),
        additional_paid_amount=additional_paid,
        paid_at=now,
        updated_at=now,
    )
    # The client already confirmed completion, so captured escrow goes straight out
    intents = _release_intents(updated)
    intents.append(
        NotifyProvider(
            booking_id=booking.id,
            provider_id=booking.provider_id,
            event=NotificationEvent.PAYMENT_RECEIVED,
            detail={"amount": settlement.amount, "method": settlement.method.value},
        )
    )
    return updated, intents


def pay_upfront(
    booking: BookingDocument,
    method: Any,
    source_ref: Optional[str],
    now: datetime,
    minimum: Decimal,
) -> Result:
    """pay_first: the client pays the current total before work starts."""
    require_pay_first(booking)
    if booking.is_paid_upfront:
        raise InvalidTransition("Upfront payment was already made")
    require_no_payment_in_flight(booking)

    method = parse_method(method)
    amount = round_money(booking.total_amount)
    _require_minimum(method, amount, minimum)

    settlement, intents = _start_settlement(
        booking, SettlementPurpose.UPFRONT, method, amount, source_ref, now
    )
    settlements = booking.settlements + (settlement,)
    if settlement.status is SettlementStatus.RELEASED:
        return _mark_upfront_paid(booking, settlement, settlements, now)
    return _with_settlements(booking, settlements, updated_at=now), intents


def pay(
    booking: BookingDocument,
    method: Any,
    source_ref: Optional[str],
    now: datetime,
    minimum: Decimal,
) -> Result:
    """
    Settle whatever is still due in ``pending_payment``.

    For a pay_first booking this is just the delta left by approved
    additional charges; for pay_later it is the full total.
    """
    require_no_payment_in_flight(booking)
    method = parse_method(method)
    amount = round_money(booking.amount_due)
    purpose = SettlementPurpose.ADDITIONAL if booking.is_paid_upfront else SettlementPurpose.FINAL

    if amount <= ZERO:
        updated = booking.model_copy(update={
            "status": BookingStatus.PAYMENT_RECEIVED,
            "final_amount": round_money(booking.total_amount),
            "paid_at": now,
            "updated_at": now,
        })
        return updated, []

    _require_minimum(method, amount, minimum)
    settlement, intents = _start_settlement(booking, purpose, method, amount, source_ref, now)
    settlements = booking.settlements + (settlement,)
    if settlement.status is SettlementStatus.RELEASED:
        return _mark_paid(booking, settlement, settlements, now)
    return _with_settlements(booking, settlements, updated_at=now), intents


def _pending_settlement(booking: BookingDocument, settlement_id: Any) -> Settlement:
    settlement = booking.settlement(str(settlement_id)) if settlement_id else None
    if settlement is None:
        raise GuardViolation("Settlement not found", details={"settlement_id": settlement_id})
    if settlement.status is not SettlementStatus.PENDING:
        raise InvalidTransition(
            f"Settlement is already {settlement.status.value}",
            details={"settlement_id": settlement.id, "settlement_status": settlement.status.value},
        )
    return settlement


def capture_succeeded(
    booking: BookingDocument,
    settlement_id: Any,
    external_ref: Optional[str],
    now: datetime,
) -> Result:
    """Gateway captured the funds: they are held in escrow."""
    pending = _pending_settlement(booking, settlement_id)
    held = pending.model_copy(update={
        "status": SettlementStatus.HELD,
        "external_ref": external_ref,
        "updated_at": now,
    })
    settlements = _replace(booking, held)
    if held.purpose is SettlementPurpose.UPFRONT:
        return _mark_upfront_paid(booking, held, settlements, now)
    return _mark_paid(booking, held, settlements, now)


def capture_failed(
    booking: BookingDocument,
    settlement_id: Any,
    reason: Optional[str],
    now: datetime,
) -> Result:
    """
    Gateway declined or timed out.

    The settlement is kept as ``failed`` for the audit trail and the booking
    status does not move; the client may pay again.
    """
    pending = _pending_settlement(booking, settlement_id)
    failed = pending.model_copy(update={
        "status": SettlementStatus.FAILED,
        "failure_reason": reason or "capture failed",
        "updated_at": now,
    })
    updated = _with_settlements(booking, _replace(booking, failed), updated_at=now)
    intents: List[Intent] = [
        NotifyClient(
            booking_id=booking.id,
            client_id=booking.client_id,
            event=NotificationEvent.PAYMENT_FAILED,
            detail={"amount": failed.amount, "reason": failed.failure_reason},
        )
    ]
    return updated, intents


def confirm_completion(booking: BookingDocument, now: datetime) -> Result:
    """
    Client confirms the work is done.

    Held escrow is released. Anything still owed (pay_later, or approved
    charges on top of an upfront payment) sends the booking to
    ``pending_payment``; otherwise it is ``payment_received``.
    """
    if booking.has_pending_charges:
        pending = [c.id for c in booking.additional_charges if c.status is ChargeStatus.PENDING]
        raise PendingChargesUnresolved(
            "Resolve every additional charge before confirming completion",
            details={"charge_ids": pending},
        )

    intents = _release_intents(booking)
    if round_money(booking.amount_due) > ZERO:
        updated = booking.model_copy(update={
            "status": BookingStatus.PENDING_PAYMENT,
            "client_confirmed_at": now,
            "updated_at": now,
        })
    else:
        updated = booking.model_copy(update={
            "status": BookingStatus.PAYMENT_RECEIVED,
            "final_amount": round_money(booking.total_amount),
            "client_confirmed_at": now,
            "paid_at": now,
            "updated_at": now,
        })
    return updated, intents


def cancel_refund_intents(booking: BookingDocument) -> List[Intent]:
    """RefundEscrow for every settlement still held by the gateway."""
    return [
        RefundEscrow(
            booking_id=booking.id,
            settlement_id=s.id,
            amount=s.amount,
            external_ref=s.external_ref,
        )
        for s in _held_settlements(booking)
    ]


def _record_fact(
    booking: BookingDocument,
    settlement_id: str,
    target: SettlementStatus,
    external_ref: Optional[str],
    now: datetime,
) -> BookingDocument:
    settlement = booking.settlement(settlement_id)
    if settlement is None:
        raise GuardViolation("Settlement not found", details={"settlement_id": settlement_id})
    if settlement.status is target:
        return booking
    if settlement.status is not SettlementStatus.HELD:
        raise InvalidTransition(
            f"Cannot mark a {settlement.status.value} settlement as {target.value}",
            details={"settlement_id": settlement_id},
        )
    updated = settlement.model_copy(update={
        "status": target,
        "external_ref": external_ref or settlement.external_ref,
        "updated_at": now,
    })
    return _with_settlements(booking, _replace(booking, updated), updated_at=now)


def record_release(
    booking: BookingDocument,
    settlement_id: str,
    external_ref: Optional[str],
    now: datetime,
) -> BookingDocument:
    """Escrow paid out to the provider. Repeating the fact is a no-op."""
    return _record_fact(booking, settlement_id, SettlementStatus.RELEASED, external_ref, now)


def record_refund(
    booking: BookingDocument,
    settlement_id: str,
    external_ref: Optional[str],
    now: datetime,
) -> BookingDocument:
    """Escrow returned to the client. Repeating the fact is a no-op."""
    return _record_fact(booking, settlement_id, SettlementStatus.REFUNDED, external_ref, now)

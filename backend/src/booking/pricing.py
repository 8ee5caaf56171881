"""
Pricing calculator - pure functions over a booking's price fields.

    fee   = price * pct
    total = price + fee - discount + sum(approved additional charges)

A computed total never goes below zero.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Tuple

from src.booking.document import BookingDocument
from src.lib.exceptions import GuardViolation

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_money(value: Any, field_name: str = "amount") -> Decimal:
    """
    Coerce a payload value to a non-negative Decimal.

    Floats go through ``str`` so 0.1 stays 0.1.
    """
    if isinstance(value, bool) or value is None:
        raise GuardViolation(f"{field_name} must be a number", details={"field": field_name})
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise GuardViolation(f"{field_name} must be a number", details={"field": field_name})
    if not amount.is_finite():
        raise GuardViolation(f"{field_name} must be finite", details={"field": field_name})
    if amount < ZERO:
        raise GuardViolation(f"{field_name} must not be negative", details={"field": field_name})
    if amount != amount.quantize(CENT):
        raise GuardViolation(
            f"{field_name} has more than two decimal places",
            details={"field": field_name},
        )
    return amount


def fee(price: Decimal, pct: Decimal) -> Decimal:
    """Platform fee for a price."""
    if price < ZERO or pct < ZERO:
        raise GuardViolation("price and fee percentage must not be negative")
    return price * pct


def total(
    price: Decimal,
    fee_amount: Decimal,
    discount: Decimal = ZERO,
    approved_charges: Iterable[Decimal] = (),
) -> Decimal:
    """Amount the client owes for the booking, clamped at zero."""
    amount = price + fee_amount - discount + sum(approved_charges, ZERO)
    return amount if amount > ZERO else ZERO


def quote(price: Decimal, pct: Decimal) -> Tuple[Decimal, Decimal]:
    """(fee, total) for a bare price with no discount or charges."""
    fee_amount = fee(price, pct)
    return fee_amount, total(price, fee_amount)


def reprice(booking: BookingDocument, **updates: Any) -> BookingDocument:
    """
    Apply ``updates`` and recompute the derived ``system_fee``/``total_amount``.

    Every command that touches provider_price, discount or charges goes
    through here so the derived fields can never drift.
    """
    draft = booking.model_copy(update=updates) if updates else booking
    fee_amount = fee(draft.provider_price, draft.system_fee_percentage)
    return draft.model_copy(update={
        "system_fee": fee_amount,
        "total_amount": total(
            draft.provider_price,
            fee_amount,
            draft.discount_amount,
            draft.approved_charge_amounts,
        ),
    })


def expected_total(booking: BookingDocument) -> Decimal:
    return total(
        booking.provider_price,
        fee(booking.provider_price, booking.system_fee_percentage),
        booking.discount_amount,
        booking.approved_charge_amounts,
    )


def provider_share(amount: Decimal, share_pct: Decimal) -> Decimal:
    """Provider's cut of a settled amount, rounded to the centavo."""
    return (amount * share_pct).quantize(CENT, rounding=ROUND_HALF_UP)


def round_money(amount: Optional[Decimal]) -> Optional[Decimal]:
    return None if amount is None else amount.quantize(CENT, rounding=ROUND_HALF_UP)

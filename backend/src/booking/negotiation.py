"""
Negotiation protocol - the offer/counter-offer cycle before a price is committed.

Offers and counters are previews: ``offered_total``/``counter_offer_total``
show the fee-inclusive amount, while the committed ``system_fee`` and
``total_amount`` keep deriving from ``provider_price`` until one side accepts.
There is no bound on the number of rounds; either side may cancel instead.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Tuple

from src.booking.document import (
    ActorRole,
    BookingDocument,
    BookingStatus,
    NegotiationEntry,
    NegotiationKind,
)
from src.booking.guards import require_negotiable
from src.booking.pricing import quote, reprice, to_money
from src.lib.exceptions import GuardViolation, InvalidOffer


def _offer_price(price: Any) -> Decimal:
    try:
        amount = to_money(price, "price")
    except GuardViolation as exc:
        raise InvalidOffer(exc.message, details={"price": str(price)}) from exc
    if amount <= 0:
        raise InvalidOffer("Offer price must be greater than zero", details={"price": str(price)})
    return amount


def _clean_note(note: Optional[str]) -> Optional[str]:
    if note is None:
        return None
    note = str(note).strip()
    return note or None


def _history(
    booking: BookingDocument,
    kind: NegotiationKind,
    amount: Decimal,
    by: ActorRole,
    now: datetime,
    note: Optional[str] = None,
) -> Tuple[NegotiationEntry, ...]:
    entry = NegotiationEntry(kind=kind, amount=amount, by=by, at=now, note=note)
    return booking.negotiation_history + (entry,)


def propose_offer(
    booking: BookingDocument,
    price: Any,
    note: Optional[str],
    now: datetime,
) -> Tuple[BookingDocument, BookingStatus]:
    """Client proposes ``price``; the booking waits for the provider's answer."""
    require_negotiable(booking)
    amount = _offer_price(price)
    _, offered_total = quote(amount, booking.system_fee_percentage)
    note = _clean_note(note)

    updated = reprice(
        booking,
        status=BookingStatus.PENDING_NEGOTIATION,
        offered_price=amount,
        offered_total=offered_total,
        counter_offer_price=None,
        counter_offer_total=None,
        counter_offer_note=None,
        negotiation_history=_history(
            booking, NegotiationKind.CLIENT_OFFER, amount, ActorRole.CLIENT, now, note
        ),
        updated_at=now,
    )
    return updated, updated.status


def counter_offer(
    booking: BookingDocument,
    price: Any,
    note: Optional[str],
    now: datetime,
) -> Tuple[BookingDocument, BookingStatus]:
    """Provider answers the client's offer with their own price."""
    require_negotiable(booking)
    amount = _offer_price(price)
    _, counter_total = quote(amount, booking.system_fee_percentage)
    note = _clean_note(note)

    updated = reprice(
        booking,
        status=BookingStatus.COUNTER_OFFER,
        counter_offer_price=amount,
        counter_offer_total=counter_total,
        counter_offer_note=note,
        negotiation_history=_history(
            booking, NegotiationKind.PROVIDER_COUNTER, amount, ActorRole.PROVIDER, now, note
        ),
        updated_at=now,
    )
    return updated, updated.status


def accept_counter(
    booking: BookingDocument,
    now: datetime,
) -> Tuple[BookingDocument, BookingStatus]:
    """
    Client takes the provider's counter: it becomes the provider price.

    The booking goes back to ``pending`` so the provider can accept the job
    at the agreed price.
    """
    if booking.counter_offer_price is None:
        raise InvalidOffer("There is no counter offer to accept")
    agreed = booking.counter_offer_price

    updated = reprice(
        booking,
        status=BookingStatus.PENDING,
        provider_price=agreed,
        negotiation_history=_history(
            booking, NegotiationKind.CLIENT_ACCEPTED_COUNTER, agreed, ActorRole.CLIENT, now
        ),
        updated_at=now,
    )
    return updated, updated.status


def accept_offer(
    booking: BookingDocument,
    provider_id: Optional[str],
    now: datetime,
) -> Tuple[BookingDocument, BookingStatus]:
    """Provider takes the client's offer and commits to the job in one step."""
    if booking.offered_price is None:
        raise InvalidOffer("There is no client offer to accept")
    agreed = booking.offered_price

    updated = reprice(
        booking,
        status=BookingStatus.ACCEPTED,
        provider_price=agreed,
        provider_id=booking.provider_id or provider_id,
        accepted_at=now,
        negotiation_history=_history(
            booking, NegotiationKind.PROVIDER_ACCEPTED_OFFER, agreed, ActorRole.PROVIDER, now
        ),
        updated_at=now,
    )
    return updated, updated.status

"""
Admin gate - the approval barrier in front of providers.

A booking is invisible and non-actionable for providers until an admin
approves it. Approval never changes the status.
"""
from datetime import datetime
from typing import List, Optional, Tuple

from src.booking.document import BookingDocument, BookingStatus
from src.booking.guards import require_admin_approved
from src.booking.intents import Intent, NotificationEvent, NotifyClient, NotifyProvider
from src.lib.exceptions import GuardViolation

# Open for provider pickup once approved
PROVIDER_POOL_STATUSES = frozenset({
    BookingStatus.PENDING,
    BookingStatus.PENDING_NEGOTIATION,
    BookingStatus.COUNTER_OFFER,
})


def approve(
    booking: BookingDocument,
    provider_id: Optional[str],
    now: datetime,
) -> Tuple[BookingDocument, List[Intent]]:
    """Unlock the booking for providers, optionally assigning one."""
    if booking.admin_rejected:
        raise GuardViolation("A rejected booking cannot be approved")
    if booking.admin_approved:
        raise GuardViolation("Booking is already approved")
    if provider_id and booking.provider_id and provider_id != booking.provider_id:
        raise GuardViolation(
            "Booking already has a provider assigned",
            details={"provider_id": booking.provider_id},
        )

    updated = booking.model_copy(update={
        "admin_approved": True,
        "approved_at": now,
        "provider_id": booking.provider_id or provider_id or None,
        "updated_at": now,
    })
    intents: List[Intent] = [
        NotifyClient(
            booking_id=booking.id,
            client_id=booking.client_id,
            event=NotificationEvent.JOB_APPROVED,
        ),
        NotifyProvider(
            booking_id=booking.id,
            provider_id=updated.provider_id,
            event=NotificationEvent.JOB_APPROVED,
            detail={"service_category": booking.service_category},
        ),
    ]
    return updated, intents


def reject(
    booking: BookingDocument,
    reason: Optional[str],
    now: datetime,
) -> Tuple[BookingDocument, List[Intent]]:
    updated = booking.model_copy(update={
        "status": BookingStatus.REJECTED,
        "admin_rejected": True,
        "admin_approved": False,
        "rejection_reason": reason,
        "updated_at": now,
    })
    intents: List[Intent] = [
        NotifyClient(
            booking_id=booking.id,
            client_id=booking.client_id,
            event=NotificationEvent.JOB_REJECTED,
            detail={"reason": reason},
        )
    ]
    return updated, intents


def ensure_actionable(booking: BookingDocument) -> None:
    require_admin_approved(booking)


def visible_to_provider(booking: BookingDocument, provider_id: str) -> bool:
    """
    Whether ``provider_id`` may see the booking.

    Approved open bookings are visible to every provider unless one is
    assigned; everything else only to the assigned provider.
    """
    if not booking.admin_approved or booking.admin_rejected:
        return False
    if booking.provider_id is not None:
        return booking.provider_id == provider_id
    return booking.status in PROVIDER_POOL_STATUSES

"""
Booking repository - maps Booking rows to and from BookingDocument values.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from src.booking.document import BookingDocument, BookingStatus, PaymentStatus
from src.models.bookings import Booking
from src.models.refunds import Refund, RefundStatus

# Document fields stored as JSON lists of dicts
_JSON_LIST_FIELDS = ("additional_charges", "negotiation_history", "settlements")

# Never written back from a document: identity and the version counter
_READ_ONLY_FIELDS = frozenset({"id", "version", "created_at"})

_DOCUMENT_FIELDS = tuple(BookingDocument.model_fields)


def _dump(value: Any) -> Any:
    return [item.model_dump(mode="json") for item in value]


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def to_document(row: Booking) -> BookingDocument:
        """Build the immutable document from a loaded row."""
        data: Dict[str, Any] = {name: getattr(row, name) for name in _DOCUMENT_FIELDS}
        data["media_urls"] = tuple(row.media_urls or ())
        for name in _JSON_LIST_FIELDS:
            data[name] = tuple(getattr(row, name) or ())
        return BookingDocument.model_validate(data)

    @staticmethod
    def write_document(row: Booking, doc: BookingDocument) -> Booking:
        """Copy every mutable document field onto the row (no flush)."""
        for name in _DOCUMENT_FIELDS:
            if name in _READ_ONLY_FIELDS:
                continue
            value = getattr(doc, name)
            if name in _JSON_LIST_FIELDS:
                value = _dump(value)
            elif name == "media_urls":
                value = list(value)
            setattr(row, name, value)
        return row

    @staticmethod
    def new_row(doc: BookingDocument) -> Booking:
        row = Booking(id=doc.id, created_at=doc.created_at)
        return BookingRepository.write_document(row, doc)

    @staticmethod
    def get(db: Session, booking_id: UUID) -> Optional[Booking]:
        """Get booking row by ID, refreshed from the database"""
        return db.get(Booking, booking_id, populate_existing=True)

    @staticmethod
    def list_open_for_providers(db: Session, provider_id: str) -> List[Booking]:
        """Approved bookings either assigned to the provider or still unassigned."""
        stmt = (
            select(Booking)
            .where(Booking.admin_approved.is_(True))
            .where(Booking.admin_rejected.is_(False))
            .where(or_(Booking.provider_id == provider_id, Booking.provider_id.is_(None)))
            .order_by(Booking.created_at.desc())
        )
        return list(db.execute(stmt).scalars().all())

    @staticmethod
    def list_by_status(
        db: Session,
        statuses: Iterable[BookingStatus],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Booking]:
        stmt = select(Booking).where(Booking.status.in_(list(statuses)))
        if start is not None:
            stmt = stmt.where(Booking.created_at >= start)
        if end is not None:
            stmt = stmt.where(Booking.created_at < end)
        return list(db.execute(stmt).scalars().all())

    # ===== Refunds =====

    @staticmethod
    def get_refund_for_settlement(db: Session, settlement_id: str) -> Optional[Refund]:
        stmt = select(Refund).where(Refund.settlement_id == settlement_id)
        return db.execute(stmt).scalar_one_or_none()

    @staticmethod
    def list_retryable_refunds(db: Session, max_attempts: int, limit: int = 100) -> List[Refund]:
        """Refunds still owed to clients that have attempts left."""
        stmt = (
            select(Refund)
            .where(Refund.status.in_([RefundStatus.PENDING, RefundStatus.FAILED]))
            .where(Refund.attempts < max_attempts)
            .order_by(Refund.created_at)
            .limit(limit)
        )
        return list(db.execute(stmt).scalars().all())

    @staticmethod
    def list_bookings_with_pending_capture(
        db: Session,
        updated_before: datetime,
        limit: int = 100,
    ) -> List[Booking]:
        """Bookings still waiting on a gateway capture that should have finished."""
        stmt = (
            select(Booking)
            .where(Booking.payment_status == PaymentStatus.PENDING)
            .where(Booking.updated_at <= updated_before)
            .order_by(Booking.updated_at)
            .limit(limit)
        )
        return list(db.execute(stmt).scalars().all())

    @staticmethod
    def list_bookings_with_held_escrow(db: Session, limit: int = 100) -> List[Booking]:
        """Bookings whose escrow should have been released but is still held."""
        stmt = (
            select(Booking)
            .where(Booking.payment_status == PaymentStatus.HELD)
            .where(Booking.status.in_([
                BookingStatus.PENDING_PAYMENT,
                BookingStatus.PAYMENT_RECEIVED,
                BookingStatus.COMPLETED,
            ]))
            .order_by(Booking.updated_at)
            .limit(limit)
        )
        return list(db.execute(stmt).scalars().all())

"""
Booking model - persisted form of the booking document.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4, UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.booking.document import (
    ActorRole,
    BookingStatus,
    PaymentMethod,
    PaymentPreference,
    PaymentStatus,
)
from src.lib.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

Money = Numeric(14, 2)
# price (2 places) x percentage (4 places) needs 6 places to stay exact
DerivedMoney = Numeric(18, 6)


class Booking(Base):
    """
    Booking entity - one service job from request to closure.

    ``version`` is SQLAlchemy's version counter: every UPDATE is issued with
    ``WHERE version = <loaded version>`` so a concurrent writer fails with
    StaleDataError instead of overwriting.
    """
    __tablename__ = "bookings"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Parties (accounts live in an external service)
    client_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    provider_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)

    # Job metadata
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    service_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    media_urls: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        SQLEnum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True,
    )

    # Pricing
    provider_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    offered_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    offered_total: Mapped[Optional[Decimal]] = mapped_column(DerivedMoney, nullable=True)
    counter_offer_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    counter_offer_total: Mapped[Optional[Decimal]] = mapped_column(DerivedMoney, nullable=True)
    counter_offer_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    system_fee_percentage: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    system_fee: Mapped[Decimal] = mapped_column(DerivedMoney, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    discount_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(DerivedMoney, nullable=False)

    # Payment
    payment_preference: Mapped[PaymentPreference] = mapped_column(
        SQLEnum(PaymentPreference, name="payment_preference"),
        nullable=False,
    )
    is_paid_upfront: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus, name="booking_payment_status"),
        nullable=False,
        default=PaymentStatus.NONE,
        index=True,
    )
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        SQLEnum(PaymentMethod, name="payment_method"),
        nullable=True,
    )
    upfront_paid_amount: Mapped[Decimal] = mapped_column(DerivedMoney, nullable=False, default=Decimal("0"))
    additional_paid_amount: Mapped[Decimal] = mapped_column(DerivedMoney, nullable=False, default=Decimal("0"))
    final_amount: Mapped[Optional[Decimal]] = mapped_column(DerivedMoney, nullable=True)
    settlements: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Append-only payment records (cash and gateway escrow)",
    )

    # Negotiation
    is_negotiable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    negotiation_history: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    additional_charges: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Append-only provider charges; resolved entries never change",
    )

    # Governance
    admin_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    admin_rejected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Cancellation
    cancelled_by: Mapped[Optional[ActorRole]] = mapped_column(
        SQLEnum(ActorRole, name="actor_role"),
        nullable=True,
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Review
    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    review_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle timestamps
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    work_done_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    client_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        CheckConstraint("provider_price >= 0", name="booking_price_non_negative"),
        CheckConstraint("total_amount >= 0", name="booking_total_non_negative"),
        CheckConstraint(
            "review_rating IS NULL OR (review_rating >= 1 AND review_rating <= 5)",
            name="booking_review_rating_range",
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, status={self.status}, version={self.version})>"

"""
Refund model - the asynchronous refund fact behind a RefundEscrow intent.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4, UUID
import enum

from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.lib.db import Base


class RefundStatus(str, enum.Enum):
    """Refund lifecycle: pending -> succeeded, or failed and retried."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Refund(Base):
    """
    Refund entity - one row per escrow settlement that has to go back to the client.

    Written before the gateway is called so a crash or a gateway outage
    leaves a row the reconciliation job can pick up.
    """
    __tablename__ = "refunds"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    settlement_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    capture_ref: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Gateway reference of the captured payment being refunded",
    )

    status: Mapped[RefundStatus] = mapped_column(
        SQLEnum(RefundStatus, name="refund_status"),
        nullable=False,
        default=RefundStatus.PENDING,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

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

    def __repr__(self) -> str:
        return f"<Refund(id={self.id}, booking_id={self.booking_id}, status={self.status})>"

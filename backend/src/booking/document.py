"""
Booking document - the aggregate every actor reads and writes.

The booking core treats a BookingDocument as an immutable value: each
command produces a new document via ``model_copy(update=...)``. Persistence
lives in ``src.models.bookings``; this module has no I/O.
"""
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class BookingStatus(str, enum.Enum):
    """Closed set of booking states."""
    PENDING = "pending"
    PENDING_NEGOTIATION = "pending_negotiation"
    COUNTER_OFFER = "counter_offer"
    ACCEPTED = "accepted"
    TRAVELING = "traveling"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    PENDING_COMPLETION = "pending_completion"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_RECEIVED = "payment_received"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.REJECTED,
})

# Statuses after a provider committed to the job and before the client confirmed it
COMMITTED_WORK_STATUSES = frozenset({
    BookingStatus.ACCEPTED,
    BookingStatus.TRAVELING,
    BookingStatus.ARRIVED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.PENDING_COMPLETION,
})


class ActorRole(str, enum.Enum):
    """Who issues a command. SYSTEM feeds payment gateway results back."""
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


class PaymentPreference(str, enum.Enum):
    PAY_FIRST = "pay_first"
    PAY_LATER = "pay_later"


class PaymentStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    GCASH = "gcash"
    MAYA = "maya"

    @property
    def is_electronic(self) -> bool:
        """Electronic payments go through gateway escrow; cash does not."""
        return self is not PaymentMethod.CASH


class ChargeStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SettlementPurpose(str, enum.Enum):
    UPFRONT = "upfront"
    FINAL = "final"
    ADDITIONAL = "additional"


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"


class NegotiationKind(str, enum.Enum):
    CLIENT_OFFER = "client_offer"
    PROVIDER_COUNTER = "provider_counter"
    CLIENT_ACCEPTED_COUNTER = "client_accepted_counter"
    PROVIDER_ACCEPTED_OFFER = "provider_accepted_offer"


class AdditionalCharge(BaseModel):
    """Provider-requested extra cost; terminal once approved or rejected."""

    model_config = ConfigDict(frozen=True)

    id: str
    reason: str
    amount: Decimal
    status: ChargeStatus = ChargeStatus.PENDING
    requested_at: datetime
    resolved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class NegotiationEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: NegotiationKind
    amount: Decimal
    by: ActorRole
    at: datetime
    note: Optional[str] = None


class Settlement(BaseModel):
    """One movement of money against the booking (cash or gateway)."""

    model_config = ConfigDict(frozen=True)

    id: str
    purpose: SettlementPurpose
    method: PaymentMethod
    amount: Decimal
    status: SettlementStatus
    created_at: datetime
    updated_at: datetime
    external_ref: Optional[str] = None
    source_ref: Optional[str] = None
    failure_reason: Optional[str] = None


class BookingDocument(BaseModel):
    """
    Booking aggregate root.

    ``system_fee`` and ``total_amount`` are derived; see src.booking.pricing.
    ``version`` is owned by the hosting service (optimistic concurrency) and is
    never changed by the core.
    """

    model_config = ConfigDict(frozen=True)

    # Identity
    id: UUID
    version: int = 0
    created_at: datetime
    updated_at: datetime
    client_id: str
    provider_id: Optional[str] = None

    # Job metadata (immutable after submission)
    title: Optional[str] = None
    service_category: Optional[str] = None
    notes: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    media_urls: Tuple[str, ...] = ()

    status: BookingStatus = BookingStatus.PENDING

    # Pricing
    provider_price: Decimal
    offered_price: Optional[Decimal] = None
    offered_total: Optional[Decimal] = None
    counter_offer_price: Optional[Decimal] = None
    counter_offer_total: Optional[Decimal] = None
    counter_offer_note: Optional[str] = None
    system_fee_percentage: Decimal = Decimal("0.05")
    system_fee: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    discount_reason: Optional[str] = None
    total_amount: Decimal = Decimal("0")

    # Payment
    payment_preference: PaymentPreference
    is_paid_upfront: bool = False
    payment_status: PaymentStatus = PaymentStatus.NONE
    payment_method: Optional[PaymentMethod] = None
    upfront_paid_amount: Decimal = Decimal("0")
    additional_paid_amount: Decimal = Decimal("0")
    final_amount: Optional[Decimal] = None
    settlements: Tuple[Settlement, ...] = ()

    # Negotiation
    is_negotiable: bool = False
    negotiation_history: Tuple[NegotiationEntry, ...] = ()

    additional_charges: Tuple[AdditionalCharge, ...] = ()

    # Governance
    admin_approved: bool = False
    admin_rejected: bool = False
    rejection_reason: Optional[str] = None

    # Cancellation
    cancelled_by: Optional[ActorRole] = None
    cancellation_reason: Optional[str] = None

    # Review
    reviewed: bool = False
    review_rating: Optional[int] = Field(default=None, ge=1, le=5)
    review_comment: Optional[str] = None

    # Lifecycle timestamps
    approved_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    work_done_at: Optional[datetime] = None
    client_confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_pending_charges(self) -> bool:
        return any(c.status is ChargeStatus.PENDING for c in self.additional_charges)

    @property
    def approved_charge_amounts(self) -> Tuple[Decimal, ...]:
        return tuple(
            c.amount for c in self.additional_charges if c.status is ChargeStatus.APPROVED
        )

    @property
    def amount_paid(self) -> Decimal:
        """Money captured or collected and not refunded."""
        return sum(
            (
                s.amount for s in self.settlements
                if s.status in (SettlementStatus.HELD, SettlementStatus.RELEASED)
            ),
            Decimal("0"),
        )

    @property
    def amount_due(self) -> Decimal:
        due = self.total_amount - self.amount_paid
        return due if due > 0 else Decimal("0")

    def settlement(self, settlement_id: str) -> Optional[Settlement]:
        for s in self.settlements:
            if s.id == settlement_id:
                return s
        return None

    def charge(self, charge_id: str) -> Optional[AdditionalCharge]:
        for c in self.additional_charges:
            if c.id == charge_id:
                return c
        return None

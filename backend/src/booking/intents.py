"""
Side-effect intents emitted by the booking core.

The core never talks to the payment gateway or the notification channel.
It returns these descriptions and the hosting service (or whoever called the
core) executes them.
"""
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from src.booking.document import PaymentMethod, SettlementPurpose


class NotificationEvent(str, enum.Enum):
    """Events the notification dispatcher knows how to render."""
    JOB_APPROVED = "job_approved"
    JOB_REJECTED = "job_rejected"
    OFFER_RECEIVED = "offer_received"
    COUNTER_OFFER_RECEIVED = "counter_offer_received"
    COUNTER_OFFER_ACCEPTED = "counter_offer_accepted"
    JOB_ACCEPTED = "job_accepted"
    PROVIDER_TRAVELING = "provider_traveling"
    PROVIDER_ARRIVED = "provider_arrived"
    WORK_STARTED = "work_started"
    WORK_COMPLETED = "work_completed"
    COMPLETION_CONFIRMED = "completion_confirmed"
    ADDITIONAL_CHARGE_REQUESTED = "additional_charge_requested"
    ADDITIONAL_CHARGE_APPROVED = "additional_charge_approved"
    ADDITIONAL_CHARGE_REJECTED = "additional_charge_rejected"
    DISCOUNT_APPLIED = "discount_applied"
    UPFRONT_PAYMENT_RECEIVED = "upfront_payment_received"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    JOB_COMPLETED = "job_completed"
    JOB_CANCELLED = "job_cancelled"


class Intent:
    """Marker base for everything the core asks the outside world to do."""

    booking_id: UUID

    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class NotifyProvider(Intent):
    booking_id: UUID
    provider_id: Optional[str]
    event: NotificationEvent
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotifyClient(Intent):
    booking_id: UUID
    client_id: str
    event: NotificationEvent
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CapturePayment(Intent):
    booking_id: UUID
    settlement_id: str
    amount: Decimal
    method: PaymentMethod
    purpose: SettlementPurpose
    source_ref: Optional[str] = None


@dataclass(frozen=True)
class ReleaseEscrow(Intent):
    booking_id: UUID
    settlement_id: str
    amount: Decimal
    external_ref: Optional[str] = None


@dataclass(frozen=True)
class RefundEscrow(Intent):
    booking_id: UUID
    settlement_id: str
    amount: Decimal
    external_ref: Optional[str] = None


PAYMENT_INTENTS = (CapturePayment, ReleaseEscrow, RefundEscrow)
NOTIFICATION_INTENTS = (NotifyProvider, NotifyClient)


def intent_to_dict(intent: Intent) -> Dict[str, Any]:
    """Flatten an intent for API responses and logs."""
    data: Dict[str, Any] = {"kind": intent.kind}
    for key, value in vars(intent).items():
        if isinstance(value, enum.Enum):
            value = value.value
        elif isinstance(value, (Decimal, UUID)):
            value = str(value)
        data[key] = value
    return data

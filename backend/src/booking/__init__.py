"""
Booking core: the pure state machine and the pricing, negotiation,
additional-charge, settlement and admin-gate rules it is built from.

Nothing in this package touches the database, the payment gateway or the
notification channel.
"""
from src.booking.document import (
    ActorRole,
    BookingDocument,
    BookingStatus,
    PaymentMethod,
    PaymentPreference,
    PaymentStatus,
)
from src.booking.state_machine import Actor, Command, Transition, apply

__all__ = [
    "Actor",
    "ActorRole",
    "BookingDocument",
    "BookingStatus",
    "Command",
    "PaymentMethod",
    "PaymentPreference",
    "PaymentStatus",
    "Transition",
    "apply",
]

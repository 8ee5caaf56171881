"""
Booking API routes.

Every lifecycle step goes through one endpoint, ``POST /bookings/{id}/commands``,
which runs the command through the booking state machine. Notifications
produced by a command are delivered after the response is sent.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from src.api.dependencies import (
    get_booking_service,
    get_current_actor,
    get_notifier,
)
from src.api.middleware.error_handler import build_error_response
from src.booking import admin_gate, guards
from src.booking.document import ActorRole, BookingDocument, PaymentPreference
from src.booking.intents import Intent, intent_to_dict
from src.booking.state_machine import Actor, allowed_commands
from src.lib.exceptions import PaymentCaptureFailed, Unauthorized
from src.services.booking_service import BookingService
from src.services.notification_service import NotificationService


# Pydantic schemas
class CreateBookingRequest(BaseModel):
    """Client booking request."""
    provider_price: Decimal = Field(..., description="Provider's asking price")
    payment_preference: PaymentPreference
    is_negotiable: bool = False
    provider_id: Optional[str] = Field(None, description="Request a specific provider")
    title: Optional[str] = Field(None, max_length=255)
    service_category: Optional[str] = Field(None, max_length=64)
    notes: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    media_urls: List[str] = Field(default_factory=list)


class CommandRequest(BaseModel):
    command: str = Field(..., description="e.g. approve, send_offer, pay, confirm_completion")
    payload: Dict[str, Any] = Field(default_factory=dict)
    expected_version: Optional[int] = Field(
        None, ge=1, description="Reject the command if the booking moved past this version"
    )


class ReviewRequest(BaseModel):
    rating: int
    comment: Optional[str] = Field(None, max_length=2000)


def serialize_booking(doc: BookingDocument, actor: Optional[Actor] = None) -> Dict[str, Any]:
    data = doc.model_dump(mode="json")
    data["amount_paid"] = str(doc.amount_paid)
    data["amount_due"] = str(doc.amount_due)
    if actor is not None:
        data["allowed_commands"] = allowed_commands(doc, actor.role)
    return data


def serialize_intents(intents: List[Intent]) -> List[Dict[str, Any]]:
    return jsonable_encoder([intent_to_dict(intent) for intent in intents])


def can_view(doc: BookingDocument, actor: Actor) -> bool:
    if not guards.actor_may_view(doc, actor.role, actor.id):
        return False
    if actor.role is ActorRole.PROVIDER and doc.provider_id != actor.id:
        return admin_gate.visible_to_provider(doc, actor.id)
    return True


# Router
router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_booking(
    body: CreateBookingRequest,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    """
    Submit a booking. It waits in ``pending`` until an admin approves it.
    """
    if actor.role is not ActorRole.CLIENT:
        raise Unauthorized("Only clients can create bookings")

    doc = service.submit(
        client_id=actor.id,
        provider_price=body.provider_price,
        payment_preference=body.payment_preference,
        is_negotiable=body.is_negotiable,
        provider_id=body.provider_id,
        title=body.title,
        service_category=body.service_category,
        notes=body.notes,
        scheduled_at=body.scheduled_at,
        media_urls=body.media_urls,
    )
    return serialize_booking(doc, actor)


@router.get("/{booking_id}")
def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    doc = service.snapshot(booking_id)
    if not can_view(doc, actor):
        raise Unauthorized("Not allowed to view this booking")
    return serialize_booking(doc, actor)


@router.post("/{booking_id}/commands")
def apply_command(
    booking_id: UUID,
    body: CommandRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
    notifier: NotificationService = Depends(get_notifier),
):
    """
    Apply one lifecycle command.

    Returns the updated booking and the intents the command emitted.
    A declined payment answers 402 but still notifies the client.
    """
    try:
        doc, intents = service.apply(
            booking_id,
            actor,
            body.command,
            body.payload,
            expected_version=body.expected_version,
        )
    except PaymentCaptureFailed as exc:
        response = build_error_response(request, exc)
        response.background = BackgroundTask(notifier.dispatch_all, getattr(exc, "intents", []))
        return response

    background_tasks.add_task(notifier.dispatch_all, intents)
    return {
        "booking": serialize_booking(doc, actor),
        "intents": serialize_intents(intents),
    }


@router.post("/{booking_id}/review")
def review_booking(
    booking_id: UUID,
    body: ReviewRequest,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
) -> Dict[str, Any]:
    """Rate a completed booking (client only, once)."""
    if actor.role is not ActorRole.CLIENT:
        raise Unauthorized("Only clients can review bookings")
    doc = service.record_review(booking_id, actor.id, body.rating, body.comment)
    return serialize_booking(doc, actor)


provider_router = APIRouter(prefix="/provider", tags=["provider"])


@provider_router.get("/bookings")
def list_provider_bookings(
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
) -> List[Dict[str, Any]]:
    """Approved open bookings plus the provider's own."""
    if actor.role is not ActorRole.PROVIDER:
        raise Unauthorized("Only providers can list provider bookings")
    return [serialize_booking(doc, actor) for doc in service.list_for_provider(actor.id)]

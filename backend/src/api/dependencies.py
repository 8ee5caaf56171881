"""
API dependencies for FastAPI dependency injection.

Provides database sessions, the authenticated actor and the services
built on top of them.
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from sqlalchemy.orm import Session

from src.booking.document import ActorRole
from src.booking.state_machine import Actor
from src.lib.db import get_db as get_db_session
from src.lib.exceptions import ForbiddenException, UnauthorizedException
from src.lib.jwt import get_actor_from_token
from src.services.booking_service import BookingService
from src.services.notification_service import NotificationService, get_notification_service
from src.services.payment_gateway import PaymentGateway, get_payment_gateway


# Re-export get_db for convenience
get_db = get_db_session


# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)

# The system role belongs to the payment feedback loop, never to a token
_TOKEN_ROLES = {ActorRole.CLIENT, ActorRole.PROVIDER, ActorRole.ADMIN}

_gateway: Optional[PaymentGateway] = None
_notifier: Optional[NotificationService] = None


def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Actor:
    """
    Dependency to get the acting account from the bearer JWT.

    Raises:
        UnauthorizedException: 401 if the token is missing or invalid
    """
    if credentials is None:
        raise UnauthorizedException("Missing bearer token")

    try:
        actor_id, role = get_actor_from_token(credentials.credentials)
        actor_role = ActorRole(role)
    except (InvalidTokenError, KeyError, ValueError):
        raise UnauthorizedException("Invalid authentication token")

    if not actor_id or actor_role not in _TOKEN_ROLES:
        raise UnauthorizedException("Invalid authentication token")
    return Actor(role=actor_role, id=str(actor_id))


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role is not ActorRole.ADMIN:
        raise ForbiddenException("Admin access required")
    return actor


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = get_payment_gateway()
    return _gateway


def get_notifier() -> NotificationService:
    global _notifier
    if _notifier is None:
        _notifier = get_notification_service()
    return _notifier


def get_booking_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> BookingService:
    return BookingService(db, gateway=gateway)

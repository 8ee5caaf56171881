"""JWT token generation and validation utilities.

Tokens carry the acting account in ``sub`` and its booking role
(client, provider, admin) in the custom ``role`` claim.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt

from src.lib.settings import settings


def create_access_token(
    actor_id: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token for an actor.

    Args:
        actor_id: Account identifier (stored in 'sub' claim)
        role: client, provider or admin
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string

    Example:
        >>> token = create_access_token("client-42", "client")
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_expiration_minutes)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": actor_id,
        "role": role,
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Raises:
        InvalidTokenError: If token is invalid, expired, or signature doesn't match
    """
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def get_actor_from_token(token: str) -> Tuple[str, str]:
    """Extract (actor_id, role) from a token.

    Raises:
        InvalidTokenError: If token is invalid
        KeyError: If required claims are missing
    """
    payload = verify_token(token)
    return payload["sub"], payload["role"]

"""
Security Module
===============

Bearer token validation for end-user requests.

Access tokens are issued by the managed auth backend (Supabase) and signed
with the project's JWT secret; this service only validates them.
"""

from typing import Any, Optional
import uuid

from jose import JWTError, jwt

from app.config import settings


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Checks signature, expiry and audience.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
        return payload
    except JWTError:
        return None


def user_id_from_token(token: str) -> Optional[uuid.UUID]:
    """The ``sub`` claim of a valid token as a UUID, or None."""
    payload = decode_token(token)
    if payload is None:
        return None

    try:
        return uuid.UUID(str(payload.get("sub")))
    except ValueError:
        return None

"""
Bearer token verification for the identity context.
"""
import jwt

from app.core import config
from app.core.errors import Unauthenticated


class MissingSigningKey(RuntimeError):
    """JWT_SECRET is not configured."""


def signing_key() -> str:
    """
    The configured token key.

    Raises:
        MissingSigningKey: JWT_SECRET is unset or empty
    """
    if not config.JWT_SECRET:
        raise MissingSigningKey("JWT_SECRET must be set to verify bearer tokens")
    return config.JWT_SECRET


def verify_jwt_token(token: str) -> dict:
    """
    Verify a signed JWT and return its payload.
    
    Args:
        token: JWT token from Authorization header
        
    Returns:
        Decoded JWT payload containing user information
        
    Raises:
        Unauthenticated: If token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            signing_key(),
            algorithms=[config.JWT_ALGORITHM],
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token has expired")
    except jwt.InvalidTokenError as e:
        raise Unauthenticated(f"Invalid token: {str(e)}")


def subject_from_payload(payload: dict) -> str | None:
    """User id carried by a token; `sub` wins over the legacy `userId` claim."""
    subject = payload.get("sub") or payload.get("userId")
    return str(subject) if subject is not None else None


def create_access_token(user_id: str, **claims) -> str:
    """Issue a signed token for `user_id` (local tooling and tests)."""
    payload = {"sub": user_id, **claims}
    return jwt.encode(payload, signing_key(), algorithm=config.JWT_ALGORITHM)

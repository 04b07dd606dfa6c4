"""
FastAPI dependencies for authentication.
"""
from typing import Annotated
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import Unauthenticated, PermissionDenied
from app.features.users.models import User
from app.features.users.auth import verify_jwt_token, subject_from_payload
from app.utils import utcnow


security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from JWT token.
    
    This dependency:
    1. Extracts JWT from Authorization header
    2. Verifies the token signature and expiry
    3. Looks up the user in the local database
    4. Updates last_login_at timestamp
    
    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    if credentials is None:
        raise Unauthenticated()
    
    payload = verify_jwt_token(credentials.credentials)
    user_id = subject_from_payload(payload)
    
    if not user_id:
        raise Unauthenticated("Invalid token payload")
    
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    
    # Deactivated accounts are treated as unknown principals
    if user is None or not user.is_active:
        raise Unauthenticated("Unknown or inactive user")
    
    user.last_login_at = utcnow()
    await db.flush()
    # updated_at is regenerated by the database on flush
    await db.refresh(user)
    
    return user


async def get_current_superadmin(
    user: Annotated[User, Depends(get_current_user)]
) -> User:
    """
    Require superadmin privileges.
    
    Usage:
        @router.post("/abac/period-rules")
        async def create_rule(admin: User = Depends(get_current_superadmin)):
            ...
    """
    if not user.is_superadmin:
        raise PermissionDenied("Superadmin privileges required")
    return user


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"

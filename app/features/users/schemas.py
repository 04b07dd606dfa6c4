"""
Pydantic schemas for user-related responses.
"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str
    
    model_config = ConfigDict(from_attributes=True)


class UserResponse(UserPublic):
    """The authenticated principal as the engine sees it."""
    email: str
    is_active: bool
    is_superadmin: bool
    institution_id: str | None = None
    polo_id: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

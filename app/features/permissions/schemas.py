"""
Pydantic schemas for permission management.

Request and response models for permissions, roles, role assignments and checks.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.normalizer import is_known_resource, is_known_action


def _known_resource(v: str) -> str:
    if not is_known_resource(v):
        raise ValueError(f"unknown resource '{v}'")
    return v


def _known_action(v: str) -> str:
    v = v.lower()
    if not is_known_action(v):
        raise ValueError(f"unknown action '{v}'")
    return v


def _not_null(v):
    # Optional only so it may be omitted; an explicit null would hit a NOT NULL column
    if v is None:
        raise ValueError("must not be null")
    return v


def _role_name(v: str) -> str:
    if not v.replace('_', '').replace('-', '').isalnum():
        raise ValueError('Role name must contain only alphanumeric characters, underscores, and hyphens')
    return v


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    resource: str = Field(..., min_length=1, max_length=100, description="Resource key (e.g., 'invoices', 'cliente')")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g., 'read', 'ler', 'manage')")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission. `name` defaults to "resource:action"."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    
    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: Optional[str]) -> Optional[str]:
        """Validate permission name format."""
        if v is not None and not v.replace('_', '').replace('.', '').replace(':', '').isalnum():
            raise ValueError('Permission name must contain only alphanumeric characters, underscores, dots, and colons')
        return v
    
    @field_validator('resource')
    @classmethod
    def resource_known(cls, v: str) -> str:
        return _known_resource(v)
    
    @field_validator('action')
    @classmethod
    def action_known(cls, v: str) -> str:
        return _known_action(v)


class PermissionUpdate(BaseModel):
    """Schema for updating a permission."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    resource: Optional[str] = Field(None, min_length=1, max_length=100)
    action: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    
    @field_validator('name', 'resource', 'action')
    @classmethod
    def present(cls, v: Optional[str]) -> str:
        return _not_null(v)
    
    @field_validator('resource')
    @classmethod
    def resource_known(cls, v: str) -> str:
        return _known_resource(v)
    
    @field_validator('action')
    @classmethod
    def action_known(cls, v: str) -> str:
        return _known_action(v)


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    
    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=50, description="Role name, unique within its institution")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    institution_id: Optional[str] = Field(None, description="Institution ID (null for a global role)")
    is_system: bool = False
    
    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role name format."""
        return _role_name(v)


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)
    
    @field_validator('name')
    @classmethod
    def name_alphanumeric_underscore(cls, v: Optional[str]) -> str:
        return _role_name(_not_null(v))


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    institution_id: Optional[str]
    is_system: bool
    created_at: datetime
    updated_at: datetime
    
    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignRoleToUser(BaseModel):
    """Schema for assigning a role to a user, optionally scoped."""
    role_id: str = Field(..., description="Role ID")
    institution_id: Optional[str] = Field(None, description="Institution scope (null = unscoped)")
    polo_id: Optional[str] = Field(None, description="Polo scope (null = unscoped)")


class AssignPermissionToRole(BaseModel):
    """Schema for assigning a permission to a role."""
    permission_id: str = Field(..., description="Permission ID")


class SetRolePermissions(BaseModel):
    """Schema for replacing every permission of a role."""
    permission_ids: List[str] = Field(default_factory=list)


class UserRoleResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    institution_id: Optional[str]
    polo_id: Optional[str]
    created_by_id: Optional[str]
    created_at: datetime
    role: RoleResponse
    
    model_config = ConfigDict(from_attributes=True)



class GrantPermissionToUser(BaseModel):
    """Schema for granting a permission straight to a user, optionally scoped and expiring."""
    permission_id: str = Field(..., description="Permission ID")
    institution_id: Optional[str] = Field(None, description="Institution scope (null = unscoped)")
    polo_id: Optional[str] = Field(None, description="Polo scope (null = unscoped)")
    expires_at: Optional[datetime] = Field(None, description="Grant stops counting after this instant")


class UserPermissionResponse(BaseModel):
    id: str
    user_id: str
    permission_id: str
    institution_id: Optional[str]
    polo_id: Optional[str]
    expires_at: Optional[datetime]
    created_by_id: Optional[str]
    created_at: datetime
    permission: PermissionResponse
    
    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if the current user has a permission."""
    resource: str = Field(..., min_length=1, description="Resource type")
    action: str = Field(..., min_length=1, description="Action")
    institution_id: Optional[str] = None
    polo_id: Optional[str] = None
    owned_entity_id: Optional[str] = Field(None, description="Entity the caller may own")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    reason: Optional[str] = None


# ============================================================================
# User Permissions Response
# ============================================================================

class PermissionPair(BaseModel):
    resource: str
    action: str


class UserPermissionsResponse(BaseModel):
    """Roles and permission pairs a user holds in a scope."""
    user_id: str
    institution_id: Optional[str] = None
    polo_id: Optional[str] = None
    is_superadmin: bool = False
    roles: List[RoleResponse] = []
    permissions: List[PermissionPair] = []

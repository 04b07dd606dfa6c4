"""
Permission management API routes.

Provides endpoints for managing permissions, roles, role assignments, and for
checking what the current user may do.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import NotFound
from app.features.audit.recorder import AuditContext
from app.features.permissions import service
from app.features.permissions.cache import PermissionCache
from app.features.permissions.dependencies import get_audit_context, get_permission_cache, require_permission
from app.features.permissions.rbac import ScopeContext, get_user_permissions, get_user_roles, has_permission
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    RoleWithPermissions,
    AssignRoleToUser,
    AssignPermissionToRole,
    SetRolePermissions,
    UserRoleResponse,
    GrantPermissionToUser,
    UserPermissionResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionPair,
    UserPermissionsResponse,
)
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "create")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Create a new permission."""
    return await service.create_permission(db, permission, current_user, audit, cache)


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    skip: int = 0,
    limit: int = 100,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    """List all permissions with optional filtering."""
    return await service.list_permissions(db, resource, action, skip, limit)


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    """Get a specific permission by ID."""
    return await service.get_permission(db, permission_id)


@router.put("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    permission_update: PermissionUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "update")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Update a permission."""
    return await service.update_permission(db, permission_id, permission_update, current_user, audit, cache)


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "delete")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Delete a permission."""
    await service.delete_permission(db, permission_id, current_user, audit, cache)
    return None


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=RoleWithPermissions, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles", "create")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Create a new role."""
    return await service.create_role(db, role, current_user, audit, cache)


@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    institution_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles", "read")),
):
    """List global roles, plus an institution's own roles when one is given."""
    return await service.list_roles(db, institution_id)


@router.get("/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles", "read")),
):
    """Get a role with its permissions."""
    return await service.get_role(db, role_id)


@router.put("/roles/{role_id}", response_model=RoleWithPermissions)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles", "update")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Update a role. System roles need a superadmin."""
    return await service.update_role(db, role_id, role_update, current_user, audit, cache)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles", "delete")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Delete a role that nobody holds any more."""
    await service.delete_role(db, role_id, current_user, audit, cache)
    return None


# ============================================================================
# Role Permission Routes
# ============================================================================

@router.post("/roles/{role_id}/permissions", response_model=RoleWithPermissions)
async def grant_permission_to_role(
    role_id: str,
    assignment: AssignPermissionToRole,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles", "update")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Attach a permission to a role."""
    return await service.grant_permission_to_role(db, role_id, assignment.permission_id, current_user, audit, cache)


@router.put("/roles/{role_id}/permissions", response_model=RoleWithPermissions)
async def set_role_permissions(
    role_id: str,
    payload: SetRolePermissions,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles", "update")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Replace every permission of a role."""
    return await service.set_role_permissions(db, role_id, payload.permission_ids, current_user, audit, cache)


@router.delete("/roles/{role_id}/permissions/{permission_id}", response_model=RoleWithPermissions)
async def revoke_permission_from_role(
    role_id: str,
    permission_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles", "update")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Detach a permission from a role."""
    return await service.revoke_permission_from_role(db, role_id, permission_id, current_user, audit, cache)


# ============================================================================
# User Role Routes
# ============================================================================

@router.get("/users/{user_id}/roles", response_model=List[UserRoleResponse])
async def list_user_roles(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users", "read")),
):
    """Every role assignment of a user, with scopes."""
    return await service.list_user_assignments(db, user_id)


@router.post("/users/{user_id}/roles", response_model=UserRoleResponse, status_code=status.HTTP_201_CREATED)
async def assign_role_to_user(
    user_id: str,
    assignment: AssignRoleToUser,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users", "manage")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Assign a role, optionally scoped to an institution and/or polo. Repeats are no-ops."""
    ctx = ScopeContext(institution_id=assignment.institution_id, polo_id=assignment.polo_id)
    return await service.assign_role(db, user_id, assignment.role_id, ctx, current_user, audit, cache)


@router.delete("/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role_from_user(
    user_id: str,
    role_id: str,
    institution_id: Optional[str] = None,
    polo_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users", "manage")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Remove the assignment with exactly this scope."""
    ctx = ScopeContext(institution_id=institution_id, polo_id=polo_id)
    await service.unassign_role(db, user_id, role_id, ctx, current_user, audit, cache)
    return None


# ============================================================================
# Direct User Permission Routes
# ============================================================================

@router.get("/users/{user_id}/direct-permissions", response_model=List[UserPermissionResponse])
async def list_user_direct_permissions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users", "read")),
):
    """Permissions granted straight to a user, with scopes and expiry."""
    return await service.list_user_direct_permissions(db, user_id)


@router.post(
    "/users/{user_id}/direct-permissions",
    response_model=UserPermissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_permission_to_user(
    user_id: str,
    grant: GrantPermissionToUser,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users", "manage")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Grant a permission outside any role. Repeating a grant only updates its expiry."""
    ctx = ScopeContext(institution_id=grant.institution_id, polo_id=grant.polo_id)
    return await service.grant_permission_to_user(
        db, user_id, grant.permission_id, ctx, current_user, grant.expires_at, audit, cache
    )


@router.delete("/users/{user_id}/direct-permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_permission_from_user(
    user_id: str,
    permission_id: str,
    institution_id: Optional[str] = None,
    polo_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users", "manage")),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Remove the direct grant with exactly this scope."""
    ctx = ScopeContext(institution_id=institution_id, polo_id=polo_id)
    await service.revoke_permission_from_user(db, user_id, permission_id, ctx, current_user, audit, cache)
    return None


async def _permissions_summary(db: AsyncSession, user: User, ctx: ScopeContext) -> UserPermissionsResponse:
    roles = await get_user_roles(db, user.id, ctx)
    pairs = await get_user_permissions(db, user.id, ctx)
    return UserPermissionsResponse(
        user_id=user.id,
        institution_id=ctx.institution_id,
        polo_id=ctx.polo_id,
        is_superadmin=user.is_superadmin,
        roles=[RoleResponse.model_validate(role) for role in roles],
        permissions=[PermissionPair(resource=r, action=a) for r, a in sorted(pairs)],
    )


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions_route(
    user_id: str,
    institution_id: Optional[str] = None,
    polo_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users", "read")),
):
    """Roles and permissions a user holds in a scope."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return await _permissions_summary(db, user, ScopeContext(institution_id=institution_id, polo_id=polo_id))


# ============================================================================
# Current User Routes
# ============================================================================

@router.get("/me/permissions", response_model=UserPermissionsResponse)
async def get_my_permissions(
    institution_id: Optional[str] = None,
    polo_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """What the current user holds in a scope, for capability checks in the UI."""
    return await _permissions_summary(db, current_user, ScopeContext(institution_id=institution_id, polo_id=polo_id))


@router.get("/me/roles", response_model=List[RoleResponse])
async def get_my_roles(
    institution_id: Optional[str] = None,
    polo_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Roles of the current user that apply in a scope."""
    return await get_user_roles(db, current_user.id, ScopeContext(institution_id=institution_id, polo_id=polo_id))


@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check: PermissionCheckRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Check if the current user has a permission."""
    ctx = ScopeContext(
        institution_id=check.institution_id,
        polo_id=check.polo_id,
        owned_entity_id=check.owned_entity_id,
    )
    allowed = await has_permission(db, current_user.id, check.action, check.resource, ctx, cache=cache)
    
    return PermissionCheckResponse(
        has_permission=allowed,
        reason=None if allowed else f"No permission for {check.action} on {check.resource}",
    )

"""
Administrative operations on permissions, roles, role assignments and direct
user permissions.

Every write leaves an audit entry (best effort) and invalidates cached
decisions: role and permission writes drop the whole cache, assignment and
direct grant writes drop only the affected user.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import Conflict, NotFound
from app.features.audit.models import AuditActionType, AuditEntityType
from app.features.audit.recorder import AuditContext, NO_AUDIT_CONTEXT, log_permission_change, record
from app.features.permissions.cache import PermissionCache
from app.features.permissions.models import Permission, Role, UserPermission, UserRole
from app.features.permissions.rbac import (
    ScopeContext,
    add_permission_to_user,
    assign_role_to_user,
    find_assignment,
    find_user_permission,
    remove_permission_from_user,
    remove_role_from_user,
)
from app.features.permissions.schemas import PermissionCreate, PermissionUpdate, RoleCreate, RoleUpdate
from app.features.users.models import User
from app.utils import as_utc, get_logger


log = get_logger(__name__)


def _invalidate_all(cache: Optional[PermissionCache]) -> None:
    if cache is not None:
        cache.invalidate_all()


def permission_snapshot(permission: Permission) -> Dict[str, Any]:
    return {
        "name": permission.name,
        "resource": permission.resource,
        "action": permission.action,
        "description": permission.description,
    }


def role_snapshot(role: Role) -> Dict[str, Any]:
    return {
        "name": role.name,
        "description": role.description,
        "institution_id": role.institution_id,
        "is_system": role.is_system,
        "permissions": sorted(f"{p.resource}:{p.action}" for p in role.permissions),
    }


def _ensure_may_modify(role: Role, actor: User) -> None:
    if role.is_system and not actor.is_superadmin:
        raise Conflict(f"System role '{role.name}' can only be changed by a superadmin")


# ============================================================================
# Permissions
# ============================================================================

async def list_permissions(
    db: AsyncSession,
    resource: Optional[str] = None,
    action: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Permission]:
    stmt = select(Permission).order_by(Permission.resource, Permission.action)
    if resource:
        stmt = stmt.where(Permission.resource == resource)
    if action:
        stmt = stmt.where(Permission.action == action)
    result = await db.execute(stmt.offset(skip).limit(limit))
    return list(result.scalars().all())


async def get_permission(db: AsyncSession, permission_id: str) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None:
        raise NotFound("Permission not found")
    return permission


async def _ensure_pair_free(db: AsyncSession, resource: str, action: str, exclude_id: Optional[str] = None) -> None:
    stmt = select(Permission.id).where(Permission.resource == resource, Permission.action == action)
    if exclude_id:
        stmt = stmt.where(Permission.id != exclude_id)
    if (await db.execute(stmt)).first() is not None:
        raise Conflict(f"Permission {resource}:{action} already exists")


async def create_permission(
    db: AsyncSession,
    data: PermissionCreate,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> Permission:
    """
    Raises:
        Conflict: the (resource, action) pair already exists
    """
    await _ensure_pair_free(db, data.resource, data.action)
    
    permission = Permission(
        name=data.name or f"{data.resource}:{data.action}",
        resource=data.resource,
        action=data.action,
        description=data.description,
    )
    db.add(permission)
    await db.flush()
    await db.refresh(permission)
    
    await log_permission_change(
        db, actor.id, AuditActionType.CREATE, AuditEntityType.PERMISSION, permission.id,
        None, permission_snapshot(permission),
        audit=audit, resource_type=permission.resource, entity_name=permission.name,
    )
    _invalidate_all(cache)
    return permission


async def update_permission(
    db: AsyncSession,
    permission_id: str,
    data: PermissionUpdate,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> Permission:
    permission = await get_permission(db, permission_id)
    before = permission_snapshot(permission)
    
    update_data = data.model_dump(exclude_unset=True)
    resource = update_data.get("resource", permission.resource)
    action = update_data.get("action", permission.action)
    if (resource, action) != (permission.resource, permission.action):
        await _ensure_pair_free(db, resource, action, exclude_id=permission.id)
    
    for key, value in update_data.items():
        setattr(permission, key, value)
    await db.flush()
    await db.refresh(permission)
    
    await log_permission_change(
        db, actor.id, AuditActionType.UPDATE, AuditEntityType.PERMISSION, permission.id,
        before, permission_snapshot(permission),
        audit=audit, resource_type=permission.resource, entity_name=permission.name,
    )
    _invalidate_all(cache)
    return permission


async def delete_permission(
    db: AsyncSession,
    permission_id: str,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> None:
    permission = await get_permission(db, permission_id)
    before = permission_snapshot(permission)
    await db.delete(permission)
    await db.flush()
    
    await log_permission_change(
        db, actor.id, AuditActionType.DELETE, AuditEntityType.PERMISSION, permission_id,
        before, None,
        audit=audit, resource_type=before["resource"], entity_name=before["name"],
    )
    _invalidate_all(cache)


# ============================================================================
# Roles
# ============================================================================

async def list_roles(db: AsyncSession, institution_id: Optional[str] = None) -> List[Role]:
    """Global roles, plus the institution's own roles when one is given."""
    stmt = select(Role).order_by(Role.name)
    if institution_id:
        stmt = stmt.where((Role.institution_id == institution_id) | Role.institution_id.is_(None))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_role(db: AsyncSession, role_id: str) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFound("Role not found")
    return role


async def _ensure_role_name_free(
    db: AsyncSession, name: str, institution_id: Optional[str], exclude_id: Optional[str] = None
) -> None:
    scope = Role.institution_id.is_(None) if institution_id is None else Role.institution_id == institution_id
    stmt = select(Role.id).where(Role.name == name, scope)
    if exclude_id:
        stmt = stmt.where(Role.id != exclude_id)
    if (await db.execute(stmt)).first() is not None:
        raise Conflict(f"Role '{name}' already exists in this scope")


async def create_role(
    db: AsyncSession,
    data: RoleCreate,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> Role:
    """
    Raises:
        Conflict: duplicate name in the same institution, or a non-superadmin creating a system role
    """
    if data.is_system and not actor.is_superadmin:
        raise Conflict("Only a superadmin can create system roles")
    await _ensure_role_name_free(db, data.name, data.institution_id)
    
    role = Role(**data.model_dump())
    db.add(role)
    await db.flush()
    await db.refresh(role)
    
    await log_permission_change(
        db, actor.id, AuditActionType.CREATE, AuditEntityType.ROLE, role.id,
        None, role_snapshot(role),
        audit=audit, entity_name=role.name,
    )
    _invalidate_all(cache)
    return role


async def update_role(
    db: AsyncSession,
    role_id: str,
    data: RoleUpdate,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> Role:
    role = await get_role(db, role_id)
    _ensure_may_modify(role, actor)
    before = role_snapshot(role)
    
    update_data = data.model_dump(exclude_unset=True)
    if "name" in update_data and update_data["name"] != role.name:
        await _ensure_role_name_free(db, update_data["name"], role.institution_id, exclude_id=role.id)
    for key, value in update_data.items():
        setattr(role, key, value)
    await db.flush()
    await db.refresh(role)
    
    await log_permission_change(
        db, actor.id, AuditActionType.UPDATE, AuditEntityType.ROLE, role.id,
        before, role_snapshot(role),
        audit=audit, entity_name=role.name,
    )
    _invalidate_all(cache)
    return role


async def delete_role(
    db: AsyncSession,
    role_id: str,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> None:
    """
    Raises:
        Conflict: role still assigned to users, or a system role and actor is not superadmin
    """
    role = await get_role(db, role_id)
    _ensure_may_modify(role, actor)
    
    assignments = (await db.execute(
        select(func.count(UserRole.id)).where(UserRole.role_id == role_id)
    )).scalar_one()
    if assignments:
        raise Conflict(f"Role '{role.name}' is assigned to {assignments} user(s)")
    
    before = role_snapshot(role)
    await db.delete(role)
    await db.flush()
    
    await log_permission_change(
        db, actor.id, AuditActionType.DELETE, AuditEntityType.ROLE, role_id,
        before, None,
        audit=audit, entity_name=before["name"],
    )
    _invalidate_all(cache)


# ============================================================================
# Role Permissions
# ============================================================================

async def _change_role_permissions(
    db: AsyncSession,
    role: Role,
    permissions: List[Permission],
    action_type: AuditActionType,
    actor: User,
    audit: AuditContext,
    cache: Optional[PermissionCache],
) -> Role:
    before = role_snapshot(role)
    role.permissions = permissions
    await db.flush()
    await db.refresh(role)
    after = role_snapshot(role)
    
    if before != after:
        await log_permission_change(
            db, actor.id, action_type, AuditEntityType.ROLE, role.id,
            before, after,
            audit=audit, entity_name=role.name,
        )
        _invalidate_all(cache)
    return role


async def grant_permission_to_role(
    db: AsyncSession,
    role_id: str,
    permission_id: str,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> Role:
    """Attach a permission to a role. Granting one already attached changes nothing."""
    role = await get_role(db, role_id)
    _ensure_may_modify(role, actor)
    permission = await get_permission(db, permission_id)
    
    current = list(role.permissions)
    if permission not in current:
        current.append(permission)
    return await _change_role_permissions(db, role, current, AuditActionType.GRANT, actor, audit, cache)


async def revoke_permission_from_role(
    db: AsyncSession,
    role_id: str,
    permission_id: str,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> Role:
    role = await get_role(db, role_id)
    _ensure_may_modify(role, actor)
    
    current = [p for p in role.permissions if p.id != permission_id]
    if len(current) == len(role.permissions):
        raise NotFound("Permission not assigned to role")
    return await _change_role_permissions(db, role, current, AuditActionType.REVOKE, actor, audit, cache)


async def set_role_permissions(
    db: AsyncSession,
    role_id: str,
    permission_ids: List[str],
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> Role:
    """
    Replace every permission of a role.
    
    Raises:
        NotFound: any of the permission ids does not exist
    """
    role = await get_role(db, role_id)
    _ensure_may_modify(role, actor)
    
    wanted = list(dict.fromkeys(permission_ids))
    result = await db.execute(select(Permission).where(Permission.id.in_(wanted)))
    permissions = list(result.scalars().all())
    missing = set(wanted) - {p.id for p in permissions}
    if missing:
        raise NotFound(f"Permission(s) not found: {', '.join(sorted(missing))}")
    return await _change_role_permissions(db, role, permissions, AuditActionType.UPDATE, actor, audit, cache)


# ============================================================================
# User Roles
# ============================================================================

async def list_user_assignments(db: AsyncSession, user_id: str) -> List[UserRole]:
    result = await db.execute(
        select(UserRole).where(UserRole.user_id == user_id).order_by(UserRole.created_at)
    )
    return list(result.scalars().all())


def _assignment_snapshot(user_id: str, role: Role, ctx: ScopeContext) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "role_id": role.id,
        "role_name": role.name,
        "institution_id": ctx.institution_id,
        "polo_id": ctx.polo_id,
    }


async def assign_role(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    ctx: ScopeContext,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> UserRole:
    """
    Assign a role in a scope and return the assignment. Repeating an existing
    assignment returns it without a new row or audit entry.
    """
    is_new = await find_assignment(db, user_id, role_id, ctx) is None
    await assign_role_to_user(db, user_id, role_id, ctx, assigned_by_id=actor.id)
    assignment = await find_assignment(db, user_id, role_id, ctx)
    await db.refresh(assignment, attribute_names=["role"])
    
    if is_new:
        role = await get_role(db, role_id)
        await record(
            db,
            user_id=actor.id,
            action_type=AuditActionType.ASSIGN,
            entity_type=AuditEntityType.USER_ROLE,
            entity_id=assignment.id,
            description=f"Assigned role '{role.name}' to user {user_id}",
            new_value=_assignment_snapshot(user_id, role, ctx),
            ip_address=audit.ip_address,
            user_agent=audit.user_agent,
        )
        if cache is not None:
            cache.invalidate_user(user_id)
    return assignment


async def unassign_role(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    ctx: ScopeContext,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> None:
    """
    Raises:
        NotFound: the user does not hold the role in exactly that scope
    """
    assignment = await find_assignment(db, user_id, role_id, ctx)
    if assignment is None:
        raise NotFound("Role assignment not found")
    assignment_id = assignment.id
    await remove_role_from_user(db, user_id, role_id, ctx)
    
    role = await get_role(db, role_id)
    await record(
        db,
        user_id=actor.id,
        action_type=AuditActionType.UNASSIGN,
        entity_type=AuditEntityType.USER_ROLE,
        entity_id=assignment_id,
        description=f"Removed role '{role.name}' from user {user_id}",
        old_value=_assignment_snapshot(user_id, role, ctx),
        ip_address=audit.ip_address,
        user_agent=audit.user_agent,
    )
    if cache is not None:
        cache.invalidate_user(user_id)


# ============================================================================
# Direct User Permissions
# ============================================================================

async def list_user_direct_permissions(db: AsyncSession, user_id: str) -> List[UserPermission]:
    """Every direct grant of a user, expired ones included."""
    result = await db.execute(
        select(UserPermission).where(UserPermission.user_id == user_id).order_by(UserPermission.created_at)
    )
    return list(result.scalars().all())


def _grant_snapshot(grant: UserPermission) -> Dict[str, Any]:
    return {
        "user_id": grant.user_id,
        "permission": f"{grant.permission.resource}:{grant.permission.action}",
        "institution_id": grant.institution_id,
        "polo_id": grant.polo_id,
        "expires_at": as_utc(grant.expires_at).isoformat() if grant.expires_at else None,
    }


async def grant_permission_to_user(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    ctx: ScopeContext,
    actor: User,
    expires_at: Optional[datetime] = None,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> UserPermission:
    """
    Grant a permission straight to a user. Repeating a grant only moves its
    expiry, and is audited as an update when it does.
    
    Raises:
        NotFound: user or permission does not exist
    """
    existing = await find_user_permission(db, user_id, permission_id, ctx)
    before = _grant_snapshot(existing) if existing is not None else None
    
    grant = await add_permission_to_user(db, user_id, permission_id, ctx, expires_at, granted_by_id=actor.id)
    await db.refresh(grant, attribute_names=["permission", "expires_at"])
    after = _grant_snapshot(grant)
    
    if before != after:
        await record(
            db,
            user_id=actor.id,
            action_type=AuditActionType.GRANT if before is None else AuditActionType.UPDATE,
            entity_type=AuditEntityType.USER_PERMISSION,
            entity_id=grant.id,
            description=f"Granted permission {after['permission']} to user {user_id}",
            old_value=before,
            new_value=after,
            resource_type=grant.permission.resource,
            ip_address=audit.ip_address,
            user_agent=audit.user_agent,
        )
        if cache is not None:
            cache.invalidate_user(user_id)
    return grant


async def revoke_permission_from_user(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    ctx: ScopeContext,
    actor: User,
    audit: AuditContext = NO_AUDIT_CONTEXT,
    cache: Optional[PermissionCache] = None,
) -> None:
    """
    Raises:
        NotFound: the user holds no direct grant of that permission in exactly that scope
    """
    grant = await find_user_permission(db, user_id, permission_id, ctx)
    if grant is None:
        raise NotFound("Direct permission grant not found")
    grant_id = grant.id
    snapshot = _grant_snapshot(grant)
    resource_type = grant.permission.resource
    await remove_permission_from_user(db, user_id, permission_id, ctx)
    
    await record(
        db,
        user_id=actor.id,
        action_type=AuditActionType.REVOKE,
        entity_type=AuditEntityType.USER_PERMISSION,
        entity_id=grant_id,
        description=f"Revoked permission {snapshot['permission']} from user {user_id}",
        old_value=snapshot,
        resource_type=resource_type,
        ip_address=audit.ip_address,
        user_agent=audit.user_agent,
    )
    if cache is not None:
        cache.invalidate_user(user_id)

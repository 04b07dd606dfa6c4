"""
Role-based permission resolution.

Implements:
- Scope filtering of a user's role assignments and direct grants (institution / polo)
- Permission matching with synonym expansion and the manage wildcard
- The `has_permission` entry point used by route dependencies
- Role assignment lifecycle (assign / remove)
- Direct user permission lifecycle (add / remove, optional expiry)
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, List, Set, Tuple
from sqlalchemy import select, delete, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, ValidationFailed
from app.features.institutions.models import Polo
from app.features.permissions.cache import PermissionCache
from app.features.permissions.models import Permission, Role, UserPermission, UserRole, role_permissions
from app.features.permissions.normalizer import (
    MANAGE,
    action_covers,
    expand_action,
    expand_resource,
    parse_action,
)
from app.features.users.models import User
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)


@dataclass(frozen=True)
class ScopeContext:
    """
    Where a check happens.

    `owned_entity_id` is only read by `has_permission`: when set, the principal
    passes if they own that entity of the requested resource type.
    """
    institution_id: Optional[str] = None
    polo_id: Optional[str] = None
    owned_entity_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


NO_SCOPE = ScopeContext()


# ============================================================================
# Helpers
# ============================================================================

def _eq_or_null(column, value):
    """Exact match that treats NULL as a value."""
    return column.is_(None) if value is None else column == value


def _assignment_in_scope(ctx: ScopeContext):
    """Unscoped assignments always match; scoped ones must match the context."""
    return and_(
        or_(UserRole.institution_id.is_(None), UserRole.institution_id == ctx.institution_id),
        or_(UserRole.polo_id.is_(None), UserRole.polo_id == ctx.polo_id),
    )


def _role_in_scope(ctx: ScopeContext):
    """Global roles apply everywhere; an institution's own roles only inside it."""
    return or_(Role.institution_id.is_(None), _eq_or_null(Role.institution_id, ctx.institution_id))


def _grant_in_scope(ctx: ScopeContext):
    """Same scope rule as role assignments, and the grant must not have expired."""
    return and_(
        or_(UserPermission.institution_id.is_(None), UserPermission.institution_id == ctx.institution_id),
        or_(UserPermission.polo_id.is_(None), UserPermission.polo_id == ctx.polo_id),
        or_(UserPermission.expires_at.is_(None), UserPermission.expires_at > utcnow()),
    )


async def load_principal(db: AsyncSession, user_id: str) -> Optional[User]:
    """The user behind `user_id` if it exists and is active."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        return None
    return user


async def _scoped_role_ids(db: AsyncSession, user_id: str, ctx: ScopeContext) -> List[str]:
    stmt = (
        select(UserRole.role_id)
        .join(Role, Role.id == UserRole.role_id)
        .where(UserRole.user_id == user_id, _assignment_in_scope(ctx), _role_in_scope(ctx))
        .distinct()
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _first_covering(permissions, resources: tuple, action: str) -> Optional[Permission]:
    for permission in permissions:
        if permission.resource in resources and action_covers(parse_action(permission.action), action):
            return permission
    return None


# ============================================================================
# Introspection
# ============================================================================

async def get_user_roles(db: AsyncSession, user_id: str, ctx: ScopeContext = NO_SCOPE) -> List[Role]:
    """Distinct roles the user holds that apply in `ctx`."""
    role_ids = await _scoped_role_ids(db, user_id, ctx)
    if not role_ids:
        return []
    result = await db.execute(select(Role).where(Role.id.in_(role_ids)).order_by(Role.name))
    return list(result.scalars().all())


async def get_user_permissions(db: AsyncSession, user_id: str, ctx: ScopeContext = NO_SCOPE) -> Set[Tuple[str, str]]:
    """Every (resource, action) pair granted in `ctx` through roles or unexpired direct grants."""
    through_roles = (
        select(Permission.resource, Permission.action)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == role_permissions.c.role_id)
        .join(Role, Role.id == UserRole.role_id)
        .where(UserRole.user_id == user_id, _assignment_in_scope(ctx), _role_in_scope(ctx))
    )
    direct = (
        select(Permission.resource, Permission.action)
        .join(UserPermission, UserPermission.permission_id == Permission.id)
        .where(UserPermission.user_id == user_id, _grant_in_scope(ctx))
    )
    pairs = set()
    for stmt in (through_roles, direct):
        result = await db.execute(stmt)
        pairs.update((resource, action) for resource, action in result.all())
    return pairs


# ============================================================================
# Permission Checking Functions
# ============================================================================

async def _direct_grant(
    db: AsyncSession, user_id: str, resources: tuple, actions: tuple, action: str, ctx: ScopeContext
) -> Optional[Permission]:
    stmt = (
        select(Permission)
        .join(UserPermission, UserPermission.permission_id == Permission.id)
        .where(
            UserPermission.user_id == user_id,
            _grant_in_scope(ctx),
            Permission.resource.in_(resources),
            Permission.action.in_(actions),
        )
    )
    result = await db.execute(stmt)
    return _first_covering(result.scalars().all(), resources, action)


async def has_role_permission(
    db: AsyncSession,
    user_id: str,
    resource: str,
    action: str,
    ctx: ScopeContext = NO_SCOPE,
) -> bool:
    """
    Check whether the user's direct grants or roles allow `action` on `resource` in `ctx`.
    
    1. Superadmins pass immediately
    2. The pair is expanded through the synonym tables
    3. An unexpired direct grant in scope matching an expanded pair is enough
    4. Role assignments are filtered to the scope (unscoped ones always apply),
       and institution-owned roles only count inside their institution
    5. Any attached permission matching an expanded pair, or granting
       "manage" on an expanded resource, is enough
    
    Permissions are purely additive; nothing here can subtract access.
    """
    user = await load_principal(db, user_id)
    if user is None:
        log.debug("Unknown or inactive user %s denied %s on %s", user_id, action, resource)
        return False
    
    if user.is_superadmin:
        return True
    
    resources = expand_resource(resource)
    actions = (*expand_action(action), MANAGE)
    
    permission = await _direct_grant(db, user_id, resources, actions, action, ctx)
    if permission is not None:
        log.debug("User %s granted %s on %s via direct permission %s", user_id, action, resource, permission.name)
        return True
    
    role_ids = await _scoped_role_ids(db, user_id, ctx)
    if not role_ids:
        log.debug("User %s has no roles in scope %s", user_id, ctx.as_dict())
        return False
    
    stmt = (
        select(Permission)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .where(
            role_permissions.c.role_id.in_(role_ids),
            Permission.resource.in_(resources),
            Permission.action.in_(actions),
        )
    )
    result = await db.execute(stmt)
    
    permission = _first_covering(result.scalars().all(), resources, action)
    if permission is not None:
        log.debug(
            "User %s granted %s on %s via permission %s",
            user_id, action, resource, permission.name,
        )
        return True
    
    log.debug("User %s denied %s on %s in scope %s", user_id, action, resource, ctx.as_dict())
    return False


async def has_permission(
    db: AsyncSession,
    user_id: str,
    action: str,
    resource: str,
    ctx: ScopeContext = NO_SCOPE,
    cache: Optional[PermissionCache] = None,
) -> bool:
    """
    Primary entry point for route protection.
    
    Order: missing or inactive principal denies, superadmin allows, ownership
    of `ctx.owned_entity_id` allows, otherwise the RBAC decision stands.
    Any error while deciding is logged and resolves to deny; it is never cached.
    
    Args:
        db: Database session
        user_id: Principal id
        action: Action (e.g., "read", "ler", "delete")
        resource: Resource type (e.g., "leads", "cliente")
        ctx: Institution / polo scope and optional owned entity
        cache: Optional decision cache
    """
    # Local import: the evaluator builds on this module
    from app.features.abac.evaluator import is_entity_owner
    
    key = None
    if cache is not None and cache.enabled:
        key = PermissionCache.make_key(user_id, resource, action, ctx.as_dict())
        cached = cache.get(key)
        if cached is not None:
            return cached
    
    try:
        user = await load_principal(db, user_id)
        if user is None:
            allowed = False
        elif user.is_superadmin:
            allowed = True
        elif ctx.owned_entity_id and await is_entity_owner(db, user_id, resource, ctx.owned_entity_id):
            log.debug("User %s owns %s %s", user_id, resource, ctx.owned_entity_id)
            allowed = True
        else:
            allowed = await has_role_permission(db, user_id, resource, action, ctx)
    except Exception:
        log.exception("Permission check failed for user %s (%s on %s); denying", user_id, action, resource)
        return False
    
    if key is not None:
        cache.put(key, allowed)
    return allowed


# ============================================================================
# Role Assignment
# ============================================================================

async def find_assignment(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    ctx: ScopeContext = NO_SCOPE,
) -> Optional[UserRole]:
    """The assignment with exactly this scope (NULL scopes compared as values)."""
    stmt = select(UserRole).where(
        UserRole.user_id == user_id,
        UserRole.role_id == role_id,
        _eq_or_null(UserRole.institution_id, ctx.institution_id),
        _eq_or_null(UserRole.polo_id, ctx.polo_id),
    )
    return (await db.execute(stmt)).scalars().first()


async def ensure_scope_fits_role(db: AsyncSession, role: Role, ctx: ScopeContext) -> None:
    """
    An institution's own role can only be held inside that institution.
    
    Raises:
        ValidationFailed: scope is missing, names another institution, or a polo of another institution
    """
    if role.institution_id is None:
        return
    if ctx.institution_id != role.institution_id:
        raise ValidationFailed(
            f"Role '{role.name}' belongs to institution {role.institution_id}",
            fields={"institution_id": f"must be {role.institution_id} for this role"},
        )
    if ctx.polo_id:
        polo = await db.get(Polo, ctx.polo_id)
        if polo is not None and polo.institution_id != role.institution_id:
            raise ValidationFailed(
                f"Polo {ctx.polo_id} is not part of institution {role.institution_id}",
                fields={"polo_id": "must belong to the role's institution"},
            )


async def assign_role_to_user(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    ctx: ScopeContext = NO_SCOPE,
    assigned_by_id: Optional[str] = None,
) -> bool:
    """
    Give `user_id` the role in the scope of `ctx`.
    
    Idempotent: an identical assignment (NULL scopes compared as values) is
    left alone and the call still returns True.
    
    Raises:
        NotFound: role or user does not exist
        ValidationFailed: the scope does not fit an institution-owned role
    """
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFound("Role not found")
    if await db.get(User, user_id) is None:
        raise NotFound("User not found")
    await ensure_scope_fits_role(db, role, ctx)
    
    if await find_assignment(db, user_id, role_id, ctx) is not None:
        log.debug("User %s already holds role %s in scope %s", user_id, role_id, ctx.as_dict())
        return True
    
    db.add(UserRole(
        user_id=user_id,
        role_id=role_id,
        institution_id=ctx.institution_id,
        polo_id=ctx.polo_id,
        created_by_id=assigned_by_id,
    ))
    await db.flush()
    log.info("Assigned role %s to user %s in scope %s", role.name, user_id, ctx.as_dict())
    return True


async def remove_role_from_user(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    ctx: ScopeContext = NO_SCOPE,
) -> bool:
    """Remove the exact scoped assignment. False when nothing matched."""
    stmt = delete(UserRole).where(
        UserRole.user_id == user_id,
        UserRole.role_id == role_id,
        _eq_or_null(UserRole.institution_id, ctx.institution_id),
        _eq_or_null(UserRole.polo_id, ctx.polo_id),
    ).execution_options(synchronize_session="fetch")
    result = await db.execute(stmt)
    removed = result.rowcount > 0
    if removed:
        log.info("Removed role %s from user %s in scope %s", role_id, user_id, ctx.as_dict())
    return removed


# ============================================================================
# Direct User Permissions
# ============================================================================

async def find_user_permission(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    ctx: ScopeContext = NO_SCOPE,
) -> Optional[UserPermission]:
    """The direct grant with exactly this scope, expired or not."""
    stmt = select(UserPermission).where(
        UserPermission.user_id == user_id,
        UserPermission.permission_id == permission_id,
        _eq_or_null(UserPermission.institution_id, ctx.institution_id),
        _eq_or_null(UserPermission.polo_id, ctx.polo_id),
    )
    return (await db.execute(stmt)).scalars().first()


async def add_permission_to_user(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    ctx: ScopeContext = NO_SCOPE,
    expires_at: Optional[datetime] = None,
    granted_by_id: Optional[str] = None,
) -> UserPermission:
    """
    Grant one permission straight to a user in the scope of `ctx`.
    
    Repeating a grant keeps the single row; a new `expires_at` replaces the old one.
    
    Raises:
        NotFound: permission or user does not exist
    """
    if await db.get(Permission, permission_id) is None:
        raise NotFound("Permission not found")
    if await db.get(User, user_id) is None:
        raise NotFound("User not found")
    if expires_at is not None:
        expires_at = as_utc(expires_at)
    
    grant = await find_user_permission(db, user_id, permission_id, ctx)
    if grant is not None:
        if expires_at is not None:
            grant.expires_at = expires_at
            await db.flush()
        return grant
    
    grant = UserPermission(
        user_id=user_id,
        permission_id=permission_id,
        institution_id=ctx.institution_id,
        polo_id=ctx.polo_id,
        expires_at=expires_at,
        created_by_id=granted_by_id,
    )
    db.add(grant)
    await db.flush()
    log.info("Granted permission %s to user %s in scope %s", permission_id, user_id, ctx.as_dict())
    return grant


async def remove_permission_from_user(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    ctx: ScopeContext = NO_SCOPE,
) -> bool:
    """Remove the exact scoped direct grant. False when nothing matched."""
    stmt = delete(UserPermission).where(
        UserPermission.user_id == user_id,
        UserPermission.permission_id == permission_id,
        _eq_or_null(UserPermission.institution_id, ctx.institution_id),
        _eq_or_null(UserPermission.polo_id, ctx.polo_id),
    ).execution_options(synchronize_session="fetch")
    result = await db.execute(stmt)
    removed = result.rowcount > 0
    if removed:
        log.info("Removed permission %s from user %s in scope %s", permission_id, user_id, ctx.as_dict())
    return removed

"""
FastAPI dependencies for route protection.

Implements:
- Decision cache lookup from application state
- `require_permission` dependency factory resolving scope from the request
"""
from typing import Optional
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.errors import PermissionDenied
from app.features.audit.recorder import AuditContext, audit_context_from_request
from app.features.permissions.cache import PermissionCache
from app.features.permissions.rbac import ScopeContext, has_permission
from app.features.users.dependencies import get_current_user
from app.features.users.models import User


def get_permission_cache(request: Request) -> Optional[PermissionCache]:
    """Decision cache installed on `app.state` at startup, if any."""
    return getattr(request.app.state, "permission_cache", None)


def get_audit_context(request: Request) -> AuditContext:
    return audit_context_from_request(request)


def _request_param(request: Request, name: Optional[str]) -> Optional[str]:
    """Path parameter first, then query string."""
    if not name:
        return None
    return request.path_params.get(name) or request.query_params.get(name)


def require_permission(
    resource: str,
    action: str,
    institution_id_param: Optional[str] = None,
    polo_id_param: Optional[str] = None,
    check_owned_resource: Optional[str] = None,
):
    """
    FastAPI dependency to require a specific permission.
    
    Usage:
        @router.get("/institutions/{institution_id}/leads")
        async def list_leads(
            user: User = Depends(require_permission("leads", "read", institution_id_param="institution_id"))
        ):
            # User may read leads in this institution
            pass
    
    Args:
        resource: Resource type
        action: Action
        institution_id_param: Path/query parameter holding the institution scope
        polo_id_param: Path/query parameter holding the polo scope
        check_owned_resource: Path/query parameter holding an entity id; owning it grants access
    
    Returns:
        Dependency function that returns the current user if they have permission
    
    Raises:
        PermissionDenied: the decision was deny
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user),
        cache: Optional[PermissionCache] = Depends(get_permission_cache),
    ) -> User:
        ctx = ScopeContext(
            institution_id=_request_param(request, institution_id_param),
            polo_id=_request_param(request, polo_id_param),
            owned_entity_id=_request_param(request, check_owned_resource),
        )
        
        if not await has_permission(db, current_user.id, action, resource, ctx, cache=cache):
            raise PermissionDenied(resource=resource, action=action)
        
        return current_user
    
    return permission_dependency

"""
Best-effort audit recording.

Audit writes run inside a SAVEPOINT on the caller's session. A failed write is
rolled back to the savepoint, logged, and reported as None; the caller's own
transaction and response are untouched. An action can therefore succeed
without its audit entry.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.audit.diff import diff, format_permission_change_description
from app.features.audit.models import AuditEntry, AuditActionType, AuditEntityType
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class AuditContext:
    """Where an audited request came from."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


NO_AUDIT_CONTEXT = AuditContext()


def audit_context_from_request(request: Request) -> AuditContext:
    return AuditContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _to_json(value: Any) -> Any:
    """Round-trip through JSON so dates, enums and the like store as plain values."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


async def record(
    db: AsyncSession,
    user_id: Optional[str],
    action_type: AuditActionType | str,
    entity_type: AuditEntityType | str,
    entity_id: Optional[str],
    description: str,
    old_value: Optional[Dict[str, Any]] = None,
    new_value: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    resource_type: Optional[str] = None,
) -> Optional[AuditEntry]:
    """
    Create an audit entry. Never raises.
    
    Args:
        db: Database session of the audited operation
        user_id: User performing the action
        action_type: What was done (create, grant, assign...)
        entity_type: Kind of entity acted upon (role, permission...)
        entity_id: ID of the entity
        description: Human-readable summary
        old_value: Snapshot before the action
        new_value: Snapshot after the action
        metadata: Additional details (computed changes, scope...)
        ip_address: Client IP address
        user_agent: Client user agent
        resource_type: Resource key the action concerned, when relevant
    
    Returns:
        The persisted AuditEntry, or None when the write failed
    """
    try:
        entry = AuditEntry(
            user_id=user_id,
            action_type=AuditActionType(action_type),
            entity_type=AuditEntityType(entity_type),
            entity_id=str(entity_id) if entity_id is not None else None,
            resource_type=resource_type,
            description=description,
            old_value=_to_json(old_value),
            new_value=_to_json(new_value),
            metadata_=_to_json(metadata),
            ip_address=ip_address,
            user_agent=user_agent[:255] if user_agent else None,
        )
        async with db.begin_nested():
            db.add(entry)
    except (SQLAlchemyError, TypeError, ValueError):
        log.exception(
            "Audit write failed: user=%s action=%s entity=%s:%s",
            user_id, action_type, entity_type, entity_id,
        )
        return None
    
    log.info(
        "Audit: user=%s action=%s entity=%s:%s",
        user_id, entry.action_type.value, entry.entity_type.value, entity_id,
    )
    return entry


async def log_permission_change(
    db: AsyncSession,
    user_id: Optional[str],
    action_type: AuditActionType | str,
    entity_type: AuditEntityType | str,
    entity_id: Optional[str],
    old_permissions: Optional[Dict[str, Any]],
    new_permissions: Optional[Dict[str, Any]],
    audit: AuditContext = NO_AUDIT_CONTEXT,
    resource_type: Optional[str] = None,
    entity_name: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Optional[AuditEntry]:
    """
    Record a permission change with its computed diff.
    
    The diff is stored under metadata["changes"] and rendered into the description.
    """
    old_snapshot = _to_json(old_permissions)
    new_snapshot = _to_json(new_permissions)
    changes = diff(old_snapshot, new_snapshot)
    description = format_permission_change_description(
        getattr(entity_type, "value", entity_type), changes, entity_name
    )
    return await record(
        db,
        user_id=user_id,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
        old_value=old_snapshot,
        new_value=new_snapshot,
        metadata={"changes": changes, **(extra or {})},
        ip_address=audit.ip_address,
        user_agent=audit.user_agent,
        resource_type=resource_type,
    )

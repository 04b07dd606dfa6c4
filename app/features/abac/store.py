"""
Repositories for the three ABAC rule families.

The families are symmetric: list, get, create (validated), delete, and a
lookup of active rules matching a request. Creation and deletion each leave
an audit entry and drop cached decisions.
"""
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, ValidationFailed
from app.features.abac.models import InstitutionPhasePermission, PeriodPermissionRule, PaymentStatusPermission
from app.features.abac.schemas import (
    InstitutionPhasePermissionCreate,
    PeriodPermissionRuleCreate,
    PaymentStatusPermissionCreate,
)
from app.features.audit.models import AuditActionType, AuditEntityType
from app.features.audit.recorder import AuditContext, NO_AUDIT_CONTEXT, log_permission_change
from app.features.permissions.cache import PermissionCache
from app.features.permissions.normalizer import MANAGE, expand_action, expand_resource
from app.utils import get_logger


log = get_logger(__name__)

RuleT = TypeVar("RuleT", InstitutionPhasePermission, PeriodPermissionRule, PaymentStatusPermission)


def validation_failed_from(exc: ValidationError) -> ValidationFailed:
    """Field -> message map in the same shape the HTTP validation handler returns."""
    fields = {}
    for error in exc.errors():
        key = error["loc"][-1] if error.get("loc") else "root"
        fields[str(key)] = error["msg"]
    return ValidationFailed("Invalid rule", fields=fields)


def rule_snapshot(rule) -> Dict[str, Any]:
    return {column.key: getattr(rule, column.key) for column in rule.__table__.columns
            if column.key not in ("created_at", "updated_at")}


class RuleStore(Generic[RuleT]):
    """
    CRUD and matching for one rule family.
    
    Usage:
        rule = await period_rules.create(db, {"resource": "enrollments", ...}, created_by_id=user.id)
        matches = await period_rules.find_active(db, "matricula", "criar")
    """
    
    def __init__(self, model: Type[RuleT], create_schema: Type[BaseModel], entity_type: AuditEntityType):
        self.model = model
        self.create_schema = create_schema
        self.entity_type = entity_type
    
    async def list_all(self, db: AsyncSession, active_only: bool = False) -> List[RuleT]:
        stmt = select(self.model).order_by(self.model.resource, self.model.action)
        if active_only:
            stmt = stmt.where(self.model.is_active == True)  # noqa: E712
        result = await db.execute(stmt)
        return list(result.scalars().all())
    
    async def get_by_id(self, db: AsyncSession, rule_id: str) -> RuleT:
        rule = await db.get(self.model, rule_id)
        if rule is None:
            raise NotFound(f"{self.entity_type.value.replace('_', ' ').capitalize()} not found")
        return rule
    
    async def create(
        self,
        db: AsyncSession,
        payload: BaseModel | Dict[str, Any],
        created_by_id: Optional[str] = None,
        audit: AuditContext = NO_AUDIT_CONTEXT,
        cache: Optional[PermissionCache] = None,
    ) -> RuleT:
        """
        Validate and persist a rule. Nothing is written when validation fails.
        
        Raises:
            ValidationFailed: payload breaks the family's schema
        """
        try:
            data = self.create_schema.model_validate(
                payload.model_dump() if isinstance(payload, BaseModel) else payload
            )
        except ValidationError as exc:
            raise validation_failed_from(exc)
        
        rule = self.model(**data.model_dump())
        db.add(rule)
        await db.flush()
        await db.refresh(rule)
        log.info("Created %s %s (%s:%s)", self.entity_type.value, rule.id, rule.resource, rule.action)
        
        await log_permission_change(
            db,
            user_id=created_by_id,
            action_type=AuditActionType.CREATE,
            entity_type=self.entity_type,
            entity_id=rule.id,
            old_permissions=None,
            new_permissions=rule_snapshot(rule),
            audit=audit,
            resource_type=rule.resource,
        )
        if cache is not None:
            cache.invalidate_all()
        return rule
    
    async def delete(
        self,
        db: AsyncSession,
        rule_id: str,
        deleted_by_id: Optional[str] = None,
        audit: AuditContext = NO_AUDIT_CONTEXT,
        cache: Optional[PermissionCache] = None,
    ) -> None:
        """
        Raises:
            NotFound: no rule with that id
        """
        rule = await self.get_by_id(db, rule_id)
        snapshot = rule_snapshot(rule)
        await db.delete(rule)
        await db.flush()
        log.info("Deleted %s %s", self.entity_type.value, rule_id)
        
        await log_permission_change(
            db,
            user_id=deleted_by_id,
            action_type=AuditActionType.DELETE,
            entity_type=self.entity_type,
            entity_id=rule_id,
            old_permissions=snapshot,
            new_permissions=None,
            audit=audit,
            resource_type=snapshot["resource"],
        )
        if cache is not None:
            cache.invalidate_all()
    
    async def find_active(self, db: AsyncSession, resource: str, action: str, **attrs) -> List[RuleT]:
        """
        Active rules for the request, matched through the synonym tables.
        
        A rule on "manage" applies to every action of its resource. Extra
        keyword arguments filter on family columns (phase=..., payment_status=...).
        """
        stmt = select(self.model).where(
            self.model.is_active == True,  # noqa: E712
            self.model.resource.in_(expand_resource(resource)),
            self.model.action.in_((*expand_action(action), MANAGE)),
        )
        for column, value in attrs.items():
            stmt = stmt.where(getattr(self.model, column) == value)
        result = await db.execute(stmt)
        return list(result.scalars().all())


institution_phase_rules: RuleStore[InstitutionPhasePermission] = RuleStore(
    InstitutionPhasePermission,
    InstitutionPhasePermissionCreate,
    AuditEntityType.INSTITUTION_PHASE_PERMISSION,
)

period_rules: RuleStore[PeriodPermissionRule] = RuleStore(
    PeriodPermissionRule,
    PeriodPermissionRuleCreate,
    AuditEntityType.PERIOD_PERMISSION_RULE,
)

payment_status_rules: RuleStore[PaymentStatusPermission] = RuleStore(
    PaymentStatusPermission,
    PaymentStatusPermissionCreate,
    AuditEntityType.PAYMENT_STATUS_PERMISSION,
)

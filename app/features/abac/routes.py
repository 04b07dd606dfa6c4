"""
ABAC rule management and contextual check routes.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.abac import evaluator
from app.features.abac.schemas import (
    InstitutionPhasePermissionCreate,
    InstitutionPhasePermissionResponse,
    PeriodPermissionRuleCreate,
    PeriodPermissionRuleResponse,
    PaymentStatusPermissionCreate,
    PaymentStatusPermissionResponse,
    ContextualCheck,
    InstitutionPhaseCheck,
    PaymentStatusCheck,
    PeriodCheck,
    OwnershipCheck,
    CheckResponse,
)
from app.features.abac.store import institution_phase_rules, period_rules, payment_status_rules
from app.features.audit.recorder import AuditContext
from app.features.permissions.cache import PermissionCache
from app.features.permissions.dependencies import get_audit_context, get_permission_cache, require_permission
from app.features.users.dependencies import get_current_user, get_current_superadmin
from app.features.users.models import User


router = APIRouter()


# ============================================================================
# Institution Phase Rules
# ============================================================================

@router.get("/institution-phase", response_model=List[InstitutionPhasePermissionResponse])
async def list_institution_phase_rules(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    return await institution_phase_rules.list_all(db)


@router.get("/institution-phase/{rule_id}", response_model=InstitutionPhasePermissionResponse)
async def get_institution_phase_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    return await institution_phase_rules.get_by_id(db, rule_id)


@router.post("/institution-phase", response_model=InstitutionPhasePermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_institution_phase_rule(
    rule: InstitutionPhasePermissionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_superadmin),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Create an institution phase rule (superadmin only)."""
    return await institution_phase_rules.create(db, rule, current_user.id, audit, cache)


@router.delete("/institution-phase/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_institution_phase_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_superadmin),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    await institution_phase_rules.delete(db, rule_id, current_user.id, audit, cache)
    return None


# ============================================================================
# Period Rules
# ============================================================================

@router.get("/period-rules", response_model=List[PeriodPermissionRuleResponse])
async def list_period_rules(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    return await period_rules.list_all(db)


@router.get("/period-rules/{rule_id}", response_model=PeriodPermissionRuleResponse)
async def get_period_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    return await period_rules.get_by_id(db, rule_id)


@router.post("/period-rules", response_model=PeriodPermissionRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_period_rule(
    rule: PeriodPermissionRuleCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_superadmin),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Create a period rule (superadmin only)."""
    return await period_rules.create(db, rule, current_user.id, audit, cache)


@router.delete("/period-rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_period_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_superadmin),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    await period_rules.delete(db, rule_id, current_user.id, audit, cache)
    return None


# ============================================================================
# Payment Status Rules
# ============================================================================

@router.get("/payment-status", response_model=List[PaymentStatusPermissionResponse])
async def list_payment_status_rules(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    return await payment_status_rules.list_all(db)


@router.get("/payment-status/{rule_id}", response_model=PaymentStatusPermissionResponse)
async def get_payment_status_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    return await payment_status_rules.get_by_id(db, rule_id)


@router.post("/payment-status", response_model=PaymentStatusPermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_payment_status_rule(
    rule: PaymentStatusPermissionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_superadmin),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    """Create a payment status rule (superadmin only)."""
    return await payment_status_rules.create(db, rule, current_user.id, audit, cache)


@router.delete("/payment-status/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment_status_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_superadmin),
    audit: AuditContext = Depends(get_audit_context),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
):
    await payment_status_rules.delete(db, rule_id, current_user.id, audit, cache)
    return None


# ============================================================================
# Checks (for the current user)
# ============================================================================

@router.post("/check", response_model=CheckResponse)
async def check_contextual(
    check: ContextualCheck,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Composite check: RBAC plus every supplied attribute predicate."""
    decision = await evaluator.evaluate_contextual_permission(db, current_user.id, check)
    return CheckResponse(allowed=decision.allowed, reason=decision.reason)


@router.post("/check-ownership", response_model=CheckResponse)
async def check_ownership(
    check: OwnershipCheck,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    allowed = await evaluator.is_entity_owner(db, current_user.id, check.resource_type, check.entity_id)
    return CheckResponse(allowed=allowed)


@router.post("/check-institution-phase", response_model=CheckResponse)
async def check_institution_phase(
    check: InstitutionPhaseCheck,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    allowed = await evaluator.check_institution_phase_access(
        db, current_user.id, check.resource, check.action, check.institution_id
    )
    return CheckResponse(allowed=allowed)


@router.post("/check-payment-status", response_model=CheckResponse)
async def check_payment_status(
    check: PaymentStatusCheck,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    allowed = await evaluator.check_payment_status_access(
        db, current_user.id, check.resource, check.action, check.entity_id
    )
    return CheckResponse(allowed=allowed)


@router.post("/check-period", response_model=CheckResponse)
async def check_period(
    check: PeriodCheck,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    allowed = await evaluator.check_period_access(
        db, current_user.id, check.resource, check.action, check.target_date, check.institution_id
    )
    return CheckResponse(allowed=allowed)

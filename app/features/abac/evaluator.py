"""
Contextual permission evaluation (RBAC + attribute rules).

Every check follows the same path:

    UNEVALUATED -> RBAC_CHECKED -> ABAC_CHECKED -> DECIDED

RBAC must grant the base permission first; attribute rules can only take that
grant away. A superadmin is allowed before any rule is consulted. Missing
principals, missing attribute data, storage errors and any other failure while
deciding all end in deny.
"""
import enum
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.abac.schemas import ContextualCheck
from app.features.abac.store import institution_phase_rules, period_rules, payment_status_rules
from app.features.institutions.lookups import (
    UnknownEntityType,
    get_entity_owner_id,
    get_entity_payment_status,
    get_institution,
    get_institution_phase,
)
from app.features.institutions.models import AcademicPeriod, InstitutionPhase, PaymentStatus
from app.features.permissions.rbac import ScopeContext, NO_SCOPE, has_role_permission, load_principal
from app.utils import as_utc, get_logger


log = get_logger(__name__)

Predicate = Tuple[str, Callable[[], Awaitable[bool]]]


class DecisionState(str, enum.Enum):
    UNEVALUATED = "unevaluated"
    RBAC_CHECKED = "rbac_checked"
    ABAC_CHECKED = "abac_checked"
    DECIDED = "decided"


@dataclass
class Decision:
    """Outcome of one evaluation and how far it got."""
    state: DecisionState = DecisionState.UNEVALUATED
    allowed: bool = False
    reason: str = "not evaluated"
    passed: List[str] = field(default_factory=list)

    def advance(self, state: DecisionState) -> None:
        self.state = state

    def allow(self, reason: str) -> "Decision":
        self.state = DecisionState.DECIDED
        self.allowed = True
        self.reason = reason
        return self

    def deny(self, reason: str) -> "Decision":
        self.state = DecisionState.DECIDED
        self.allowed = False
        self.reason = reason
        return self


async def evaluate(
    db: AsyncSession,
    user_id: str,
    resource: str,
    action: str,
    ctx: ScopeContext = NO_SCOPE,
    predicates: Optional[List[Predicate]] = None,
) -> Decision:
    """Run RBAC then each attribute predicate in order; the first failure decides."""
    decision = Decision()
    predicates = predicates or []
    try:
        user = await load_principal(db, user_id)
        if user is None:
            return decision.deny("unknown or inactive user")
        if user.is_superadmin:
            return decision.allow("superadmin")
        
        granted = await has_role_permission(db, user_id, resource, action, ctx)
        decision.advance(DecisionState.RBAC_CHECKED)
        if not granted:
            return decision.deny(f"no role grants {action} on {resource}")
        
        for name, predicate in predicates:
            if not await predicate():
                decision.advance(DecisionState.ABAC_CHECKED)
                return decision.deny(f"{name} rule not satisfied")
            decision.passed.append(name)
        if predicates:
            decision.advance(DecisionState.ABAC_CHECKED)
    except Exception:
        log.exception("Contextual check failed for user %s (%s on %s); denying", user_id, action, resource)
        return decision.deny("evaluation error")
    
    return decision.allow("granted" if not predicates else "granted; " + ", ".join(decision.passed))


def _rules_allow(rules) -> bool:
    """At least one matching rule, and none of them an explicit deny."""
    return bool(rules) and all(rule.is_allowed for rule in rules)


def _log_denial(user_id: str, resource: str, action: str, decision: Decision) -> bool:
    if not decision.allowed:
        log.debug("User %s denied %s on %s: %s", user_id, action, resource, decision.reason)
    return decision.allowed


# ============================================================================
# Attribute Predicates
# ============================================================================

async def _phase_allows(
    db: AsyncSession,
    resource: str,
    action: str,
    institution_id: Optional[str],
    expected_phase: Optional[InstitutionPhase] = None,
) -> bool:
    if not institution_id:
        log.warning("Institution phase check for %s:%s without an institution", resource, action)
        return False
    phase = await get_institution_phase(db, institution_id)
    if phase is None:
        log.warning("Institution %s not found for phase check", institution_id)
        return False
    if expected_phase is not None and phase != expected_phase:
        return False
    return _rules_allow(await institution_phase_rules.find_active(db, resource, action, phase=phase))


async def _payment_status_allows(
    db: AsyncSession,
    resource: str,
    action: str,
    entity_id: Optional[str],
    expected_status: Optional[PaymentStatus] = None,
) -> bool:
    if not entity_id:
        log.warning("Payment status check for %s:%s without an entity", resource, action)
        return False
    try:
        status = await get_entity_payment_status(db, resource, entity_id)
    except UnknownEntityType:
        log.warning("Resource type %s carries no payment status", resource)
        return False
    if status is None:
        log.warning("No payment status for %s %s", resource, entity_id)
        return False
    if expected_status is not None and status != expected_status:
        return False
    return _rules_allow(await payment_status_rules.find_active(db, resource, action, payment_status=status))


async def _subscription_allows(
    db: AsyncSession,
    institution_id: Optional[str],
    expected_status: PaymentStatus,
) -> bool:
    if not institution_id:
        return False
    institution = await get_institution(db, institution_id)
    if institution is None:
        return False
    return institution.subscription_status == expected_status


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


async def _period_allows(
    db: AsyncSession,
    resource: str,
    action: str,
    target: date | datetime,
    institution_id: Optional[str] = None,
) -> bool:
    """
    True when an active period rule's widened window contains `target` and no
    deny rule's window does.
    
    Window: [start - days_before_start, end + days_after_end], inclusive on both
    ends. Institution periods are used when an institution is given, global
    periods otherwise.
    """
    target = _as_datetime(target)
    containing = []
    for rule in await period_rules.find_active(db, resource, action):
        stmt = select(AcademicPeriod).where(
            AcademicPeriod.period_type == rule.period_type,
            AcademicPeriod.is_active == True,  # noqa: E712
        )
        if institution_id:
            stmt = stmt.where(AcademicPeriod.institution_id == institution_id)
        else:
            stmt = stmt.where(AcademicPeriod.institution_id.is_(None))
        
        for period in (await db.execute(stmt)).scalars().all():
            opens = as_utc(period.start_date) - timedelta(days=rule.days_before_start)
            closes = as_utc(period.end_date) + timedelta(days=rule.days_after_end)
            if opens <= target <= closes:
                containing.append(rule)
                break
    return _rules_allow(containing)


async def is_entity_owner(db: AsyncSession, user_id: str, resource_type: str, entity_id: str) -> bool:
    """
    Whether the entity's recorded owner is `user_id`.
    
    Owner columns are listed in `institutions.lookups.OWNER_COLUMNS` (creator,
    manager or assignee depending on the table). Unknown resource types are never owned.
    """
    try:
        owner_id = await get_entity_owner_id(db, resource_type, entity_id)
    except UnknownEntityType:
        log.debug("No owner column for resource type %s", resource_type)
        return False
    except SQLAlchemyError:
        log.exception("Owner lookup failed for %s %s; denying", resource_type, entity_id)
        return False
    return owner_id is not None and owner_id == user_id


# ============================================================================
# Public Checks
# ============================================================================

async def check_institution_phase_access(
    db: AsyncSession, user_id: str, resource: str, action: str, institution_id: str
) -> bool:
    """RBAC grant plus an active phase rule for the institution's current phase."""
    decision = await evaluate(
        db, user_id, resource, action,
        ScopeContext(institution_id=institution_id),
        [("institution phase", lambda: _phase_allows(db, resource, action, institution_id))],
    )
    return _log_denial(user_id, resource, action, decision)


async def check_payment_status_access(
    db: AsyncSession, user_id: str, resource: str, action: str, entity_id: str
) -> bool:
    """RBAC grant plus an active payment rule for the entity's current payment status."""
    decision = await evaluate(
        db, user_id, resource, action, NO_SCOPE,
        [("payment status", lambda: _payment_status_allows(db, resource, action, entity_id))],
    )
    return _log_denial(user_id, resource, action, decision)


async def check_period_access(
    db: AsyncSession,
    user_id: str,
    resource: str,
    action: str,
    target_date: date | datetime,
    institution_id: Optional[str] = None,
) -> bool:
    """RBAC grant plus an active period rule whose window contains `target_date`."""
    decision = await evaluate(
        db, user_id, resource, action,
        ScopeContext(institution_id=institution_id),
        [("period", lambda: _period_allows(db, resource, action, target_date, institution_id))],
    )
    return _log_denial(user_id, resource, action, decision)


async def _unchecked_rule_predicates(db: AsyncSession, check: ContextualCheck) -> List[Predicate]:
    """Failing predicates for active rule families the caller supplied no context for."""
    unchecked = []
    families = (
        ("institution phase", institution_phase_rules, check.institution_phase is not None),
        ("payment status", payment_status_rules, check.payment_status is not None),
        ("period", period_rules, check.date_range is not None),
    )
    for name, store, supplied in families:
        if not supplied and await store.find_active(db, check.resource, check.action):
            unchecked.append((f"unchecked {name}", _always_false))
    return unchecked


async def _always_false() -> bool:
    return False


async def evaluate_contextual_permission(db: AsyncSession, user_id: str, check: ContextualCheck) -> Decision:
    """
    Compose RBAC with whichever predicates `check` supplies (AND).
    
    - entity_owner_id: must be the caller (and the recorded owner when entity_id is given)
    - institution_phase: institution must be in that phase with a matching phase rule
    - payment_status: entity must have that status with a matching payment rule
    - subscription_status: institution's subscription must have that status
    - date_range: both ends must fall inside an allowed period window
    
    Omitted predicates are not evaluated. With ABAC_ENFORCE_UNCHECKED_RULES set,
    an active rule family left unchecked fails the decision instead.
    """
    resource, action = check.resource, check.action
    predicates: List[Predicate] = []
    
    if check.entity_owner_id is not None:
        async def owner() -> bool:
            if check.entity_owner_id != user_id:
                return False
            if check.entity_id:
                return await is_entity_owner(db, user_id, resource, check.entity_id)
            return True
        predicates.append(("ownership", owner))
    
    if check.institution_phase is not None:
        predicates.append((
            "institution phase",
            lambda: _phase_allows(db, resource, action, check.institution_id, check.institution_phase),
        ))
    
    if check.payment_status is not None:
        predicates.append((
            "payment status",
            lambda: _payment_status_allows(db, resource, action, check.entity_id, check.payment_status),
        ))
    
    if check.subscription_status is not None:
        predicates.append((
            "subscription status",
            lambda: _subscription_allows(db, check.institution_id, check.subscription_status),
        ))
    
    if check.date_range is not None:
        async def date_range() -> bool:
            return (
                await _period_allows(db, resource, action, check.date_range.start, check.institution_id)
                and await _period_allows(db, resource, action, check.date_range.end, check.institution_id)
            )
        predicates.append(("period", date_range))
    
    if config.ABAC_ENFORCE_UNCHECKED_RULES:
        try:
            predicates.extend(await _unchecked_rule_predicates(db, check))
        except SQLAlchemyError:
            log.exception("Rule lookup failed for %s:%s; denying", resource, action)
            return Decision().deny("evaluation error")
    
    ctx = ScopeContext(institution_id=check.institution_id, polo_id=check.polo_id)
    return await evaluate(db, user_id, resource, action, ctx, predicates)


async def check_contextual_permission(db: AsyncSession, user_id: str, check: ContextualCheck) -> bool:
    decision = await evaluate_contextual_permission(db, user_id, check)
    return _log_denial(user_id, check.resource, check.action, decision)

"""Tests for attribute rules and contextual evaluation."""

from datetime import date, timedelta

import pytest
from unittest.mock import patch
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.errors import NotFound, ValidationFailed
from app.features.abac import evaluator
from app.features.abac.evaluator import (
    DecisionState,
    check_contextual_permission,
    check_institution_phase_access,
    check_payment_status_access,
    check_period_access,
    evaluate_contextual_permission,
    is_entity_owner,
)
from app.features.abac.schemas import ContextualCheck
from app.features.abac.store import institution_phase_rules, payment_status_rules, period_rules
from app.features.audit.models import AuditActionType, AuditEntityType, AuditEntry
from app.features.institutions.models import InstitutionPhase, PaymentStatus, PeriodType
from app.features.permissions.cache import PermissionCache
from app.features.permissions.rbac import ScopeContext, has_permission
from factories import (
    give_role,
    make_client,
    make_enrollment,
    make_institution,
    make_invoice,
    make_lead,
    make_period,
    make_polo,
    make_role,
    make_user,
    utc,
)


def phase_rule(phase=InstitutionPhase.ACTIVE, resource="enrollments", action="create", **extra):
    return {"resource": resource, "action": action, "phase": phase, "description": "Phase gate", **extra}


def period_rule(before=0, after=0, resource="enrollments", action="create", **extra):
    return {
        "resource": resource,
        "action": action,
        "period_type": PeriodType.ENROLLMENT,
        "days_before_start": before,
        "days_after_end": after,
        "description": "Enrollment window",
        **extra,
    }


def payment_rule(status=PaymentStatus.PAID, resource="certificates", action="create", **extra):
    return {"resource": resource, "action": action, "payment_status": status, "description": "Paid only", **extra}


async def enroller(db, resource="enrollments", action="create"):
    user = await make_user(db)
    await give_role(db, user, await make_role(db, grants=[(resource, action)]))
    return user


class TestRuleStore:

    async def test_negative_days_fail_and_persist_nothing(self, db):
        with pytest.raises(ValidationFailed) as excinfo:
            await period_rules.create(db, period_rule(before=-1))
        assert "days_before_start" in excinfo.value.fields
        assert await period_rules.list_all(db) == []

    async def test_unknown_resource_and_short_description(self, db):
        with pytest.raises(ValidationFailed) as excinfo:
            await institution_phase_rules.create(db, phase_rule(resource="spaceships", description="no"))
        assert set(excinfo.value.fields) == {"resource", "description"}

    async def test_create_and_delete_are_audited(self, db):
        admin = await make_user(db, is_superadmin=True)
        cache = PermissionCache(ttl_seconds=60)
        cache.put(PermissionCache.make_key("u", "r", "a"), True)

        rule = await payment_status_rules.create(db, payment_rule(), created_by_id=admin.id, cache=cache)
        assert len(cache) == 0
        assert (await payment_status_rules.get_by_id(db, rule.id)).payment_status is PaymentStatus.PAID

        await payment_status_rules.delete(db, rule.id, admin.id)
        with pytest.raises(NotFound):
            await payment_status_rules.get_by_id(db, rule.id)

        entries = (await db.execute(select(AuditEntry).order_by(AuditEntry.created_at))).scalars().all()
        assert [e.action_type for e in entries] == [AuditActionType.CREATE, AuditActionType.DELETE]
        assert {e.entity_type for e in entries} == {AuditEntityType.PAYMENT_STATUS_PERMISSION}
        assert entries[0].resource_type == "certificates"

    async def test_find_active_matches_synonyms_and_manage(self, db):
        await institution_phase_rules.create(db, phase_rule(action="manage"))
        await institution_phase_rules.create(db, phase_rule(phase=InstitutionPhase.TRIAL, is_active=False))

        assert len(await institution_phase_rules.find_active(db, "matricula", "criar")) == 1
        assert len(await institution_phase_rules.list_all(db, active_only=True)) == 1
        assert len(await institution_phase_rules.list_all(db)) == 2


class TestInstitutionPhase:

    async def test_trial_institution_is_denied_active_only_rule(self, db):
        """A phase rule for "active" denies a trial institution even with RBAC granted."""
        user = await enroller(db)
        institution = await make_institution(db, phase=InstitutionPhase.TRIAL)
        await institution_phase_rules.create(db, phase_rule(InstitutionPhase.ACTIVE))

        assert not await check_institution_phase_access(db, user.id, "enrollments", "create", institution.id)

    async def test_matching_phase_is_allowed(self, db):
        user = await enroller(db)
        institution = await make_institution(db, phase=InstitutionPhase.ACTIVE)
        await institution_phase_rules.create(db, phase_rule(InstitutionPhase.ACTIVE))

        assert await check_institution_phase_access(db, user.id, "enrollments", "create", institution.id)

    async def test_no_rule_means_deny(self, db):
        user = await enroller(db)
        institution = await make_institution(db)
        assert not await check_institution_phase_access(db, user.id, "enrollments", "create", institution.id)

    async def test_unknown_institution(self, db):
        user = await enroller(db)
        await institution_phase_rules.create(db, phase_rule())
        assert not await check_institution_phase_access(db, user.id, "enrollments", "create", "missing")

    async def test_superadmin_bypasses_rules(self, db):
        admin = await make_user(db, is_superadmin=True)
        institution = await make_institution(db, phase=InstitutionPhase.SUSPENDED)
        assert await check_institution_phase_access(db, admin.id, "enrollments", "create", institution.id)


class TestPeriod:

    @pytest.fixture
    async def window(self, db):
        """Enrollment period in February, widened 7 days before and 3 days after."""
        user = await enroller(db)
        await make_period(db, PeriodType.ENROLLMENT, utc(2026, 2, 1), utc(2026, 2, 28))
        await period_rules.create(db, period_rule(before=7, after=3))
        return user

    @pytest.mark.parametrize("target,expected", [
        (utc(2026, 1, 25), True),
        (utc(2026, 1, 25) - timedelta(microseconds=1), False),
        (utc(2026, 3, 3), True),
        (utc(2026, 3, 3) + timedelta(microseconds=1), False),
        (utc(2026, 2, 14, 12), True),
    ])
    async def test_window_bounds_are_inclusive(self, db, window, target, expected):
        assert await check_period_access(db, window.id, "enrollments", "create", target) is expected

    async def test_plain_date_is_midnight_utc(self, db, window):
        assert await check_period_access(db, window.id, "enrollments", "create", date(2026, 1, 25))
        assert not await check_period_access(db, window.id, "enrollments", "create", date(2026, 1, 24))

    async def test_institution_periods_replace_global_ones(self, db, window):
        institution = await make_institution(db)
        await make_period(db, PeriodType.ENROLLMENT, utc(2026, 6, 1), utc(2026, 6, 30), institution_id=institution.id)

        target = utc(2026, 2, 10)
        assert await check_period_access(db, window.id, "enrollments", "create", target)
        assert not await check_period_access(db, window.id, "enrollments", "create", target, institution.id)
        assert await check_period_access(db, window.id, "enrollments", "create", utc(2026, 6, 2), institution.id)

    async def test_other_period_types_do_not_count(self, db):
        user = await enroller(db)
        await make_period(db, PeriodType.FINANCIAL, utc(2026, 2, 1), utc(2026, 2, 28))
        await period_rules.create(db, period_rule())
        assert not await check_period_access(db, user.id, "enrollments", "create", utc(2026, 2, 10))


class TestPaymentStatus:

    async def test_only_paid_enrollments_pass(self, db):
        user = await enroller(db)
        await payment_status_rules.create(db, payment_rule(resource="enrollments"))
        paid = await make_enrollment(db, PaymentStatus.PAID)
        overdue = await make_enrollment(db, PaymentStatus.OVERDUE)

        assert await check_payment_status_access(db, user.id, "enrollments", "create", paid.id)
        assert not await check_payment_status_access(db, user.id, "enrollments", "create", overdue.id)

    async def test_resource_without_payment_status(self, db):
        user = await enroller(db, "certificates", "create")
        await payment_status_rules.create(db, payment_rule())
        assert not await check_payment_status_access(db, user.id, "certificates", "create", "anything")


class TestContextual:

    async def test_abac_never_grants_what_rbac_denies(self, db):
        user = await make_user(db)
        institution = await make_institution(db, phase=InstitutionPhase.ACTIVE, owner_id=user.id)
        await institution_phase_rules.create(db, phase_rule())
        check = ContextualCheck(
            resource="enrollments",
            action="create",
            institution_id=institution.id,
            institution_phase=InstitutionPhase.ACTIVE,
            entity_owner_id=user.id,
        )

        decision = await evaluate_contextual_permission(db, user.id, check)
        assert not decision.allowed
        assert decision.reason == "no role grants create on enrollments"

    async def test_all_supplied_predicates_must_pass(self, db):
        user = await enroller(db)
        institution = await make_institution(db, phase=InstitutionPhase.ACTIVE, subscription_status=PaymentStatus.ACTIVE)
        await institution_phase_rules.create(db, phase_rule())
        base = dict(resource="enrollments", action="create", institution_id=institution.id)

        allowed = await evaluate_contextual_permission(db, user.id, ContextualCheck(
            **base, institution_phase=InstitutionPhase.ACTIVE, subscription_status=PaymentStatus.ACTIVE,
        ))
        assert allowed.allowed
        assert allowed.state is DecisionState.DECIDED
        assert allowed.passed == ["institution phase", "subscription status"]

        denied = await evaluate_contextual_permission(db, user.id, ContextualCheck(
            **base, institution_phase=InstitutionPhase.ACTIVE, subscription_status=PaymentStatus.OVERDUE,
        ))
        assert not denied.allowed
        assert denied.reason == "subscription status rule not satisfied"

    async def test_expected_phase_must_match_actual(self, db):
        user = await enroller(db)
        institution = await make_institution(db, phase=InstitutionPhase.ONBOARDING)
        await institution_phase_rules.create(db, phase_rule(InstitutionPhase.ACTIVE))
        check = ContextualCheck(
            resource="enrollments", action="create",
            institution_id=institution.id, institution_phase=InstitutionPhase.ACTIVE,
        )
        assert not await check_contextual_permission(db, user.id, check)

    async def test_ownership_predicate(self, db):
        user = await enroller(db, "enrollments", "update")
        other = await make_user(db)
        mine = await make_enrollment(db, created_by_id=user.id)
        theirs = await make_enrollment(db, created_by_id=other.id)

        def check(entity_id, owner_id):
            return ContextualCheck(resource="enrollments", action="update", entity_id=entity_id, entity_owner_id=owner_id)

        assert await check_contextual_permission(db, user.id, check(mine.id, user.id))
        assert not await check_contextual_permission(db, user.id, check(theirs.id, user.id))
        assert not await check_contextual_permission(db, user.id, check(mine.id, other.id))

    async def test_date_range_needs_both_ends_inside(self, db):
        user = await enroller(db)
        await make_period(db, PeriodType.ENROLLMENT, utc(2026, 2, 1), utc(2026, 2, 28))
        await period_rules.create(db, period_rule())

        def check(start, end):
            return ContextualCheck(
                resource="enrollments", action="create", date_range={"start": start, "end": end},
            )

        assert await check_contextual_permission(db, user.id, check(utc(2026, 2, 2), utc(2026, 2, 20)))
        assert not await check_contextual_permission(db, user.id, check(utc(2026, 2, 20), utc(2026, 3, 5)))

    async def test_unchecked_rules_pass_through_by_default(self, db):
        user = await enroller(db)
        await institution_phase_rules.create(db, phase_rule())
        check = ContextualCheck(resource="enrollments", action="create")
        assert await check_contextual_permission(db, user.id, check)

    async def test_unchecked_rules_can_be_enforced(self, db):
        user = await enroller(db)
        await institution_phase_rules.create(db, phase_rule())
        check = ContextualCheck(resource="enrollments", action="create")

        with patch.object(evaluator.config, "ABAC_ENFORCE_UNCHECKED_RULES", True):
            decision = await evaluate_contextual_permission(db, user.id, check)
        assert not decision.allowed
        assert decision.reason == "unchecked institution phase rule not satisfied"

    async def test_scope_is_applied_to_rbac(self, db):
        institution = await make_institution(db)
        polo = await make_polo(db, institution)
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("leads", "read")]), polo_id=polo.id)

        inside = ContextualCheck(resource="leads", action="read", polo_id=polo.id)
        outside = ContextualCheck(resource="leads", action="read")
        assert await check_contextual_permission(db, user.id, inside)
        assert not await check_contextual_permission(db, user.id, outside)


class TestOwnershipLookup:

    async def test_owner_columns(self, db):
        user = await make_user(db)
        institution = await make_institution(db, owner_id=user.id)
        polo = await make_polo(db, institution, manager_id=user.id)

        assert await is_entity_owner(db, user.id, "institutions", institution.id)
        assert await is_entity_owner(db, user.id, "polos", polo.id)
        assert not await is_entity_owner(db, user.id, "polos", "missing")
        assert not await is_entity_owner(db, user.id, "invoices", institution.id)

    async def test_assignee_owns_leads_and_clients(self, db):
        user = await make_user(db)
        other = await make_user(db)
        lead = await make_lead(db, assigned_to_id=user.id)
        client = await make_client(db, assigned_to_id=other.id)

        assert await is_entity_owner(db, user.id, "leads", lead.id)
        assert await is_entity_owner(db, other.id, "cliente", client.id)
        assert not await is_entity_owner(db, user.id, "clients", client.id)

    async def test_creator_owns_invoices(self, db):
        user = await make_user(db)
        invoice = await make_invoice(db, created_by_id=user.id)
        assert await is_entity_owner(db, user.id, "invoices", invoice.id)

    async def test_assigned_lead_passes_route_check_without_roles(self, db):
        user = await make_user(db)
        lead = await make_lead(db, assigned_to_id=user.id)
        assert await has_permission(db, user.id, "update", "leads", ScopeContext(owned_entity_id=lead.id))


class TestExplicitDeny:

    async def test_deny_rule_wins_over_matching_allow(self, db):
        user = await enroller(db)
        institution = await make_institution(db, phase=InstitutionPhase.SUSPENDED)
        await institution_phase_rules.create(db, phase_rule(InstitutionPhase.SUSPENDED))
        assert await check_institution_phase_access(db, user.id, "enrollments", "create", institution.id)

        await institution_phase_rules.create(db, phase_rule(InstitutionPhase.SUSPENDED, is_allowed=False))
        assert not await check_institution_phase_access(db, user.id, "enrollments", "create", institution.id)

    async def test_deny_rule_alone_denies(self, db):
        user = await enroller(db)
        institution = await make_institution(db, phase=InstitutionPhase.ACTIVE)
        rule = await institution_phase_rules.create(db, phase_rule(is_allowed=False))

        assert rule.is_allowed is False
        assert (await institution_phase_rules.get_by_id(db, rule.id)).is_allowed is False
        assert not await check_institution_phase_access(db, user.id, "enrollments", "create", institution.id)

    async def test_overdue_invoice_deny(self, db):
        user = await enroller(db, "invoices", "update")
        await payment_status_rules.create(db, payment_rule(PaymentStatus.OVERDUE, "invoices", "update"))
        await payment_status_rules.create(db, payment_rule(PaymentStatus.OVERDUE, "invoices", "update", is_allowed=False))
        await payment_status_rules.create(db, payment_rule(PaymentStatus.PAID, "invoices", "update"))
        overdue = await make_invoice(db, PaymentStatus.OVERDUE)
        paid = await make_invoice(db, PaymentStatus.PAID)

        assert not await check_payment_status_access(db, user.id, "invoices", "update", overdue.id)
        assert await check_payment_status_access(db, user.id, "invoices", "update", paid.id)

    async def test_deny_window_blocks_inside_allowed_window(self, db):
        user = await enroller(db)
        await make_period(db, PeriodType.ENROLLMENT, utc(2026, 2, 1), utc(2026, 2, 28))
        await period_rules.create(db, period_rule(before=7, after=3))
        await period_rules.create(db, period_rule(is_allowed=False))

        assert await check_period_access(db, user.id, "enrollments", "create", utc(2026, 1, 26))
        assert not await check_period_access(db, user.id, "enrollments", "create", utc(2026, 2, 10))


class TestEvaluationFailure:

    async def test_storage_error_denies(self, db, monkeypatch, caplog):
        user = await enroller(db)
        enrollment = await make_enrollment(db, created_by_id=user.id)

        async def broken_execute(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db, "execute", broken_execute)
        decision = await evaluate_contextual_permission(
            db, user.id, ContextualCheck(resource="enrollments", action="create"),
        )
        assert not decision.allowed
        assert decision.reason == "evaluation error"
        assert not await is_entity_owner(db, user.id, "enrollments", enrollment.id)
        assert "denying" in caplog.text

    async def test_unexpected_error_in_rbac_denies(self, db, monkeypatch):
        user = await enroller(db)

        async def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(evaluator, "has_role_permission", explode)
        decision = await evaluate_contextual_permission(
            db, user.id, ContextualCheck(resource="enrollments", action="create"),
        )
        assert not decision.allowed
        assert decision.reason == "evaluation error"

"""Tests for role-based permission resolution."""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.errors import NotFound, ValidationFailed
from app.features.permissions.cache import PermissionCache
from app.features.permissions.models import UserRole
from app.features.permissions.rbac import (
    NO_SCOPE,
    ScopeContext,
    add_permission_to_user,
    assign_role_to_user,
    get_user_permissions,
    get_user_roles,
    has_permission,
    has_role_permission,
    remove_permission_from_user,
    remove_role_from_user,
)
from app.utils import utcnow
from factories import (
    give_role,
    make_enrollment,
    make_institution,
    make_permission,
    make_polo,
    make_role,
    make_user,
)


class TestDenyByDefault:

    async def test_user_without_roles_is_denied(self, db):
        user = await make_user(db)
        assert not await has_permission(db, user.id, "read", "leads")

    async def test_unrelated_permission_does_not_grant(self, db):
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("contacts", "read")]))
        assert not await has_permission(db, user.id, "read", "leads")
        assert not await has_permission(db, user.id, "update", "contacts")

    async def test_unknown_user_is_denied(self, db):
        assert not await has_permission(db, "01HZZZZZZZZZZZZZZZZZZZZZZZ", "read", "leads")

    async def test_inactive_user_is_denied(self, db):
        user = await make_user(db, is_active=False)
        await give_role(db, user, await make_role(db, grants=[("leads", "read")]))
        assert not await has_permission(db, user.id, "read", "leads")


class TestSuperadmin:

    @pytest.mark.parametrize("resource,action", [
        ("leads", "read"),
        ("invoices", "delete"),
        ("spaceships", "launch"),
    ])
    async def test_superadmin_is_allowed_without_roles(self, db, resource, action):
        admin = await make_user(db, is_superadmin=True)
        assert await has_permission(db, admin.id, action, resource)
        assert await has_permission(db, admin.id, action, resource, ScopeContext(institution_id="x", polo_id="y"))


class TestManageWildcard:

    async def test_finance_manage_grants_delete_on_invoices(self, db):
        """Finance holds invoices:manage unscoped; deleting invoices is allowed."""
        user = await make_user(db)
        finance = await make_role(db, "Finance", grants=[("invoices", "manage")])
        await give_role(db, user, finance)

        assert await has_permission(db, user.id, "delete", "invoices", NO_SCOPE)

    @pytest.mark.parametrize("action", ["create", "read", "approve", "export", "ler"])
    async def test_manage_covers_every_action(self, db, action):
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("invoices", "manage")]))
        assert await has_role_permission(db, user.id, "invoices", action)

    async def test_manage_does_not_leak_to_other_resources(self, db):
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("invoices", "manage")]))
        assert not await has_permission(db, user.id, "read", "payments")


class TestSynonyms:

    async def test_portuguese_request_matches_english_grant(self, db):
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("clients", "read")]))
        assert await has_permission(db, user.id, "ler", "cliente")

    async def test_english_request_matches_portuguese_grant(self, db):
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("matricula", "criar")]))
        assert await has_permission(db, user.id, "create", "enrollments")


class TestScopes:

    async def test_polo_scoped_role_applies_only_in_its_polo(self, db):
        institution = await make_institution(db)
        polo_7 = await make_polo(db, institution)
        polo_8 = await make_polo(db, institution)
        user = await make_user(db)
        staff = await make_role(db, "PoloStaff", grants=[("leads", "read")])
        await give_role(db, user, staff, polo_id=polo_7.id)

        assert not await has_permission(db, user.id, "read", "leads", ScopeContext(polo_id=polo_8.id))
        assert await has_permission(db, user.id, "read", "leads", ScopeContext(polo_id=polo_7.id))

    async def test_institution_scoped_role_does_not_cross_institutions(self, db):
        a = await make_institution(db)
        b = await make_institution(db)
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("leads", "read")]), institution_id=a.id)

        assert await has_permission(db, user.id, "read", "leads", ScopeContext(institution_id=a.id))
        assert not await has_permission(db, user.id, "read", "leads", ScopeContext(institution_id=b.id))

    async def test_unscoped_role_applies_everywhere(self, db):
        institution = await make_institution(db)
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("leads", "read")]))

        assert await has_permission(db, user.id, "read", "leads", ScopeContext(institution_id=institution.id))
        assert await has_permission(db, user.id, "read", "leads", ScopeContext(polo_id="any"))

    async def test_introspection_respects_scope(self, db):
        institution = await make_institution(db)
        user = await make_user(db)
        global_role = await make_role(db, "global_reader", grants=[("courses", "read")])
        local_role = await make_role(db, "local_writer", grants=[("leads", "update")])
        await give_role(db, user, global_role)
        await give_role(db, user, local_role, institution_id=institution.id)

        assert [r.name for r in await get_user_roles(db, user.id)] == ["global_reader"]
        assert {r.name for r in await get_user_roles(db, user.id, ScopeContext(institution_id=institution.id))} == {
            "global_reader", "local_writer",
        }
        assert await get_user_permissions(db, user.id, ScopeContext(institution_id=institution.id)) == {
            ("courses", "read"), ("leads", "update"),
        }


class TestOwnership:

    async def test_owner_passes_without_roles(self, db):
        user = await make_user(db)
        enrollment = await make_enrollment(db, created_by_id=user.id)
        ctx = ScopeContext(owned_entity_id=enrollment.id)

        assert await has_permission(db, user.id, "update", "enrollments", ctx)
        assert await has_permission(db, user.id, "atualizar", "matricula", ctx)

    async def test_non_owner_falls_back_to_rbac(self, db):
        owner = await make_user(db)
        other = await make_user(db)
        enrollment = await make_enrollment(db, created_by_id=owner.id)

        assert not await has_permission(db, other.id, "update", "enrollments", ScopeContext(owned_entity_id=enrollment.id))

    async def test_resource_without_owner_column_is_not_owned(self, db):
        user = await make_user(db)
        assert not await has_permission(db, user.id, "read", "invoices", ScopeContext(owned_entity_id="abc"))


class TestCache:

    async def test_cached_decision_survives_until_invalidated(self, db):
        cache = PermissionCache(ttl_seconds=60)
        user = await make_user(db)
        role = await make_role(db, grants=[("leads", "read")])
        await give_role(db, user, role)

        assert await has_permission(db, user.id, "read", "leads", cache=cache)
        assert len(cache) == 1

        await remove_role_from_user(db, user.id, role.id)
        assert await has_permission(db, user.id, "read", "leads", cache=cache)

        cache.invalidate_user(user.id)
        assert not await has_permission(db, user.id, "read", "leads", cache=cache)


class TestAssignment:

    async def test_assignment_is_idempotent(self, db):
        user = await make_user(db)
        role = await make_role(db)
        institution = await make_institution(db)
        ctx = ScopeContext(institution_id=institution.id)

        assert await assign_role_to_user(db, user.id, role.id, ctx)
        assert await assign_role_to_user(db, user.id, role.id, ctx)

        rows = (await db.execute(select(UserRole).where(UserRole.user_id == user.id))).scalars().all()
        assert len(rows) == 1

    async def test_same_role_in_different_scopes(self, db):
        user = await make_user(db)
        role = await make_role(db)
        institution = await make_institution(db)

        await assign_role_to_user(db, user.id, role.id)
        await assign_role_to_user(db, user.id, role.id, ScopeContext(institution_id=institution.id))

        rows = (await db.execute(select(UserRole).where(UserRole.user_id == user.id))).scalars().all()
        assert len(rows) == 2

    async def test_missing_role_or_user(self, db):
        user = await make_user(db)
        role = await make_role(db)
        with pytest.raises(NotFound):
            await assign_role_to_user(db, user.id, "missing-role")
        with pytest.raises(NotFound):
            await assign_role_to_user(db, "missing-user", role.id)

    async def test_remove_only_the_exact_scope(self, db):
        user = await make_user(db)
        role = await make_role(db)
        institution = await make_institution(db)
        await assign_role_to_user(db, user.id, role.id, ScopeContext(institution_id=institution.id))

        assert not await remove_role_from_user(db, user.id, role.id)
        assert await remove_role_from_user(db, user.id, role.id, ScopeContext(institution_id=institution.id))
        assert not await remove_role_from_user(db, user.id, role.id, ScopeContext(institution_id=institution.id))


class TestInstitutionOwnedRoles:

    async def test_role_applies_only_inside_its_institution(self, db):
        a = await make_institution(db)
        b = await make_institution(db)
        user = await make_user(db)
        role = await make_role(db, "a_secretary", grants=[("leads", "read")], institution_id=a.id)
        await give_role(db, user, role)

        assert await has_permission(db, user.id, "read", "leads", ScopeContext(institution_id=a.id))
        assert not await has_permission(db, user.id, "read", "leads", ScopeContext(institution_id=b.id))
        assert not await has_permission(db, user.id, "read", "leads")
        assert await get_user_permissions(db, user.id, ScopeContext(institution_id=b.id)) == set()
        assert await get_user_roles(db, user.id) == []

    async def test_assignment_without_scope_is_rejected(self, db):
        a = await make_institution(db)
        user = await make_user(db)
        role = await make_role(db, institution_id=a.id)

        with pytest.raises(ValidationFailed) as excinfo:
            await assign_role_to_user(db, user.id, role.id)
        assert "institution_id" in excinfo.value.fields

    async def test_assignment_in_another_institution_is_rejected(self, db):
        a = await make_institution(db)
        b = await make_institution(db)
        user = await make_user(db)
        role = await make_role(db, institution_id=a.id)

        with pytest.raises(ValidationFailed):
            await assign_role_to_user(db, user.id, role.id, ScopeContext(institution_id=b.id))
        rows = (await db.execute(select(UserRole).where(UserRole.user_id == user.id))).scalars().all()
        assert rows == []

    async def test_polo_must_belong_to_the_role_institution(self, db):
        a = await make_institution(db)
        b = await make_institution(db)
        polo_a = await make_polo(db, a)
        polo_b = await make_polo(db, b)
        user = await make_user(db)
        role = await make_role(db, institution_id=a.id)

        with pytest.raises(ValidationFailed) as excinfo:
            await assign_role_to_user(db, user.id, role.id, ScopeContext(institution_id=a.id, polo_id=polo_b.id))
        assert "polo_id" in excinfo.value.fields
        assert await assign_role_to_user(db, user.id, role.id, ScopeContext(institution_id=a.id, polo_id=polo_a.id))


class TestDirectPermissions:

    async def test_direct_grant_allows_without_roles(self, db):
        user = await make_user(db)
        permission = await make_permission(db, "leads", "read")
        await add_permission_to_user(db, user.id, permission.id)

        assert await has_permission(db, user.id, "read", "leads")
        assert await has_permission(db, user.id, "ler", "lead")
        assert not await has_permission(db, user.id, "update", "leads")
        assert await get_user_permissions(db, user.id) == {("leads", "read")}

    async def test_direct_manage_covers_every_action(self, db):
        user = await make_user(db)
        permission = await make_permission(db, "invoices", "manage")
        await add_permission_to_user(db, user.id, permission.id)
        assert await has_role_permission(db, user.id, "invoices", "delete")

    async def test_expired_grant_does_not_count(self, db):
        user = await make_user(db)
        expired = await make_permission(db, "leads", "read")
        current = await make_permission(db, "leads", "update")
        await add_permission_to_user(db, user.id, expired.id, expires_at=utcnow() - timedelta(minutes=1))
        await add_permission_to_user(db, user.id, current.id, expires_at=utcnow() + timedelta(days=1))

        assert not await has_permission(db, user.id, "read", "leads")
        assert await has_permission(db, user.id, "update", "leads")
        assert await get_user_permissions(db, user.id) == {("leads", "update")}

    async def test_scoped_grant_follows_role_scope_rules(self, db):
        institution = await make_institution(db)
        polo = await make_polo(db, institution)
        user = await make_user(db)
        permission = await make_permission(db, "leads", "read")
        await add_permission_to_user(db, user.id, permission.id, ScopeContext(polo_id=polo.id))

        assert await has_permission(db, user.id, "read", "leads", ScopeContext(polo_id=polo.id))
        assert not await has_permission(db, user.id, "read", "leads", ScopeContext(polo_id="other"))
        assert not await has_permission(db, user.id, "read", "leads")

    async def test_regrant_keeps_one_row_and_moves_expiry(self, db):
        user = await make_user(db)
        permission = await make_permission(db, "leads", "read")
        first = await add_permission_to_user(db, user.id, permission.id, expires_at=utcnow() - timedelta(days=1))
        second = await add_permission_to_user(db, user.id, permission.id, expires_at=utcnow() + timedelta(days=1))

        assert first.id == second.id
        assert await has_permission(db, user.id, "read", "leads")

    async def test_missing_permission_or_user(self, db):
        user = await make_user(db)
        permission = await make_permission(db, "leads", "read")
        with pytest.raises(NotFound):
            await add_permission_to_user(db, user.id, "missing-permission")
        with pytest.raises(NotFound):
            await add_permission_to_user(db, "missing-user", permission.id)

    async def test_remove_only_the_exact_scope(self, db):
        institution = await make_institution(db)
        user = await make_user(db)
        permission = await make_permission(db, "leads", "read")
        ctx = ScopeContext(institution_id=institution.id)
        await add_permission_to_user(db, user.id, permission.id, ctx)

        assert not await remove_permission_from_user(db, user.id, permission.id)
        assert await remove_permission_from_user(db, user.id, permission.id, ctx)
        assert not await has_permission(db, user.id, "read", "leads", ctx)


class TestFailClosed:

    async def test_storage_error_denies_and_is_not_cached(self, db, monkeypatch, caplog):
        cache = PermissionCache(ttl_seconds=60)
        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("leads", "read")]))

        async def broken_execute(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db, "execute", broken_execute)
        assert not await has_permission(db, user.id, "read", "leads", cache=cache)
        assert len(cache) == 0
        assert "denying" in caplog.text

    async def test_unexpected_error_denies(self, db, monkeypatch):
        from app.features.abac import evaluator

        user = await make_user(db)
        await give_role(db, user, await make_role(db, grants=[("leads", "read")]))

        async def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(evaluator, "is_entity_owner", explode)
        enrollment = await make_enrollment(db, created_by_id=user.id)
        assert not await has_permission(db, user.id, "update", "enrollments", ScopeContext(owned_entity_id=enrollment.id))

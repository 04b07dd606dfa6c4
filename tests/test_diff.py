"""Tests for audit diffs and their descriptions."""

from app.features.audit.diff import diff, format_permission_change_description


class TestDiff:

    def test_identical_snapshots_have_no_changes(self):
        snapshot = {"name": "finance", "permissions": ["invoices:manage"]}
        changes = diff(snapshot, dict(snapshot))
        assert changes == {}
        assert "no change detected" in format_permission_change_description("role", changes)

    def test_changed_and_added_keys_only(self):
        changes = diff({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4})
        assert set(changes) == {"b", "c"}
        assert changes["b"] == {"old": 2, "new": 3}
        assert changes["c"] == {"old": None, "new": 4}

    def test_removed_key_is_reported(self):
        assert diff({"a": 1}, {}) == {"a": {"old": 1, "new": None}}

    def test_missing_snapshots(self):
        assert diff(None, {"a": 1}) == {"addedAll": True}
        assert diff({"a": 1}, None) == {"removedAll": True}

    def test_nested_values_compare_by_content(self):
        assert diff({"scope": {"x": 1, "y": 2}}, {"scope": {"y": 2, "x": 1}}) == {}


class TestDescription:

    def test_permission_field_changes(self):
        changes = diff(
            {"resource": "leads", "action": "read", "is_active": True},
            {"resource": "leads", "action": "update", "is_active": False},
        )
        text = format_permission_change_description("permission", changes, "leads:read")
        assert text.startswith("Permission 'leads:read': ")
        assert "deactivated" in text
        assert "action changed from 'read' to 'update'" in text

    def test_role_permission_counts(self):
        changes = diff(
            {"permissions": ["leads:read", "leads:update"]},
            {"permissions": ["leads:read", "invoices:manage", "contacts:read"]},
        )
        text = format_permission_change_description("role", changes, "polo_staff")
        assert "2 permission(s) added" in text
        assert "1 permission(s) removed" in text

    def test_created_and_removed(self):
        assert format_permission_change_description("role", {"addedAll": True}, "finance") == "Role 'finance' created"
        assert format_permission_change_description("permission", {"removedAll": True}) == "Permission removed"

    def test_other_fields_are_listed(self):
        changes = diff({"description": "old"}, {"description": "new"})
        assert format_permission_change_description("role", changes) == "Role: changed description"

    def test_reordered_permissions(self):
        changes = {"permissions": {"old": ["a", "b"], "new": ["b", "a"]}}
        assert format_permission_change_description("user_role", changes) == "User role: permissions reordered"

"""
Field-level diff between before/after snapshots and its human-readable rendering.
"""
import json
from typing import Any, Dict, Iterable, Optional


def canonical_json(value: Any) -> str:
    """Stable serialization used to decide whether two values differ."""
    return json.dumps(value, sort_keys=True, default=str)


def diff(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Shallow comparison over the union of keys.

    A key is reported when its serialized value differs, as
    ``{"old": ..., "new": ...}``; a side where the key is absent is None.
    A missing snapshot short-circuits: no `old` gives ``{"addedAll": True}``,
    no `new` gives ``{"removedAll": True}``.

    >>> diff({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4})
    {'b': {'old': 2, 'new': 3}, 'c': {'old': None, 'new': 4}}
    """
    if old is None:
        return {"addedAll": True}
    if new is None:
        return {"removedAll": True}

    changes: Dict[str, Any] = {}
    keys = list(old) + [key for key in new if key not in old]
    for key in keys:
        in_old, in_new = key in old, key in new
        if in_old and in_new and canonical_json(old[key]) == canonical_json(new[key]):
            continue
        changes[key] = {"old": old.get(key), "new": new.get(key)}
    return changes


_LABELS = {
    "permission": "Permission",
    "role_permission": "Role permission",
    "role": "Role",
    "user_role": "User role",
}


def _label(entity_type: str) -> str:
    return _LABELS.get(entity_type, entity_type.replace("_", " ").capitalize())


def _as_keys(items: Optional[Iterable[Any]]) -> set:
    return {canonical_json(item) for item in (items or [])}


def _describe_permission_fields(changes: Dict[str, Any]) -> list[str]:
    parts = []
    for flag in ("is_active", "isActive"):
        if flag in changes:
            parts.append("activated" if changes[flag]["new"] else "deactivated")
    for field in ("resource", "action"):
        if field in changes:
            parts.append(f"{field} changed from '{changes[field]['old']}' to '{changes[field]['new']}'")
    return parts


def _describe_permission_counts(changes: Dict[str, Any]) -> list[str]:
    if "permissions" not in changes:
        return []
    old_keys = _as_keys(changes["permissions"]["old"])
    new_keys = _as_keys(changes["permissions"]["new"])
    added = len(new_keys - old_keys)
    removed = len(old_keys - new_keys)
    parts = []
    if added:
        parts.append(f"{added} permission(s) added")
    if removed:
        parts.append(f"{removed} permission(s) removed")
    return parts


def format_permission_change_description(
    entity_type: str,
    changes: Dict[str, Any],
    entity_name: Optional[str] = None,
) -> str:
    """
    Render a diff as one sentence.

    Permissions and role permissions describe activation toggles and resource
    or action changes one by one; roles and user roles summarize how many
    permissions were added and removed. An empty diff says so explicitly.
    """
    entity_type = getattr(entity_type, "value", entity_type)
    subject = _label(entity_type) + (f" '{entity_name}'" if entity_name else "")

    if not changes:
        return f"{subject}: no change detected"
    if changes.get("addedAll"):
        return f"{subject} created"
    if changes.get("removedAll"):
        return f"{subject} removed"

    if entity_type in ("permission", "role_permission"):
        parts = _describe_permission_fields(changes)
        handled = {"is_active", "isActive", "resource", "action"}
    elif entity_type in ("role", "user_role"):
        parts = _describe_permission_counts(changes)
        handled = {"permissions"}
    else:
        parts = []
        handled = set()

    other = [key for key in changes if key not in handled]
    if other:
        parts.append("changed " + ", ".join(other))
    if not parts:
        # The permission list changed order or shape without adding or removing entries
        parts.append("permissions reordered")
    return f"{subject}: " + "; ".join(parts)

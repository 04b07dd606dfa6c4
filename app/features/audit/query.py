"""
Listing and exporting audit entries.
"""
import csv
import io
import json
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import Select, select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, ValidationFailed
from app.features.audit.diff import diff
from app.features.audit.models import AuditEntry
from app.features.audit.schemas import AuditLogFilters, AuditEntryResponse, ExportFormat
from app.features.users.models import User
from app.utils import as_utc, get_logger


log = get_logger(__name__)

CSV_HEADER = [
    "ID",
    "User ID",
    "User Name",
    "Action",
    "Entity Type",
    "Entity ID",
    "Resource",
    "Description",
    "Changes",
    "Source IP",
    "User Agent",
    "Timestamp",
]


def _lower_bound(value: datetime | date) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _upper_bound(value: datetime | date) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def _apply_filters(stmt: Select, filters: AuditLogFilters) -> Select:
    if filters.user_id:
        stmt = stmt.where(AuditEntry.user_id == filters.user_id)
    if filters.action_type:
        stmt = stmt.where(AuditEntry.action_type == filters.action_type)
    if filters.entity_type:
        stmt = stmt.where(AuditEntry.entity_type == filters.entity_type)
    if filters.entity_id:
        stmt = stmt.where(AuditEntry.entity_id == filters.entity_id)
    if filters.start_date:
        stmt = stmt.where(AuditEntry.created_at >= _lower_bound(filters.start_date))
    if filters.end_date:
        stmt = stmt.where(AuditEntry.created_at <= _upper_bound(filters.end_date))
    return stmt


def _entries_with_user_names(filters: AuditLogFilters) -> Select:
    stmt = (
        select(AuditEntry, User.name)
        .outerjoin(User, User.id == AuditEntry.user_id)
        .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
    )
    return _apply_filters(stmt, filters)


async def get_audit_logs(db: AsyncSession, filters: AuditLogFilters) -> List[AuditEntry]:
    """Matching entries, newest first, paginated by `limit` / `offset`."""
    stmt = _apply_filters(select(AuditEntry), filters)
    stmt = stmt.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
    stmt = stmt.offset(filters.offset).limit(filters.limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_audit_logs(db: AsyncSession, filters: AuditLogFilters) -> int:
    """Number of matching entries, ignoring pagination."""
    stmt = _apply_filters(select(func.count(AuditEntry.id)), filters)
    return (await db.execute(stmt)).scalar_one()


async def get_audit_log_detail(db: AsyncSession, entry_id: str) -> AuditEntry:
    entry = await db.get(AuditEntry, entry_id)
    if entry is None:
        raise NotFound("Audit entry not found")
    return entry


def _render_changes(entry: AuditEntry) -> str:
    changes: Optional[Dict[str, Any]] = (entry.metadata_ or {}).get("changes")
    if changes is None and (entry.old_value is not None or entry.new_value is not None):
        changes = diff(entry.old_value, entry.new_value)
    if not changes:
        return ""
    return json.dumps(changes, ensure_ascii=False, sort_keys=True, default=str)


def _csv_row(entry: AuditEntry, user_name: Optional[str]) -> List[str]:
    return [
        entry.id,
        entry.user_id or "",
        user_name or "",
        entry.action_type.value,
        entry.entity_type.value,
        entry.entity_id or "",
        entry.resource_type or "",
        entry.description,
        _render_changes(entry),
        entry.ip_address or "",
        entry.user_agent or "",
        as_utc(entry.created_at).isoformat(),
    ]


def _render_csv(rows: List[Tuple[AuditEntry, Optional[str]]]) -> str:
    buffer = io.StringIO()
    # QUOTE_MINIMAL quotes fields holding a comma, quote or line break and doubles quotes
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL)
    writer.writerow(CSV_HEADER)
    for entry, user_name in rows:
        writer.writerow(_csv_row(entry, user_name))
    return buffer.getvalue()


def _render_json(rows: List[Tuple[AuditEntry, Optional[str]]]) -> List[Dict[str, Any]]:
    exported = []
    for entry, user_name in rows:
        item = AuditEntryResponse.model_validate(entry).model_dump(mode="json")
        item["user_name"] = user_name
        exported.append(item)
    return exported


async def export_audit_logs(
    db: AsyncSession,
    filters: AuditLogFilters,
    format: ExportFormat | str = ExportFormat.JSON,
) -> List[Dict[str, Any]] | str:
    """
    Export every entry matching the filters; `limit` and `offset` are ignored.
    
    Returns a list of dicts for json, a CSV document for csv.
    
    Raises:
        ValidationFailed: unknown format
    """
    try:
        export_format = ExportFormat(format)
    except ValueError:
        raise ValidationFailed("Unsupported export format", fields={"format": f"expected json or csv, got {format!r}"})
    
    result = await db.execute(_entries_with_user_names(filters))
    rows = [(entry, user_name) for entry, user_name in result.all()]
    log.info("Exporting %d audit entries as %s", len(rows), export_format.value)
    
    if export_format is ExportFormat.CSV:
        return _render_csv(rows)
    return _render_json(rows)

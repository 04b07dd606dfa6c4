"""
Audit trail API routes.
"""
from typing import Annotated, Any, Dict, List
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.audit.query import count_audit_logs, export_audit_logs, get_audit_log_detail, get_audit_logs
from app.features.audit.schemas import (
    AuditEntryResponse,
    AuditLogFilters,
    AuditLogListResponse,
    AuditLogQuery,
    ExportFormat,
)
from app.features.permissions.dependencies import require_permission
from app.features.users.models import User
from app.utils import utcnow


router = APIRouter()


def _csv_filename(filters: AuditLogFilters) -> str:
    stamp = utcnow().strftime("%Y%m%d_%H%M%S")
    parts = ["audit_logs", stamp]
    if filters.entity_type:
        parts.append(filters.entity_type.value)
    if filters.action_type:
        parts.append(filters.action_type.value)
    return "_".join(parts) + ".csv"


def _csv_response(document: str, filename: str) -> Response:
    return Response(
        content=document,
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-cache, no-store, must-revalidate",
        },
    )


@router.get("/logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    filters: Annotated[AuditLogQuery, Query()],
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    """
    Filtered audit entries, newest first.
    
    With format=csv the full matching set is downloaded as CSV instead.
    """
    if filters.format is ExportFormat.CSV:
        document = await export_audit_logs(db, filters, ExportFormat.CSV)
        return _csv_response(document, _csv_filename(filters))
    
    logs = await get_audit_logs(db, filters)
    total_count = await count_audit_logs(db, filters)
    return AuditLogListResponse(
        logs=[AuditEntryResponse.model_validate(entry) for entry in logs],
        total_count=total_count,
    )


@router.get("/logs/export", response_model=List[Dict[str, Any]])
async def export_logs_json(
    filters: Annotated[AuditLogFilters, Query()],
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    """Every matching entry as JSON; limit and offset are ignored."""
    return await export_audit_logs(db, filters, ExportFormat.JSON)


@router.get("/logs/{entry_id}", response_model=AuditEntryResponse)
async def get_audit_log(
    entry_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("permissions", "read")),
):
    return await get_audit_log_detail(db, entry_id)

"""
Pydantic schemas for audit queries and responses.
"""
import enum
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.audit.models import AuditActionType, AuditEntityType


class ExportFormat(str, enum.Enum):
    JSON = "json"
    CSV = "csv"


class AuditLogFilters(BaseModel):
    """
    Filters for listing audit entries.
    
    Date bounds are inclusive; a date without a time covers that whole day.
    """
    user_id: Optional[str] = None
    action_type: Optional[AuditActionType] = None
    entity_type: Optional[AuditEntityType] = None
    entity_id: Optional[str] = None
    start_date: Optional[datetime | date] = None
    end_date: Optional[datetime | date] = None
    limit: int = Field(50, ge=1, le=100)
    offset: int = Field(0, ge=0)
    
    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def date_only_strings(cls, v: Any) -> Any:
        """Keep "YYYY-MM-DD" as a date so the whole day can be covered."""
        if isinstance(v, str) and len(v) == 10:
            return date.fromisoformat(v)
        return v


class AuditEntryResponse(BaseModel):
    """Schema for audit entry response."""
    id: str
    user_id: Optional[str]
    action_type: AuditActionType
    entity_type: AuditEntityType
    entity_id: Optional[str]
    resource_type: Optional[str]
    description: str
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="metadata_")
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    
    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    logs: List[AuditEntryResponse]
    total_count: int


class AuditLogQuery(AuditLogFilters):
    """Query string of the listing route: the filters plus the response format."""
    format: ExportFormat = ExportFormat.JSON

"""
Pydantic schemas for ABAC rules and contextual checks.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from app.features.institutions.models import InstitutionPhase, PeriodType, PaymentStatus
from app.features.permissions.normalizer import is_known_resource, is_known_action


# ============================================================================
# Rule Schemas
# ============================================================================

class RuleBase(BaseModel):
    """Fields every rule family shares."""
    resource: str = Field(..., min_length=1, max_length=100, description="Resource key (e.g., 'enrollments')")
    action: str = Field(..., min_length=1, max_length=50, description="Action key (e.g., 'create')")
    description: str = Field(..., min_length=3, max_length=1000)
    is_active: bool = True
    is_allowed: bool = Field(True, description="False turns a match into an explicit deny")
    
    @field_validator("resource", "action", "description")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v
    
    @field_validator("description")
    @classmethod
    def description_length(cls, v: str) -> str:
        if len(v) < 3:
            raise ValueError("must be at least 3 characters")
        return v

    @field_validator("resource")
    @classmethod
    def known_resource(cls, v: str) -> str:
        if not is_known_resource(v):
            raise ValueError(f"unknown resource '{v}'")
        return v
    
    @field_validator("action")
    @classmethod
    def known_action(cls, v: str) -> str:
        if not is_known_action(v):
            raise ValueError(f"unknown action '{v}'")
        return v


class InstitutionPhasePermissionCreate(RuleBase):
    phase: InstitutionPhase


class PeriodPermissionRuleCreate(RuleBase):
    period_type: PeriodType
    days_before_start: int = Field(0, ge=0)
    days_after_end: int = Field(0, ge=0)


class PaymentStatusPermissionCreate(RuleBase):
    payment_status: PaymentStatus


class RuleResponse(BaseModel):
    id: str
    resource: str
    action: str
    description: str
    is_active: bool
    is_allowed: bool
    created_at: datetime
    updated_at: datetime
    
    model_config = ConfigDict(from_attributes=True)


class InstitutionPhasePermissionResponse(RuleResponse):
    phase: InstitutionPhase


class PeriodPermissionRuleResponse(RuleResponse):
    period_type: PeriodType
    days_before_start: int
    days_after_end: int


class PaymentStatusPermissionResponse(RuleResponse):
    payment_status: PaymentStatus


# ============================================================================
# Contextual Check Schemas
# ============================================================================

class DateRange(BaseModel):
    start: datetime
    end: datetime
    
    @model_validator(mode="after")
    def ordered(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class ContextualCheck(BaseModel):
    """
    A permission check with optional attribute predicates.
    
    Every supplied predicate must pass on top of RBAC; omitted ones are not evaluated.
    """
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    entity_id: Optional[str] = None
    institution_id: Optional[str] = None
    polo_id: Optional[str] = None
    subscription_status: Optional[PaymentStatus] = None
    payment_status: Optional[PaymentStatus] = None
    institution_phase: Optional[InstitutionPhase] = None
    entity_owner_id: Optional[str] = None
    date_range: Optional[DateRange] = None


class InstitutionPhaseCheck(BaseModel):
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    institution_id: str


class PaymentStatusCheck(BaseModel):
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    entity_id: str


class PeriodCheck(BaseModel):
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    target_date: datetime
    institution_id: Optional[str] = None


class OwnershipCheck(BaseModel):
    resource_type: str = Field(..., min_length=1)
    entity_id: str


class CheckResponse(BaseModel):
    """Schema for a check result."""
    allowed: bool
    reason: Optional[str] = None

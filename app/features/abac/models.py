"""
Attribute-based rule tables.

Each family narrows what RBAC grants for a (resource, action) pair:
- InstitutionPhasePermission: only while the institution is in `phase`
- PeriodPermissionRule: only inside a period window widened by the day offsets
- PaymentStatusPermission: only while the entity's payment status is `payment_status`

A matching rule with `is_allowed` false is an explicit deny: it wins over any
allowing rule that matches the same request.
"""
from sqlalchemy import String, Text, Boolean, Integer, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid
from app.features.institutions.models import (
    InstitutionPhase,
    PeriodType,
    PaymentStatus,
    phase_column,
    period_type_column,
    payment_status_column,
)


class RuleMixin:
    """Columns shared by every rule family."""
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_allowed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class InstitutionPhasePermission(Base, RuleMixin, TimestampMixin):
    __tablename__ = "institution_phase_permissions"
    
    phase: Mapped[InstitutionPhase] = phase_column(nullable=False, index=True)
    
    def __repr__(self) -> str:
        return f"<InstitutionPhasePermission({self.resource}:{self.action} in {self.phase})>"


class PeriodPermissionRule(Base, RuleMixin, TimestampMixin):
    __tablename__ = "period_permission_rules"
    __table_args__ = (
        CheckConstraint("days_before_start >= 0", name="ck_period_rules_days_before"),
        CheckConstraint("days_after_end >= 0", name="ck_period_rules_days_after"),
    )
    
    period_type: Mapped[PeriodType] = period_type_column(nullable=False, index=True)
    days_before_start: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    days_after_end: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    
    def __repr__(self) -> str:
        return (
            f"<PeriodPermissionRule({self.resource}:{self.action} {self.period_type} "
            f"-{self.days_before_start}d/+{self.days_after_end}d)>"
        )


class PaymentStatusPermission(Base, RuleMixin, TimestampMixin):
    __tablename__ = "payment_status_permissions"
    
    payment_status: Mapped[PaymentStatus] = payment_status_column(nullable=False, index=True)
    
    def __repr__(self) -> str:
        return f"<PaymentStatusPermission({self.resource}:{self.action} when {self.payment_status})>"

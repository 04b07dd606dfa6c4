"""
Institution-side tables the access-control engine reads.

Institutions, polos, academic periods, enrollments and the owned platform
records (courses, products, invoices, contracts, leads, clients, certificate
templates) are administered by the surrounding platform. They are declared here
so rule evaluation has real attributes to look at: lifecycle phase,
subscription and payment status, period windows and owner fields.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Boolean, ForeignKey, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid, enum_values


class InstitutionPhase(str, enum.Enum):
    """Lifecycle phase of a partner institution."""
    PROSPECTING = "prospecting"
    ONBOARDING = "onboarding"
    IMPLEMENTATION = "implementation"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELED = "canceled"
    TRIAL = "trial"
    SETUP = "setup"


class PeriodType(str, enum.Enum):
    """Kinds of calendar period rules can be anchored to."""
    FINANCIAL = "financial"
    ACADEMIC = "academic"
    ENROLLMENT = "enrollment"
    CERTIFICATION = "certification"


class PaymentStatus(str, enum.Enum):
    """Payment status of an enrollment, or subscription status of an institution."""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    ACTIVE = "active"
    TRIAL = "trial"
    EXPIRED = "expired"


def phase_column(**kwargs):
    return mapped_column(SQLEnum(InstitutionPhase, values_callable=enum_values, native_enum=False, length=32), **kwargs)


def period_type_column(**kwargs):
    return mapped_column(SQLEnum(PeriodType, values_callable=enum_values, native_enum=False, length=32), **kwargs)


def payment_status_column(**kwargs):
    return mapped_column(SQLEnum(PaymentStatus, values_callable=enum_values, native_enum=False, length=32), **kwargs)


class Institution(Base, TimestampMixin):
    """Partner institution. `owner_id` is the user responsible for the account."""
    __tablename__ = "institutions"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    
    phase: Mapped[InstitutionPhase] = phase_column(default=InstitutionPhase.PROSPECTING, nullable=False, index=True)
    subscription_status: Mapped[PaymentStatus | None] = payment_status_column(nullable=True)
    
    owner_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    
    def __repr__(self) -> str:
        return f"<Institution(id={self.id}, name={self.name!r}, phase={self.phase})>"


class Polo(Base, TimestampMixin):
    """Teaching hub belonging to an institution."""
    __tablename__ = "polos"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    institution_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("institutions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    manager_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    
    def __repr__(self) -> str:
        return f"<Polo(id={self.id}, name={self.name!r}, institution_id={self.institution_id})>"


class AcademicPeriod(Base, TimestampMixin):
    """
    A dated period (academic term, enrollment window, fiscal period...).
    
    A null `institution_id` marks a global period used when a check carries no
    institution.
    """
    __tablename__ = "academic_periods"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    period_type: Mapped[PeriodType] = period_type_column(nullable=False, index=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    institution_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("institutions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    def __repr__(self) -> str:
        return f"<AcademicPeriod(id={self.id}, type={self.period_type}, {self.start_date} -> {self.end_date})>"


class Enrollment(Base, TimestampMixin):
    """Student enrollment. Carries the payment status checked by payment rules."""
    __tablename__ = "enrollments"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    institution_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("institutions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    polo_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("polos.id", ondelete="SET NULL"), nullable=True, index=True
    )
    student_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    payment_status: Mapped[PaymentStatus] = payment_status_column(default=PaymentStatus.PENDING, nullable=False)
    
    def __repr__(self) -> str:
        return f"<Enrollment(id={self.id}, payment_status={self.payment_status})>"


# ============================================================================
# Owned Entities
# ============================================================================
# Platform records whose owner (creator or assignee) self-service checks compare
# against the caller. Only the columns ownership and payment rules read are declared.

def _user_ref():
    return mapped_column(String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)


def _institution_ref():
    return mapped_column(String(26), ForeignKey("institutions.id", ondelete="SET NULL"), nullable=True, index=True)


class Course(Base, TimestampMixin):
    __tablename__ = "courses"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    institution_id: Mapped[str | None] = _institution_ref()
    created_by_id: Mapped[str | None] = _user_ref()


class Product(Base, TimestampMixin):
    __tablename__ = "products"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    institution_id: Mapped[str | None] = _institution_ref()
    created_by_id: Mapped[str | None] = _user_ref()


class Invoice(Base, TimestampMixin):
    """Invoice issued to a client. Carries a payment status like enrollments do."""
    __tablename__ = "invoices"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    institution_id: Mapped[str | None] = _institution_ref()
    created_by_id: Mapped[str | None] = _user_ref()
    payment_status: Mapped[PaymentStatus] = payment_status_column(default=PaymentStatus.PENDING, nullable=False)
    
    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, payment_status={self.payment_status})>"


class Contract(Base, TimestampMixin):
    __tablename__ = "contracts"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    institution_id: Mapped[str | None] = _institution_ref()
    created_by_id: Mapped[str | None] = _user_ref()


class Lead(Base, TimestampMixin):
    """Sales lead; owned by the salesperson it is assigned to."""
    __tablename__ = "leads"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    institution_id: Mapped[str | None] = _institution_ref()
    assigned_to_id: Mapped[str | None] = _user_ref()


class Client(Base, TimestampMixin):
    """Paying client; owned by the account manager it is assigned to."""
    __tablename__ = "clients"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    institution_id: Mapped[str | None] = _institution_ref()
    assigned_to_id: Mapped[str | None] = _user_ref()


class CertificateTemplate(Base, TimestampMixin):
    __tablename__ = "certificate_templates"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    institution_id: Mapped[str | None] = _institution_ref()
    created_by_id: Mapped[str | None] = _user_ref()

"""
Audit trail of permission-relevant actions.

Entries are append-only: the ORM refuses to update or delete them.
"""
import enum
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, Text, JSON, Enum as SQLEnum, event
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, CreatedAtMixin, generate_ulid, enum_values


class AuditActionType(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    GRANT = "grant"
    REVOKE = "revoke"
    LOGIN = "login"
    LOGOUT = "logout"
    VIEW = "view"
    ASSIGN = "assign"
    UNASSIGN = "unassign"


class AuditEntityType(str, enum.Enum):
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"
    ROLE_PERMISSION = "role_permission"
    USER_ROLE = "user_role"
    USER_PERMISSION = "user_permission"
    INSTITUTION = "institution"
    POLO = "polo"
    LEAD = "lead"
    CLIENT = "client"
    INVOICE = "invoice"
    PAYMENT = "payment"
    CONTRACT = "contract"
    SUBSCRIPTION = "subscription"
    INSTITUTION_PHASE_PERMISSION = "institution_phase_permission"
    PERIOD_PERMISSION_RULE = "period_permission_rule"
    PAYMENT_STATUS_PERMISSION = "payment_status_permission"


class AuditEntry(Base, CreatedAtMixin):
    """
    One audited action.
    
    Tracks who did what to which entity, the before/after values, and where
    the request came from.
    """
    __tablename__ = "permission_audit"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    
    # Action details
    action_type: Mapped[AuditActionType] = mapped_column(
        SQLEnum(AuditActionType, values_callable=enum_values, native_enum=False, length=32),
        nullable=False,
        index=True
    )
    entity_type: Mapped[AuditEntityType] = mapped_column(
        SQLEnum(AuditEntityType, values_callable=enum_values, native_enum=False, length=64),
        nullable=False,
        index=True
    )
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    resource_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    
    old_value: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    
    # Context
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    
    def __repr__(self) -> str:
        return (
            f"<AuditEntry(id={self.id}, user_id={self.user_id}, action={self.action_type}, "
            f"entity={self.entity_type}:{self.entity_id})>"
        )


@event.listens_for(AuditEntry, "before_update")
@event.listens_for(AuditEntry, "before_delete")
def _refuse_mutation(_mapper, _connection, target: AuditEntry):
    raise RuntimeError(f"Audit entry {target.id} is append-only")

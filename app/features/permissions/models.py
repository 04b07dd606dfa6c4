"""
Permission, Role and role-assignment models for scoped RBAC.

- Permissions are (resource, action) pairs; action "manage" covers every action
- Roles are global (institution_id null) or belong to one institution
- Users hold roles optionally scoped to an institution and/or polo
- Users may also hold single permissions directly, scoped and optionally expiring
"""
from datetime import datetime
from sqlalchemy import String, ForeignKey, Table, Column, Text, Boolean, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, CreatedAtMixin, generate_ulid


# ============================================================================
# Association Tables for Many-to-Many Relationships
# ============================================================================

# Role-Permission relationship; the composite key rules out duplicates
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Permission model defining an action on a resource.
    
    Examples:
    - resource="invoices", action="manage"
    - resource="leads", action="read"
    - resource="cliente", action="ler"
    """
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),)
    
    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    # Permission definition
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    
    # Relationships
    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        back_populates="permissions",
        lazy="selectin"
    )
    
    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r}, resource={self.resource}, action={self.action})>"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permissions.
    
    Roles are institution-specific or global (institution_id null).
    System roles can only be changed by a superadmin.
    Examples: admin, finance, polo_staff, secretary
    """
    __tablename__ = "roles"
    
    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    # Role definition; (name, institution_id) is unique, checked in the service layer
    name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    
    institution_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("institutions.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    
    # Relationships
    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        back_populates="roles",
        lazy="selectin"
    )
    
    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, institution_id={self.institution_id})>"


class UserRole(Base, CreatedAtMixin):
    """
    A role held by a user, optionally scoped to an institution and/or polo.
    
    Null scope columns mean the assignment applies everywhere the role applies.
    The same role may be held several times under different scopes.
    """
    __tablename__ = "user_roles"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    institution_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("institutions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    polo_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("polos.id", ondelete="CASCADE"), nullable=True, index=True
    )
    created_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    
    role: Mapped["Role"] = relationship("Role", lazy="selectin")
    
    def __repr__(self) -> str:
        return (
            f"<UserRole(user_id={self.user_id}, role_id={self.role_id}, "
            f"institution_id={self.institution_id}, polo_id={self.polo_id})>"
        )


class UserPermission(Base, CreatedAtMixin):
    """
    A permission granted straight to a user, outside any role.
    
    Scoped like UserRole. A grant whose `expires_at` has passed no longer counts.
    """
    __tablename__ = "user_permissions"
    
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    
    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    permission_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    institution_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("institutions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    polo_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("polos.id", ondelete="CASCADE"), nullable=True, index=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    
    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")
    
    def __repr__(self) -> str:
        return (
            f"<UserPermission(user_id={self.user_id}, permission_id={self.permission_id}, "
            f"institution_id={self.institution_id}, polo_id={self.polo_id}, expires_at={self.expires_at})>"
        )

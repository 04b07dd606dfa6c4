"""
Seed script to populate default permissions, roles and attribute rules.

Run this script after database initialization to create:
- Default permissions (every known resource x create/read/update/delete, plus manage)
- Default system roles and their permission sets
- A superadmin user (SEED_SUPERADMIN_EMAIL)
- Baseline ABAC rules for enrollments and financial resources

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
import os
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.abac.models import InstitutionPhasePermission, PeriodPermissionRule, PaymentStatusPermission
from app.features.institutions.models import InstitutionPhase, PeriodType, PaymentStatus
from app.features.permissions.models import Permission, Role
from app.features.permissions.normalizer import KnownResource, MANAGE
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


CRUD_ACTIONS = ("create", "read", "update", "delete")

# Portuguese resource keys are only matched through synonyms; grants are stored in English
SEEDED_RESOURCES = [
    resource.value for resource in KnownResource
    if resource not in (KnownResource.CLIENTE, KnownResource.LEAD, KnownResource.CONTATO, KnownResource.MATRICULA)
]

DEFAULT_PERMISSIONS = [
    (f"{resource}:{action}", resource, action, f"{action.capitalize()} {resource.replace('_', ' ')}")
    for resource in SEEDED_RESOURCES
    for action in CRUD_ACTIONS + (MANAGE,)
]


DEFAULT_ROLES = {
    "admin": {
        "description": "Institution administrator with every permission",
        "permissions": "ALL"  # Special case - gets all manage permissions
    },
    "secretary": {
        "description": "Academic secretary",
        "permissions": [
            "enrollments:create", "enrollments:read", "enrollments:update",
            "courses:read", "disciplines:read",
            "certificates:create", "certificates:read",
            "clients:read", "contacts:read",
            "users:read", "polos:read",
        ]
    },
    "finance": {
        "description": "Financial department",
        "permissions": [
            "invoices:manage", "payments:manage",
            "financial_transactions:manage", "financial_categories:read",
            "contracts:read", "enrollments:read",
            "reports:read", "dashboard:read",
        ]
    },
    "polo_staff": {
        "description": "Polo staff handling leads and local enrollments",
        "permissions": [
            "leads:create", "leads:read", "leads:update",
            "contacts:create", "contacts:read", "contacts:update",
            "enrollments:create", "enrollments:read",
            "courses:read",
        ]
    },
    "auditor": {
        "description": "Read-only access to roles, permissions and reports",
        "permissions": [
            "permissions:read", "roles:read", "users:read", "reports:read",
        ]
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.
    
    Returns:
        Dictionary mapping permission names to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map = {}
    
    for name, resource, action, description in DEFAULT_PERMISSIONS:
        stmt = select(Permission).where(Permission.resource == resource, Permission.action == action)
        existing = (await db.execute(stmt)).scalars().first()
        
        if existing:
            log.debug("Permission '%s' already exists, skipping", name)
            permissions_map[name] = existing
            continue
        
        permission = Permission(name=name, resource=resource, action=action, description=description)
        db.add(permission)
        permissions_map[name] = permission
    
    await db.commit()
    log.info("Seeded %d permissions", len(permissions_map))
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]) -> None:
    """Create default system roles and attach their permissions."""
    log.info("Creating default roles...")
    
    for role_name, role_config in DEFAULT_ROLES.items():
        stmt = select(Role).where(Role.name == role_name, Role.institution_id.is_(None))
        if (await db.execute(stmt)).scalars().first():
            log.debug("Role '%s' already exists, skipping", role_name)
            continue
        
        role = Role(name=role_name, description=role_config["description"], is_system=True)
        
        if role_config["permissions"] == "ALL":
            role.permissions = [p for name, p in permissions_map.items() if name.endswith(f":{MANAGE}")]
        else:
            role_permissions = []
            for perm_name in role_config["permissions"]:
                if perm_name in permissions_map:
                    role_permissions.append(permissions_map[perm_name])
                else:
                    log.warning("Permission '%s' not found for role '%s'", perm_name, role_name)
            role.permissions = role_permissions
        
        db.add(role)
        log.info("Created role '%s' with %d permissions", role_name, len(role.permissions))
    
    await db.commit()


async def seed_superadmin(db: AsyncSession) -> None:
    email = os.environ.get("SEED_SUPERADMIN_EMAIL")
    if not email:
        log.info("SEED_SUPERADMIN_EMAIL not set, skipping superadmin")
        return
    
    existing = (await db.execute(select(User).where(User.email == email))).scalars().first()
    if existing:
        if not existing.is_superadmin:
            existing.is_superadmin = True
            log.info("Promoted %s to superadmin", email)
    else:
        db.add(User(email=email, name=os.environ.get("SEED_SUPERADMIN_NAME", "Superadmin"), is_superadmin=True))
        log.info("Created superadmin %s", email)
    await db.commit()


def default_rules() -> list:
    return [
        InstitutionPhasePermission(
            resource="enrollments", action="create", phase=InstitutionPhase.ACTIVE,
            description="Enrollments can only be created by active institutions",
        ),
        InstitutionPhasePermission(
            resource="enrollments", action="create", phase=InstitutionPhase.TRIAL,
            description="Trial institutions may enroll students",
        ),
        InstitutionPhasePermission(
            resource="enrollments", action="create", phase=InstitutionPhase.SUSPENDED, is_allowed=False,
            description="Suspended institutions cannot enroll students",
        ),
        PeriodPermissionRule(
            resource="enrollments", action="create", period_type=PeriodType.ENROLLMENT,
            days_before_start=7, days_after_end=3,
            description="Enrollment window opens a week early and closes three days late",
        ),
        PaymentStatusPermission(
            resource="certificates", action="create", payment_status=PaymentStatus.PAID,
            description="Certificates are issued only for paid enrollments",
        ),
        PaymentStatusPermission(
            resource="certificates", action="create", payment_status=PaymentStatus.OVERDUE, is_allowed=False,
            description="No certificates while an enrollment is overdue",
        ),
    ]


async def seed_rules(db: AsyncSession) -> None:
    """Create the baseline attribute rules if no rule exists yet."""
    for model in (InstitutionPhasePermission, PeriodPermissionRule, PaymentStatusPermission):
        if (await db.execute(select(model).limit(1))).scalars().first():
            log.info("Attribute rules already present, skipping")
            return
    
    rules = default_rules()
    db.add_all(rules)
    await db.commit()
    log.info("Created %d attribute rules", len(rules))


async def main():
    """Main function to seed permissions, roles and rules."""
    log.info("Starting permission seeding...")
    await init_db()
    
    async for db in get_db():
        try:
            permissions_map = await seed_permissions(db)
            await seed_roles(db, permissions_map)
            await seed_superadmin(db)
            await seed_rules(db)
            
            log.info("Permission seeding completed successfully!")
            for role_name, role_config in DEFAULT_ROLES.items():
                log.info("  - %s: %s", role_name, role_config["description"])
        except Exception:
            log.error("Error seeding permissions", exc_info=True)
            await db.rollback()
            raise
        
        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())

"""
Attribute lookups used by the contextual evaluator.

Each table maps a resource type (any synonym works) to the model column that
holds the attribute being checked.
"""
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.institutions.models import (
    CertificateTemplate,
    Client,
    Contract,
    Course,
    Enrollment,
    Institution,
    InstitutionPhase,
    Invoice,
    Lead,
    PaymentStatus,
    Polo,
    Product,
)
from app.features.permissions.normalizer import expand_resource


# Resource type -> (model, owner column)
OWNER_COLUMNS = {
    "institutions": (Institution, Institution.owner_id),
    "polos": (Polo, Polo.manager_id),
    "enrollments": (Enrollment, Enrollment.created_by_id),
    "courses": (Course, Course.created_by_id),
    "products": (Product, Product.created_by_id),
    "invoices": (Invoice, Invoice.created_by_id),
    "contracts": (Contract, Contract.created_by_id),
    "leads": (Lead, Lead.assigned_to_id),
    "clients": (Client, Client.assigned_to_id),
    "certificate_templates": (CertificateTemplate, CertificateTemplate.created_by_id),
}

# Resource type -> (model, payment/subscription status column)
PAYMENT_STATUS_COLUMNS = {
    "enrollments": (Enrollment, Enrollment.payment_status),
    "invoices": (Invoice, Invoice.payment_status),
    "institutions": (Institution, Institution.subscription_status),
}


class UnknownEntityType(LookupError):
    """No lookup is registered for the resource type."""


def _resolve(table: dict, resource_type: str):
    for candidate in expand_resource(resource_type):
        if candidate in table:
            return table[candidate]
    raise UnknownEntityType(resource_type)


async def get_entity_owner_id(db: AsyncSession, resource_type: str, entity_id: str) -> Optional[str]:
    """
    Recorded owner of an entity, or None when the entity does not exist or has no owner.

    Raises:
        UnknownEntityType: resource type has no owner column
    """
    model, column = _resolve(OWNER_COLUMNS, resource_type)
    result = await db.execute(select(column).where(model.id == entity_id))
    return result.scalar_one_or_none()


async def get_entity_payment_status(db: AsyncSession, resource_type: str, entity_id: str) -> Optional[PaymentStatus]:
    """
    Current payment (or subscription) status of an entity, None when unknown.

    Raises:
        UnknownEntityType: resource type carries no payment status
    """
    model, column = _resolve(PAYMENT_STATUS_COLUMNS, resource_type)
    result = await db.execute(select(column).where(model.id == entity_id))
    return result.scalar_one_or_none()


async def get_institution(db: AsyncSession, institution_id: str) -> Optional[Institution]:
    result = await db.execute(select(Institution).where(Institution.id == institution_id))
    return result.scalar_one_or_none()


async def get_institution_phase(db: AsyncSession, institution_id: str) -> Optional[InstitutionPhase]:
    result = await db.execute(select(Institution.phase).where(Institution.id == institution_id))
    return result.scalar_one_or_none()

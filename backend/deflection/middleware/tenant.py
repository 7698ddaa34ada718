"""Tenant resolution helpers for request handlers."""

from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from deflection.models.tenant import Tenant


def get_tenant_by_slug(db: Session, slug: str) -> Tenant:
    """Resolve tenant by slug. Raises 404 if not found or inactive."""
    tenant = db.execute(
        select(Tenant).where(Tenant.slug == slug, Tenant.is_active.is_(True))
    ).scalar_one_or_none()
    if not tenant:
        raise HTTPException(status_code=404, detail=f"Tenant '{slug}' not found or inactive")
    return tenant


def get_tenant_by_id(db: Session, tenant_id: UUID) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return tenant

"""Tenant CRUD admin endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from deflection.database import get_db
from deflection.middleware.auth import verify_admin_token
from deflection.middleware.tenant import get_tenant_by_id
from deflection.models.tenant import Tenant
from deflection.schemas.tenant import TenantCreate, TenantUpdate, TenantResponse
from deflection.services.settings_provider import parse_deflection_yaml

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/tenants", tags=["tenants"])


def _check_thresholds(confidence: float, escalation: float) -> None:
    if escalation > confidence:
        raise HTTPException(status_code=422, detail="escalation_threshold must not exceed confidence_threshold")


def _check_yaml(raw: str | None) -> None:
    if raw and not parse_deflection_yaml(raw):
        raise HTTPException(status_code=422, detail="deflection_config_yaml has no usable deflection settings")


@router.get("", response_model=list[TenantResponse])
def list_tenants(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    """List all tenants (admin only)."""
    offset = (page - 1) * per_page
    tenants = db.execute(
        select(Tenant).order_by(Tenant.created_at.desc()).offset(offset).limit(per_page)
    ).scalars().all()
    return [TenantResponse.model_validate(t) for t in tenants]


@router.get("/{tenant_id}", response_model=TenantResponse)
def get_tenant(
    tenant_id: UUID,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    return TenantResponse.model_validate(get_tenant_by_id(db, tenant_id))


@router.post("", response_model=TenantResponse, status_code=201)
def create_tenant(
    data: TenantCreate,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    """Create a new tenant."""
    existing = db.execute(select(Tenant).where(Tenant.slug == data.slug)).scalar_one_or_none()
    if existing:
        raise HTTPException(status_code=409, detail=f"Tenant slug '{data.slug}' already exists")
    _check_thresholds(data.confidence_threshold, data.escalation_threshold)
    _check_yaml(data.deflection_config_yaml)

    tenant = Tenant(**data.model_dump())
    db.add(tenant)
    db.commit()
    db.refresh(tenant)

    logger.info("tenant_created", slug=tenant.slug, id=str(tenant.id))
    return TenantResponse.model_validate(tenant)


@router.patch("/{tenant_id}", response_model=TenantResponse)
def update_tenant(
    tenant_id: UUID,
    data: TenantUpdate,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    """Update a tenant. Takes effect for jobs claimed afterwards."""
    tenant = get_tenant_by_id(db, tenant_id)
    update_data = data.model_dump(exclude_unset=True)

    _check_thresholds(
        update_data.get("confidence_threshold", tenant.confidence_threshold),
        update_data.get("escalation_threshold", tenant.escalation_threshold),
    )
    if "deflection_config_yaml" in update_data:
        _check_yaml(update_data["deflection_config_yaml"])

    for field, value in update_data.items():
        setattr(tenant, field, value)

    db.commit()
    db.refresh(tenant)

    logger.info("tenant_updated", slug=tenant.slug, fields=sorted(update_data))
    return TenantResponse.model_validate(tenant)


@router.delete("/{tenant_id}", status_code=204)
def delete_tenant(
    tenant_id: UUID,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    """Soft-delete a tenant (deactivate)."""
    tenant = get_tenant_by_id(db, tenant_id)
    tenant.is_active = False
    db.commit()
    logger.info("tenant_deactivated", slug=tenant.slug)

"""Webhook intake for helpdesk ticket events."""

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from deflection.api.deflection import enqueue_or_raise, get_processor
from deflection.database import get_db
from deflection.metrics import WEBHOOK_REQUESTS
from deflection.middleware.tenant import get_tenant_by_slug
from deflection.schemas.webhook import DeflectionWebhookPayload, WebhookResponse

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/deflection", response_model=WebhookResponse)
def ingest_ticket(
    payload: DeflectionWebhookPayload,
    x_tenant_slug: str = Header(..., description="Tenant slug for webhook routing"),
    db: Session = Depends(get_db),
    processor=Depends(get_processor),
):
    """Ingest a ticket event and queue it for deflection."""
    tenant = get_tenant_by_slug(db, x_tenant_slug)
    WEBHOOK_REQUESTS.labels(tenant=tenant.slug).inc()

    if not tenant.auto_response_enabled:
        # Still queued so the decision (and its reason) is recorded.
        logger.info("webhook_auto_response_disabled", tenant=tenant.slug, ticket_id=payload.ticket_id)

    ticket = payload.to_ticket(tenant.id)
    job_id = enqueue_or_raise(processor, tenant.id, ticket, payload.event, payload.priority)

    logger.info("deflection_ticket_ingested",
                tenant=tenant.slug, ticket_id=ticket.id, job_id=job_id, priority=payload.priority.value)

    return WebhookResponse(ok=True, id=job_id, message="Ticket queued for deflection")

"""Deflection admin endpoints: jobs, synchronous decisions, feedback, usage, queue."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from deflection.errors import BackendError, InputValidationError, NotFoundError, SettingsMissingError
from deflection.metrics import ERRORS
from deflection.middleware.auth import verify_admin_token
from deflection.models.job import JobStatus
from deflection.schemas.common import JobResponse, QueueStats, SystemErrorResponse, UsageResponse
from deflection.schemas.decision import DeflectionDecision
from deflection.schemas.webhook import (
    CleanupResponse, DecideRequest, EnqueueRequest, FeedbackRequest, WebhookResponse,
)
from deflection.services.budget import TenantUsage, get_redis

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/deflection", tags=["deflection"])


def get_processor(request: Request):
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        raise HTTPException(status_code=503, detail="Deflection processor not available")
    return processor


def enqueue_or_raise(processor, tenant_id, ticket, webhook_event=None, priority=None) -> str:
    """Enqueue a ticket, mapping input errors onto HTTP status codes."""
    kwargs = {"webhook_event": webhook_event}
    if priority is not None:
        kwargs["priority"] = priority
    try:
        return processor.enqueue(tenant_id, ticket, **kwargs)
    except SettingsMissingError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InputValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/jobs", response_model=WebhookResponse, status_code=201)
def enqueue_job(
    req: EnqueueRequest,
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
):
    """Queue a ticket for asynchronous deflection."""
    job_id = enqueue_or_raise(processor, req.tenant_id, req.ticket, req.webhook_event, req.priority)
    return WebhookResponse(ok=True, id=job_id, message="Ticket queued for deflection")


@router.get("/jobs", response_model=list[JobResponse])
def list_jobs(
    tenant_id: Optional[UUID] = None,
    status: Optional[JobStatus] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
):
    return processor.store.list_jobs(tenant_id=tenant_id, status=status, page=page, per_page=per_page)


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: UUID,
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
):
    job = processor.store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/decide", response_model=DeflectionDecision)
def decide(
    req: DecideRequest,
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
):
    """Decide a ticket synchronously. Dry runs persist nothing."""
    try:
        return processor.decide_now(req.ticket, dry_run=req.dry_run)
    except InputValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BackendError as e:
        ERRORS.labels(type=e.kind).inc()
        logger.error("deflection_decide_failed", ticket_id=req.ticket.id, error_kind=e.kind, error=str(e))
        raise HTTPException(status_code=502, detail=f"Reasoning backend error ({e.kind}): {e}")


@router.post("/feedback")
def submit_feedback(
    req: FeedbackRequest,
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
):
    try:
        category = processor.engine.feedback.learn_from_feedback(
            req.tenant_id, req.ticket_id, req.satisfied, req.feedback,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "category": category}


@router.get("/success-rates/{tenant_id}")
def success_rates(
    tenant_id: UUID,
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
) -> dict[str, float]:
    return processor.engine.feedback.get_success_rates(tenant_id)


@router.get("/usage/{tenant_id}", response_model=UsageResponse)
def tenant_usage(
    tenant_id: UUID,
    day: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
    r=Depends(get_redis),
):
    """Reasoning tokens, calls and USD spend for one tenant on one UTC day."""
    deflection_settings = processor.settings_provider.get(tenant_id)
    if deflection_settings is None:
        raise HTTPException(status_code=404, detail="Tenant not found or inactive")
    return TenantUsage(str(tenant_id), deflection_settings.max_tokens_per_day, r=r).snapshot(day)


@router.get("/queue/stats", response_model=QueueStats)
def queue_stats(
    window_hours: Optional[int] = Query(None, ge=1, le=24 * 30),
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
):
    return processor.get_queue_stats(window_hours)


@router.post("/queue/cleanup", response_model=CleanupResponse)
def cleanup_queue(
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
):
    deleted = processor.cleanup_old_jobs()
    logger.info("deflection_cleanup_requested", admin=admin, deleted=deleted)
    return CleanupResponse(deleted=deleted)


@router.get("/failures", response_model=list[SystemErrorResponse])
def list_failures(
    tenant_id: Optional[UUID] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    admin: str = Depends(verify_admin_token),
    processor=Depends(get_processor),
):
    """Critical failure records (jobs that exhausted their retries)."""
    return processor.store.list_failures(tenant_id=tenant_id, page=page, per_page=per_page)

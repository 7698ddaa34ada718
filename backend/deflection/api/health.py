"""Health check and metrics endpoints."""

import redis as redis_lib
from fastapi import APIRouter, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from deflection.config import settings
from deflection.database import get_session_factory
from deflection.schemas.common import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    """Health check endpoint."""
    db_status = "ok"
    redis_status = "ok"

    try:
        with get_session_factory()() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db_status = "error"

    try:
        r = redis_lib.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
    except redis_lib.RedisError:
        redis_status = "error"

    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        processor_status = "disabled"
    else:
        processor_status = "running" if processor.is_running else "stopped"

    overall = "healthy" if db_status == "ok" and redis_status == "ok" else "degraded"

    return HealthResponse(
        status=overall,
        db=db_status,
        redis=redis_status,
        processor=processor_status,
    )


@router.get("/metrics")
def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

"""Deflection job model - one durable unit of scheduled deflection work."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, String, Text, Integer, DateTime, ForeignKey, Index, Uuid, case
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from deflection.database import Base, utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class JobPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


CLAIMABLE_STATUSES = (JobStatus.PENDING.value, JobStatus.RETRYING.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

# Lower rank is claimed first
PRIORITY_RANK = {
    JobPriority.HIGH.value: 0,
    JobPriority.NORMAL.value: 1,
    JobPriority.LOW.value: 2,
}


class DeflectionJob(Base):
    __tablename__ = "deflection_jobs"
    __table_args__ = (
        Index("ix_deflection_jobs_claim", "status", "scheduled_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id"), nullable=False, index=True)

    # Payload
    ticket_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    ticket_data: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    webhook_event: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    # Scheduling
    priority: Mapped[str] = mapped_column(String(10), default=JobPriority.NORMAL.value)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Outcome
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)  # auth, timeout, malformed_response, ...
    result: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


priority_order = case(PRIORITY_RANK, value=DeflectionJob.priority, else_=len(PRIORITY_RANK))

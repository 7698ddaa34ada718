"""Common response schemas."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from deflection.models.job import JobPriority, JobStatus
from deflection.schemas.decision import DeflectionDecision
from deflection.schemas.ticket import TicketData


class JobResponse(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    ticket_id: str
    ticket_data: dict
    webhook_event: Optional[dict]
    priority: JobPriority
    status: JobStatus
    max_retries: int
    retry_count: int
    scheduled_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]
    error_kind: Optional[str]
    result: Optional[dict]
    created_at: datetime

    model_config = {"from_attributes": True}

    @property
    def ticket(self) -> TicketData:
        return TicketData.model_validate(self.ticket_data)

    @property
    def decision(self) -> DeflectionDecision | None:
        if self.result is None:
            return None
        return DeflectionDecision.model_validate(self.result)


class SystemErrorResponse(BaseModel):
    id: uuid.UUID
    tenant_id: Optional[uuid.UUID]
    type: str
    severity: str
    message: str
    extra_data: Optional[dict]
    created_at: datetime

    model_config = {"from_attributes": True}


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0
    average_processing_seconds: float = 0.0
    window_hours: int = 24


class UsageResponse(BaseModel):
    tenant_id: str
    date: str
    tokens: int
    calls: int
    cost_usd: float
    max_tokens_per_day: int
    tokens_remaining: int


class HealthResponse(BaseModel):
    status: str
    version: str = "1.0.0"
    db: str
    redis: str
    processor: str

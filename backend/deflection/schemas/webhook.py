"""Request payload schemas."""

import uuid
from typing import Optional

from pydantic import BaseModel, Field

from deflection.models.job import JobPriority
from deflection.schemas.ticket import TicketData


class DeflectionWebhookPayload(BaseModel):
    """Incoming ticket event from the helpdesk integration."""
    ticket_id: str = Field(..., min_length=1, max_length=255)
    conversation_id: str = Field(..., min_length=1, max_length=255)
    subject: Optional[str] = None
    content: str = Field("", max_length=50000)
    customer_email: str = Field(..., min_length=1, max_length=255)  # EmailStr is too strict for webhooks
    category: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    ticket_priority: Optional[str] = None
    event: Optional[dict] = None

    def to_ticket(self, tenant_id: uuid.UUID) -> TicketData:
        return TicketData(
            id=self.ticket_id,
            tenant_id=tenant_id,
            conversation_id=self.conversation_id,
            subject=self.subject,
            content=self.content,
            customer_email=self.customer_email,
            category=self.category,
            priority=self.ticket_priority,
        )


class EnqueueRequest(BaseModel):
    tenant_id: uuid.UUID
    ticket: TicketData
    webhook_event: Optional[dict] = None
    priority: JobPriority = JobPriority.NORMAL


class DecideRequest(BaseModel):
    ticket: TicketData
    dry_run: bool = True


class FeedbackRequest(BaseModel):
    tenant_id: uuid.UUID
    ticket_id: str = Field(..., min_length=1, max_length=255)
    satisfied: bool
    feedback: Optional[str] = Field(None, max_length=5000)


class WebhookResponse(BaseModel):
    """Standard enqueue response."""
    ok: bool
    id: str
    message: str


class CleanupResponse(BaseModel):
    deleted: int

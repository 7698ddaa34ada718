"""Ticket input schema."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from deflection.database import utcnow


class TicketData(BaseModel):
    """Immutable ticket as produced by the ingestion side."""

    model_config = {"frozen": True}

    id: str = Field(..., min_length=1, max_length=255)
    tenant_id: uuid.UUID
    conversation_id: str = Field(..., min_length=1, max_length=255)
    subject: Optional[str] = None
    content: str = ""
    customer_email: str = Field(..., min_length=1, max_length=255)
    category: Optional[str] = None
    priority: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def text(self) -> str:
        return f"{self.subject or ''} {self.content}".strip()

"""Ticket analysis model - prior decisions backing similarity reuse and feedback."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, String, Text, Float, Boolean, DateTime, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from deflection.database import Base, utcnow


class TicketAnalysis(Base):
    __tablename__ = "ticket_analyses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    ticket_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    conversation_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Subject and body, the document TF-IDF similarity runs over
    ticket_text: Mapped[str] = mapped_column(Text, nullable=False)

    # Outcome
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    sentiment: Mapped[str | None] = mapped_column(String(20), nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    response_type: Mapped[str | None] = mapped_column(String(20), nullable=True)  # auto_resolve, follow_up, escalate
    response_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    answered: Mapped[bool] = mapped_column(Boolean, default=False)

    # Knowledge articles and templates the reply was built from
    knowledge_article_ids: Mapped[list] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), default=list)
    template_ids: Mapped[list] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), default=list)

    # Feedback
    customer_satisfied: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    customer_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

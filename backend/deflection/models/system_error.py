"""System error log - critical failures that need operator attention."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, String, Text, DateTime, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from deflection.database import Base, utcnow


class SystemErrorLog(Base):
    __tablename__ = "system_errors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)  # e.g. deflection_job_failure
    severity: Mapped[str] = mapped_column(String(20), default="critical")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    extra_data: Mapped[dict | None] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

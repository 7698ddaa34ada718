"""Tenant model - multi-tenant deflection configuration."""

import uuid
from datetime import datetime

from sqlalchemy import String, Boolean, Integer, Float, Text, DateTime, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from deflection.config import settings
from deflection.database import Base, utcnow


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Deflection policy
    auto_response_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    confidence_threshold: Mapped[float] = mapped_column(Float, default=settings.default_confidence_threshold)
    escalation_threshold: Mapped[float] = mapped_column(Float, default=settings.default_escalation_threshold)

    # Daily reasoning budget
    max_tokens_per_day: Mapped[int] = mapped_column(Integer, default=settings.default_max_tokens_per_day)

    # YAML config for list-valued toggles (excluded categories, keywords, ...)
    deflection_config_yaml: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Tenant {self.slug}>"

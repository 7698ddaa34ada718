"""Tenant schemas."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from deflection.config import settings


class TenantCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9-]+$")
    auto_response_enabled: bool = False
    confidence_threshold: float = Field(settings.default_confidence_threshold, ge=0.0, le=1.0)
    escalation_threshold: float = Field(settings.default_escalation_threshold, ge=0.0, le=1.0)
    max_tokens_per_day: int = Field(settings.default_max_tokens_per_day, ge=0)
    deflection_config_yaml: Optional[str] = None


class TenantUpdate(BaseModel):
    name: Optional[str] = None
    is_active: Optional[bool] = None
    auto_response_enabled: Optional[bool] = None
    confidence_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    escalation_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_tokens_per_day: Optional[int] = Field(None, ge=0)
    deflection_config_yaml: Optional[str] = None


class TenantResponse(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    is_active: bool
    auto_response_enabled: bool
    confidence_threshold: float
    escalation_threshold: float
    max_tokens_per_day: int
    deflection_config_yaml: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

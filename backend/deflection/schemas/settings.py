"""Per-tenant deflection settings snapshot."""

from typing import Optional

from pydantic import BaseModel, Field, model_validator


DEFAULT_ESCALATION_KEYWORDS = (
    "urgent", "emergency", "asap", "immediately", "critical",
    "escalate", "manager", "supervisor",
)


class DeflectionSettings(BaseModel):
    """Value snapshot of a tenant's policy, read once per job."""

    model_config = {"frozen": True}

    auto_response_enabled: bool = False
    confidence_threshold: float = Field(0.8, ge=0.0, le=1.0)
    escalation_threshold: float = Field(0.5, ge=0.0, le=1.0)

    response_language: str = "en"
    business_hours_only: bool = False
    excluded_categories: tuple[str, ...] = ("legal", "security")
    escalation_keywords: tuple[str, ...] = DEFAULT_ESCALATION_KEYWORDS
    escalation_priorities: tuple[str, ...] = ("urgent",)
    custom_instructions: Optional[str] = None
    max_content_length: int = Field(10000, gt=0)
    similarity_reuse_enabled: bool = True
    max_tokens_per_day: int = Field(500000, ge=0)

    @model_validator(mode="after")
    def _check_thresholds(self):
        if self.escalation_threshold > self.confidence_threshold:
            raise ValueError("escalation_threshold must not exceed confidence_threshold")
        return self

"""Decision engine output schemas."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ResponseType(str, Enum):
    AUTO_RESOLVE = "auto_resolve"
    FOLLOW_UP = "follow_up"
    ESCALATE = "escalate"


class DecisionReason(str, Enum):
    # Preflight rejections
    SETTINGS_MISSING = "settings_missing"
    AUTO_RESPONSE_DISABLED = "auto_response_disabled"
    EMPTY_CONTENT = "empty_content"
    CONTENT_TOO_LONG = "content_too_long"
    OUTSIDE_BUSINESS_HOURS = "outside_business_hours"
    EXCLUDED_CATEGORY = "excluded_category"
    ESCALATION_KEYWORD = "escalation_keyword"
    ESCALATION_PRIORITY = "escalation_priority"
    ALREADY_ANSWERED = "already_answered"
    # Post-analysis outcomes
    LOW_CONFIDENCE = "low_confidence"
    FOLLOW_UP_REQUIRED = "follow_up_required"
    CONFIDENT_RESPONSE = "confident_response"


class ResponseAttempt(BaseModel):
    model_config = {"frozen": True}

    response_content: str
    response_type: ResponseType
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    category: Optional[str] = None
    sentiment: Optional[str] = None
    cost_usd: float = 0.0
    tokens_used: int = 0
    model: Optional[str] = None
    reused_from_ticket_id: Optional[str] = None
    knowledge_article_ids: tuple[str, ...] = ()
    template_ids: tuple[str, ...] = ()


class DeflectionDecision(BaseModel):
    model_config = {"frozen": True}

    should_respond: bool
    reason: DecisionReason
    response: Optional[ResponseAttempt] = None

    @property
    def action(self) -> ResponseType:
        """Chosen action; a rejected ticket goes to a human."""
        if self.response is None:
            return ResponseType.ESCALATE
        return self.response.response_type

    @property
    def cost_usd(self) -> float:
        return self.response.cost_usd if self.response else 0.0

    @property
    def tokens_used(self) -> int:
        return self.response.tokens_used if self.response else 0


class PriorAnalysis(BaseModel):
    """A prior ticket's decision, as returned by the similarity index."""

    model_config = {"frozen": True}

    ticket_id: str
    conversation_id: str
    similarity: float
    category: Optional[str] = None
    sentiment: Optional[str] = None
    confidence_score: Optional[float] = None
    response_type: Optional[ResponseType] = None
    response_content: Optional[str] = None
    answered: bool = False

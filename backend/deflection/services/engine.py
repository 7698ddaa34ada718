"""Deflection decision engine.

Pipeline:
1. Preflight checks (cheap gates, no backend call)
2. Similarity short-circuit (reuse a near-duplicate's analysis)
3. Reasoning backend call with the tenant's knowledge articles and templates
   (category, sentiment, confidence, reply)
4. Action selection against the tenant's thresholds

Backend failures propagate to the caller. A ticket that needs a human is a
decision; a backend that could not answer is a fault.
"""

from datetime import datetime
from typing import Callable, Optional, Sequence

import structlog

from deflection.config import settings
from deflection.database import utcnow
from deflection.errors import MalformedResponseError
from deflection.metrics import DECISIONS
from deflection.schemas.decision import (
    DecisionReason, DeflectionDecision, PriorAnalysis, ResponseAttempt, ResponseType,
)
from deflection.schemas.knowledge import PromptContext
from deflection.schemas.settings import DeflectionSettings
from deflection.schemas.ticket import TicketData

logger = structlog.get_logger()

DEFAULT_TAXONOMY = (
    "account", "billing", "technical", "how_to", "bug",
    "feature_request", "legal", "security", "other",
)


def select_action(confidence: float, deflection_settings: DeflectionSettings) -> ResponseType:
    """Map a confidence score onto an action.

    ``confidence_threshold`` is inclusive (>=), ``escalation_threshold`` is
    exclusive (<).
    """
    if confidence >= deflection_settings.confidence_threshold:
        return ResponseType.AUTO_RESOLVE
    if confidence < deflection_settings.escalation_threshold:
        return ResponseType.ESCALATE
    return ResponseType.FOLLOW_UP


def is_business_hours(now: datetime) -> bool:
    # Monday to Friday, 9 AM to 5 PM UTC
    return now.weekday() < 5 and 9 <= now.hour < 17


class DecisionEngine:
    def __init__(
        self,
        backend,
        similarity_threshold: Optional[float] = None,
        taxonomy: Sequence[str] = DEFAULT_TAXONOMY,
        confidence_tolerance: Optional[float] = None,
        knowledge=None,
        feedback=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.similarity_threshold = (
            similarity_threshold if similarity_threshold is not None else settings.similarity_reuse_threshold
        )
        self.taxonomy = tuple(taxonomy)
        self.confidence_tolerance = (
            confidence_tolerance if confidence_tolerance is not None else settings.confidence_tolerance
        )
        self.knowledge = knowledge
        self.feedback = feedback
        self.clock = clock

    async def decide(
        self,
        ticket: TicketData,
        deflection_settings: Optional[DeflectionSettings],
        prior_analyses: Optional[Sequence[PriorAnalysis]] = None,
        track_usage: bool = True,
    ) -> DeflectionDecision:
        prior_analyses = list(prior_analyses or [])

        rejection = self.preflight(ticket, deflection_settings, prior_analyses)
        if rejection is not None:
            logger.info("deflection_preflight_rejected",
                        ticket_id=ticket.id, tenant_id=str(ticket.tenant_id), reason=rejection.value)
            return self._finish(DeflectionDecision(should_respond=False, reason=rejection))

        reusable = self.find_reusable(prior_analyses) if deflection_settings.similarity_reuse_enabled else None
        if reusable is not None:
            attempt = self._reuse(reusable, deflection_settings)
            logger.info("deflection_similarity_reused",
                        ticket_id=ticket.id, source_ticket_id=reusable.ticket_id,
                        similarity=round(reusable.similarity, 4), category=reusable.category)
        else:
            attempt = await self._analyze(ticket, deflection_settings, track_usage)

        return self._finish(self._to_decision(attempt, deflection_settings))

    def preflight(
        self,
        ticket: TicketData,
        deflection_settings: Optional[DeflectionSettings],
        prior_analyses: Sequence[PriorAnalysis] = (),
    ) -> Optional[DecisionReason]:
        """Return the rejection reason, or None if the ticket may be attempted."""
        if deflection_settings is None:
            return DecisionReason.SETTINGS_MISSING
        if not deflection_settings.auto_response_enabled:
            return DecisionReason.AUTO_RESPONSE_DISABLED

        content = ticket.content.strip()
        if not content:
            return DecisionReason.EMPTY_CONTENT
        if len(content) > deflection_settings.max_content_length:
            return DecisionReason.CONTENT_TOO_LONG

        if deflection_settings.business_hours_only and not is_business_hours(self.clock()):
            return DecisionReason.OUTSIDE_BUSINESS_HOURS

        if self._is_excluded(ticket.category, deflection_settings):
            return DecisionReason.EXCLUDED_CATEGORY

        text = ticket.text.lower()
        if any(keyword.lower() in text for keyword in deflection_settings.escalation_keywords if keyword):
            return DecisionReason.ESCALATION_KEYWORD

        escalation_priorities = {p.lower() for p in deflection_settings.escalation_priorities}
        if ticket.priority and ticket.priority.lower() in escalation_priorities:
            return DecisionReason.ESCALATION_PRIORITY

        for prior in prior_analyses:
            if prior.answered and (prior.conversation_id == ticket.conversation_id or prior.ticket_id == ticket.id):
                return DecisionReason.ALREADY_ANSWERED

        return None

    def find_reusable(self, prior_analyses: Sequence[PriorAnalysis]) -> Optional[PriorAnalysis]:
        """Best prior analysis above the similarity threshold with a known outcome."""
        candidates = [
            p for p in prior_analyses
            if p.similarity >= self.similarity_threshold
            and p.category
            and p.response_type is not None
            and p.confidence_score is not None
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.similarity)

    def normalize_confidence(self, value) -> float:
        """Clamp a slightly out-of-range confidence; reject anything worse."""
        if isinstance(value, bool):
            raise MalformedResponseError(f"Confidence is not numeric: {value!r}")
        try:
            confidence = float(value)
        except (TypeError, ValueError):
            raise MalformedResponseError(f"Confidence is not numeric: {value!r}")
        if confidence != confidence:  # NaN
            raise MalformedResponseError("Confidence is NaN")
        if confidence < -self.confidence_tolerance or confidence > 1.0 + self.confidence_tolerance:
            raise MalformedResponseError(f"Confidence {confidence} is outside [0, 1]")
        return min(max(confidence, 0.0), 1.0)

    def normalize_category(self, value) -> str:
        category = str(value or "other").strip().lower().replace(" ", "_").replace("-", "_")
        return category if category in self.taxonomy else "other"

    def learn_from_feedback(self, tenant_id: str, ticket_id: str, satisfied: bool, feedback_text: Optional[str] = None) -> None:
        """Feed customer satisfaction into category success rates."""
        if self.feedback is None:
            logger.warning("feedback_learner_not_configured", ticket_id=ticket_id)
            return
        self.feedback.learn_from_feedback(tenant_id, ticket_id, satisfied, feedback_text)

    # --- internals ---

    async def _analyze(self, ticket: TicketData, deflection_settings: DeflectionSettings, track_usage: bool) -> ResponseAttempt:
        context = self.knowledge.context_for(ticket) if self.knowledge else PromptContext()
        result = await self.backend.analyze(
            ticket, deflection_settings, self.taxonomy, track_usage=track_usage, context=context,
        )
        data = result["analysis"]

        confidence = self.normalize_confidence(data.get("confidence"))
        category = self.normalize_category(data.get("category"))
        response_type = select_action(confidence, deflection_settings)

        if self._is_excluded(category, deflection_settings):
            response_type = ResponseType.ESCALATE

        logger.info("deflection_analyzed",
                    ticket_id=ticket.id, model=result["model"], tokens=result["tokens"],
                    cost=result["cost"], confidence=confidence, category=category,
                    response_type=response_type.value)

        return ResponseAttempt(
            response_content=str(data.get("response_content") or ""),
            response_type=response_type,
            confidence_score=confidence,
            reasoning=str(data.get("reasoning") or ""),
            category=category,
            sentiment=data.get("sentiment") or "neutral",
            cost_usd=result["cost"],
            tokens_used=result["tokens"],
            model=result["model"],
            knowledge_article_ids=context.article_ids,
            template_ids=context.template_ids,
        )

    def _reuse(self, prior: PriorAnalysis, deflection_settings: DeflectionSettings) -> ResponseAttempt:
        response_type = select_action(prior.confidence_score, deflection_settings)
        if self._is_excluded(prior.category, deflection_settings):
            response_type = ResponseType.ESCALATE
        return ResponseAttempt(
            response_content=prior.response_content or "",
            response_type=response_type,
            confidence_score=prior.confidence_score,
            reasoning=f"Reused analysis of similar ticket {prior.ticket_id} (similarity {prior.similarity:.2f})",
            category=prior.category,
            sentiment=prior.sentiment,
            cost_usd=0.0,
            tokens_used=0,
            reused_from_ticket_id=prior.ticket_id,
        )

    def _to_decision(self, attempt: ResponseAttempt, deflection_settings: DeflectionSettings) -> DeflectionDecision:
        if attempt.response_type == ResponseType.AUTO_RESOLVE:
            return DeflectionDecision(should_respond=True, reason=DecisionReason.CONFIDENT_RESPONSE, response=attempt)
        if attempt.response_type == ResponseType.FOLLOW_UP:
            return DeflectionDecision(should_respond=True, reason=DecisionReason.FOLLOW_UP_REQUIRED, response=attempt)
        reason = DecisionReason.LOW_CONFIDENCE
        if self._is_excluded(attempt.category, deflection_settings):
            reason = DecisionReason.EXCLUDED_CATEGORY
        return DeflectionDecision(should_respond=False, reason=reason, response=attempt)

    @staticmethod
    def _is_excluded(category: Optional[str], deflection_settings: DeflectionSettings) -> bool:
        if not category:
            return False
        return category.lower() in {c.lower() for c in deflection_settings.excluded_categories}

    def _finish(self, decision: DeflectionDecision) -> DeflectionDecision:
        DECISIONS.labels(action=decision.action.value, reason=decision.reason.value).inc()
        return decision

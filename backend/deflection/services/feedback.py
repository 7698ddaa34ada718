"""Feedback learner - category success rates from customer satisfaction."""

import uuid
from typing import Optional

import redis as redis_lib
import structlog
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from deflection.errors import NotFoundError
from deflection.models.analysis import TicketAnalysis
from deflection.services.budget import get_redis

logger = structlog.get_logger()


class FeedbackLearner:
    """Maintains per-tenant, per-category satisfaction counters.

    Counters live in Redis under ``feedback:{tenant}:{category}`` with fields
    ``total`` and ``satisfied``. They feed threshold tuning; issued decisions
    are never touched. Knowledge articles and templates behind the reply get
    the same verdict folded into their success rates.
    """

    def __init__(self, session_factory: sessionmaker, r: redis_lib.Redis | None = None, knowledge=None):
        self.session_factory = session_factory
        self.r = r if r is not None else get_redis()
        self.knowledge = knowledge

    def _key(self, tenant_id: str, category: str) -> str:
        return f"feedback:{tenant_id}:{category}"

    def _index_key(self, tenant_id: str) -> str:
        return f"feedback:{tenant_id}:categories"

    def learn_from_feedback(
        self,
        tenant_id: uuid.UUID | str,
        ticket_id: str,
        satisfied: bool,
        feedback_text: Optional[str] = None,
    ) -> str:
        """Record feedback for a ticket; returns the category it was counted under."""
        tenant_uuid = uuid.UUID(str(tenant_id))
        with self.session_factory() as session:
            analysis = session.execute(
                select(TicketAnalysis)
                .where(TicketAnalysis.tenant_id == tenant_uuid, TicketAnalysis.ticket_id == ticket_id)
                .order_by(TicketAnalysis.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if analysis is None:
                raise NotFoundError(f"No analysis found for ticket {ticket_id}")
            analysis.customer_satisfied = satisfied
            analysis.customer_feedback = feedback_text
            category = analysis.category or "other"
            article_ids = list(analysis.knowledge_article_ids or [])
            template_ids = list(analysis.template_ids or [])
            session.commit()

        if self.knowledge is not None and (article_ids or template_ids):
            self.knowledge.record_outcome(article_ids, template_ids, satisfied)

        pipe = self.r.pipeline()
        pipe.hincrby(self._key(str(tenant_uuid), category), "total", 1)
        if satisfied:
            pipe.hincrby(self._key(str(tenant_uuid), category), "satisfied", 1)
        pipe.sadd(self._index_key(str(tenant_uuid)), category)
        pipe.execute()

        logger.info("feedback_recorded", tenant_id=str(tenant_uuid), ticket_id=ticket_id,
                    category=category, satisfied=satisfied)
        return category

    def get_success_rates(self, tenant_id: uuid.UUID | str) -> dict[str, float]:
        """Category -> share of satisfied customers."""
        rates = {}
        for category in sorted(self.r.smembers(self._index_key(str(tenant_id)))):
            data = self.r.hgetall(self._key(str(tenant_id), category))
            total = int(data.get("total", 0))
            if total:
                rates[category] = round(int(data.get("satisfied", 0)) / total, 4)
        return rates

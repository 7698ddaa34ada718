"""Knowledge base - tenant articles and response templates for reply drafting."""

import uuid
from typing import Iterable, Optional

import structlog
from sklearn.feature_extraction.text import CountVectorizer
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from deflection.config import settings
from deflection.models.knowledge import KnowledgeArticle, ResponseTemplate
from deflection.schemas.knowledge import KnowledgeSnippet, PromptContext, TemplateSnippet
from deflection.schemas.ticket import TicketData

logger = structlog.get_logger()

GENERAL_CATEGORY = "general"

_analyzer = CountVectorizer(stop_words="english").build_analyzer()


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Distinct non-stop-word terms of ``text``, in order of appearance."""
    keywords = []
    for term in _analyzer(text):
        if len(term) > 2 and term not in keywords:
            keywords.append(term)
            if len(keywords) == limit:
                break
    return keywords


def _matches(article: KnowledgeArticle, keywords: list[str]) -> bool:
    title = article.title.lower()
    content = article.content.lower()
    tags = {str(t).lower() for t in (article.tags or [])}
    return any(k in title or k in content or k in tags for k in keywords)


class KnowledgeBase:
    """Tenant-scoped lookup of articles and templates, ranked by success rate."""

    def __init__(
        self,
        session_factory: sessionmaker,
        article_limit: Optional[int] = None,
        template_limit: Optional[int] = None,
        scan_limit: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.article_limit = article_limit or settings.knowledge_article_limit
        self.template_limit = template_limit or settings.knowledge_template_limit
        self.scan_limit = scan_limit or settings.knowledge_scan_limit

    def context_for(self, ticket: TicketData) -> PromptContext:
        """Articles and templates to put in front of the model for ``ticket``.

        A failed lookup yields an empty context; the ticket is still analyzed.
        """
        try:
            return PromptContext(
                articles=tuple(self.relevant_articles(ticket)),
                templates=tuple(self.templates_for(ticket.tenant_id, ticket.category)),
            )
        except SQLAlchemyError as e:
            logger.warning("knowledge_lookup_failed", ticket_id=ticket.id, error=str(e))
            return PromptContext()

    def relevant_articles(self, ticket: TicketData) -> list[KnowledgeSnippet]:
        keywords = extract_keywords(ticket.text)
        if not keywords:
            return []
        with self.session_factory() as session:
            rows = session.execute(
                select(KnowledgeArticle)
                .where(KnowledgeArticle.tenant_id == ticket.tenant_id, KnowledgeArticle.is_active.is_(True))
                .order_by(KnowledgeArticle.success_rate.desc(), KnowledgeArticle.created_at.desc())
                .limit(self.scan_limit)
            ).scalars().all()
            matched = [row for row in rows if _matches(row, keywords)]
            return [KnowledgeSnippet.model_validate(row) for row in matched[:self.article_limit]]

    def templates_for(self, tenant_id: uuid.UUID, category: Optional[str]) -> list[TemplateSnippet]:
        query = (
            select(ResponseTemplate)
            .where(ResponseTemplate.tenant_id == tenant_id, ResponseTemplate.is_active.is_(True))
        )
        if category:
            query = query.where(ResponseTemplate.category.in_([category.lower(), GENERAL_CATEGORY]))
        query = query.order_by(ResponseTemplate.success_rate.desc(), ResponseTemplate.created_at.desc())
        with self.session_factory() as session:
            rows = session.execute(query.limit(self.template_limit)).scalars().all()
            return [TemplateSnippet.model_validate(row) for row in rows]

    def record_outcome(self, article_ids: Iterable[str], template_ids: Iterable[str], satisfied: bool) -> None:
        """Fold one customer verdict into the success rates of the resources used."""
        hit = 1 if satisfied else 0
        with self.session_factory() as session:
            for model, ids in ((KnowledgeArticle, article_ids), (ResponseTemplate, template_ids)):
                ids = [uuid.UUID(str(i)) for i in ids]
                if not ids:
                    continue
                session.execute(
                    update(model)
                    .where(model.id.in_(ids))
                    .values(
                        usage_count=model.usage_count + 1,
                        success_count=model.success_count + hit,
                        success_rate=(model.success_count + hit) * 1.0 / (model.usage_count + 1),
                    )
                    .execution_options(synchronize_session=False)
                )
            session.commit()

"""Similarity index over prior ticket analyses."""

import uuid
from typing import Optional

import structlog
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from deflection.config import settings
from deflection.models.analysis import TicketAnalysis
from deflection.schemas.decision import DeflectionDecision, PriorAnalysis, ResponseType
from deflection.schemas.ticket import TicketData

logger = structlog.get_logger()


def similarity_scores(text: str, corpus: list[str]) -> list[float]:
    """Cosine similarity of ``text`` to each document in ``corpus``.

    The TF-IDF vocabulary is fitted on the query and the corpus together, so
    term weights reflect how common a word is among this tenant's tickets.
    """
    if not corpus:
        return []
    vectorizer = TfidfVectorizer(stop_words="english")
    try:
        matrix = vectorizer.fit_transform([text, *corpus])
    except ValueError:
        # Nothing but stop words anywhere
        return [0.0] * len(corpus)
    return cosine_similarity(matrix[0], matrix[1:])[0].tolist()


class SimilarityIndex:
    """Finds near-duplicate prior tickets for a tenant."""

    def __init__(
        self,
        session_factory: sessionmaker,
        candidate_threshold: Optional[float] = None,
        max_results: Optional[int] = None,
        scan_limit: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.candidate_threshold = (
            candidate_threshold if candidate_threshold is not None else settings.similarity_candidate_threshold
        )
        self.max_results = max_results or settings.similarity_max_results
        self.scan_limit = scan_limit or settings.similarity_scan_limit

    def find_similar(self, ticket: TicketData) -> list[PriorAnalysis]:
        with self.session_factory() as session:
            rows = session.execute(
                select(TicketAnalysis)
                .where(TicketAnalysis.tenant_id == ticket.tenant_id)
                .order_by(TicketAnalysis.created_at.desc())
                .limit(self.scan_limit)
            ).scalars().all()

        scores = similarity_scores(ticket.text, [row.ticket_text for row in rows])
        matches = []
        for row, similarity in zip(rows, scores):
            same_conversation = row.conversation_id == ticket.conversation_id
            if similarity < self.candidate_threshold and not same_conversation:
                continue
            matches.append(PriorAnalysis(
                ticket_id=row.ticket_id,
                conversation_id=row.conversation_id,
                similarity=min(similarity, 1.0),
                category=row.category,
                sentiment=row.sentiment,
                confidence_score=row.confidence_score,
                response_type=ResponseType(row.response_type) if row.response_type else None,
                response_content=row.response_content,
                answered=row.answered,
            ))

        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:self.max_results]

    def record(self, ticket: TicketData, decision: DeflectionDecision) -> uuid.UUID:
        """Persist a decision so later tickets can reuse or dedupe against it."""
        response = decision.response
        analysis = TicketAnalysis(
            tenant_id=ticket.tenant_id,
            ticket_id=ticket.id,
            conversation_id=ticket.conversation_id,
            ticket_text=ticket.text,
            category=response.category if response else ticket.category,
            sentiment=response.sentiment if response else None,
            confidence_score=response.confidence_score if response else None,
            response_type=response.response_type.value if response else None,
            response_content=response.response_content if response else None,
            answered=decision.should_respond,
            knowledge_article_ids=list(response.knowledge_article_ids) if response else [],
            template_ids=list(response.template_ids) if response else [],
        )
        with self.session_factory() as session:
            session.add(analysis)
            session.commit()
        logger.debug("ticket_analysis_recorded", ticket_id=ticket.id, analysis_id=str(analysis.id))
        return analysis.id

"""Base worker utilities: async bridge and processor wiring."""

import asyncio

import structlog
from sqlalchemy.orm import sessionmaker

from deflection.config import settings
from deflection.database import get_session_factory

logger = structlog.get_logger()


def run_async(coro):
    """Run an async coroutine from a sync worker thread."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def build_processor(session_factory: sessionmaker | None = None, backend=None, r=None):
    """Wire store, settings, similarity index, knowledge base, engine and processor together."""
    from deflection.services.engine import DecisionEngine
    from deflection.services.feedback import FeedbackLearner
    from deflection.services.job_store import JobStore
    from deflection.services.knowledge import KnowledgeBase
    from deflection.services.reasoning import ReasoningBackend
    from deflection.services.settings_provider import TenantSettingsProvider
    from deflection.services.similarity import SimilarityIndex
    from deflection.workers.processor import DeflectionProcessor

    session_factory = session_factory or get_session_factory()
    knowledge = KnowledgeBase(session_factory)
    engine = DecisionEngine(
        backend or ReasoningBackend(),
        knowledge=knowledge,
        feedback=FeedbackLearner(session_factory, r=r, knowledge=knowledge),
    )
    processor = DeflectionProcessor(
        store=JobStore(session_factory),
        engine=engine,
        settings_provider=TenantSettingsProvider(session_factory),
        similarity=SimilarityIndex(session_factory),
    )
    logger.info("deflection_processor_built", model=settings.reasoning_model, batch_size=processor.batch_size)
    return processor

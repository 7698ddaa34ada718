"""Shared fixtures: file-backed SQLite database, tenants and a fake backend."""

import asyncio
import uuid

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from deflection.database import init_db
from deflection.models.tenant import Tenant
from deflection.schemas.ticket import TicketData
from deflection.services.job_store import JobStore
from deflection.services.knowledge import KnowledgeBase
from deflection.services.settings_provider import TenantSettingsProvider
from deflection.services.similarity import SimilarityIndex


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'deflection.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )

    # Take the write lock at BEGIN so concurrent claims serialize.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def make_tenant(session_factory):
    def _make(**overrides) -> Tenant:
        suffix = uuid.uuid4().hex[:8]
        values = {
            "name": f"Tenant {suffix}",
            "slug": f"tenant-{suffix}",
            "is_active": True,
            "auto_response_enabled": True,
            "confidence_threshold": 0.8,
            "escalation_threshold": 0.5,
            "max_tokens_per_day": 100000,
        }
        values.update(overrides)
        tenant = Tenant(**values)
        with session_factory() as session:
            session.add(tenant)
            session.commit()
        return tenant
    return _make


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def make_ticket():
    def _make(tenant_id, **overrides) -> TicketData:
        suffix = uuid.uuid4().hex[:8]
        values = {
            "id": f"T-{suffix}",
            "tenant_id": tenant_id,
            "conversation_id": f"C-{suffix}",
            "subject": "Cannot reset my password",
            "content": "The reset link in the email says it has expired. How do I get a new one?",
            "customer_email": "customer@example.com",
        }
        values.update(overrides)
        return TicketData(**values)
    return _make


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def settings_provider(session_factory):
    return TenantSettingsProvider(session_factory)


@pytest.fixture
def similarity(session_factory):
    return SimilarityIndex(session_factory)


@pytest.fixture
def knowledge(session_factory):
    return KnowledgeBase(session_factory)


class FakeBackend:
    """Stands in for ReasoningBackend.

    ``error`` is raised on every call, ``errors_by_ticket`` on every call for
    that ticket id, and ``transient_errors`` are raised once each, in order.
    ``delay`` seconds pass before each call returns.
    """

    def __init__(self, analysis=None, error=None, errors_by_ticket=None, transient_errors=None,
                 tokens=150, cost=0.0012, delay=0):
        self.analysis = analysis or {
            "category": "account",
            "sentiment": "neutral",
            "confidence": 0.92,
            "response_content": "You can request a new reset link from the login page.",
            "reasoning": "Standard password reset question.",
        }
        self.error = error
        self.errors_by_ticket = errors_by_ticket or {}
        self.transient_errors = list(transient_errors or [])
        self.tokens = tokens
        self.cost = cost
        self.delay = delay
        self.calls = []

    async def analyze(self, ticket, deflection_settings, taxonomy, track_usage=True, context=None):
        self.calls.append({"ticket_id": ticket.id, "track_usage": track_usage, "context": context})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if ticket.id in self.errors_by_ticket:
            raise self.errors_by_ticket[ticket.id]
        if self.transient_errors:
            raise self.transient_errors.pop(0)
        return {
            "analysis": dict(self.analysis),
            "content": "",
            "model": "fake-model",
            "input_tokens": self.tokens - 50,
            "output_tokens": 50,
            "tokens": self.tokens,
            "cost": self.cost,
            "duration": 0.01,
        }


@pytest.fixture
def backend_factory():
    return FakeBackend


@pytest.fixture
def fake_backend():
    return FakeBackend()

"""Tests for knowledge articles, response templates and their success rates."""

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from deflection.models.knowledge import KnowledgeArticle, ResponseTemplate
from deflection.schemas.settings import DeflectionSettings
from deflection.services.engine import DecisionEngine
from deflection.services.feedback import FeedbackLearner
from deflection.services.knowledge import KnowledgeBase, extract_keywords


@pytest.fixture
def add_article(session_factory):
    def _add(tenant_id, title, content, success_rate=0.0, **extra) -> KnowledgeArticle:
        article = KnowledgeArticle(tenant_id=tenant_id, title=title, content=content,
                                   success_rate=success_rate, **extra)
        with session_factory() as session:
            session.add(article)
            session.commit()
            session.refresh(article)
            session.expunge(article)
        return article
    return _add


@pytest.fixture
def add_template(session_factory):
    def _add(tenant_id, name, category="general", success_rate=0.0, **extra) -> ResponseTemplate:
        template = ResponseTemplate(tenant_id=tenant_id, name=name, category=category,
                                    template_content=f"{name} body", success_rate=success_rate, **extra)
        with session_factory() as session:
            session.add(template)
            session.commit()
            session.refresh(template)
            session.expunge(template)
        return template
    return _add


class TestExtractKeywords:
    def test_drops_stop_words_and_short_terms(self):
        assert extract_keywords("Hi, I am unable to download the invoice") == ["unable", "download", "invoice"]

    def test_distinct_and_capped(self):
        assert extract_keywords("invoice invoice refund", limit=1) == ["invoice"]

    def test_nothing_left(self):
        assert extract_keywords("the and of") == []


class TestRelevantArticles:
    def test_keyword_match_ranked_by_success_rate(self, knowledge, tenant, make_ticket, add_article):
        add_article(tenant.id, "Password reset basics", "Use the reset link.", success_rate=0.4)
        best = add_article(tenant.id, "Expired reset links", "Request a new password link.", success_rate=0.9)
        add_article(tenant.id, "Exporting contacts", "Contacts > Export > CSV.", success_rate=1.0)

        articles = knowledge.relevant_articles(make_ticket(tenant.id))

        assert [a.title for a in articles] == [best.title, "Password reset basics"]

    def test_tags_match(self, knowledge, tenant, make_ticket, add_article):
        add_article(tenant.id, "Login help", "See account settings.", tags=["expired"])
        assert [a.title for a in knowledge.relevant_articles(make_ticket(tenant.id))] == ["Login help"]

    def test_limit(self, session_factory, tenant, make_ticket, add_article):
        for n in range(5):
            add_article(tenant.id, f"Password article {n}", "reset")
        index = KnowledgeBase(session_factory, article_limit=2)
        assert len(index.relevant_articles(make_ticket(tenant.id))) == 2

    def test_inactive_and_other_tenants_excluded(self, knowledge, tenant, make_tenant, make_ticket, add_article):
        add_article(tenant.id, "Old password guide", "reset", is_active=False)
        add_article(make_tenant().id, "Password guide", "reset")
        assert knowledge.relevant_articles(make_ticket(tenant.id)) == []


class TestTemplates:
    def test_category_and_general(self, knowledge, tenant, add_template):
        add_template(tenant.id, "Billing apology", category="billing", success_rate=0.5)
        add_template(tenant.id, "Generic greeting", success_rate=0.8)
        add_template(tenant.id, "Bug acknowledgement", category="bug", success_rate=1.0)

        templates = knowledge.templates_for(tenant.id, "Billing")

        assert [t.name for t in templates] == ["Generic greeting", "Billing apology"]

    def test_no_category_returns_top_templates(self, session_factory, tenant, add_template):
        for n in range(4):
            add_template(tenant.id, f"T{n}", category="bug", success_rate=n / 10)
        index = KnowledgeBase(session_factory, template_limit=3)
        assert [t.name for t in index.templates_for(tenant.id, None)] == ["T3", "T2", "T1"]


class TestContext:
    def test_context_for_ticket(self, knowledge, tenant, make_ticket, add_article, add_template):
        article = add_article(tenant.id, "Password reset", "Use the link.")
        template = add_template(tenant.id, "Greeting")

        context = knowledge.context_for(make_ticket(tenant.id))

        assert context.article_ids == (str(article.id),)
        assert context.template_ids == (str(template.id),)

    def test_lookup_failure_yields_empty_context(self, tenant, make_ticket):
        broken = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))
        context = KnowledgeBase(broken).context_for(make_ticket(tenant.id))
        assert context.articles == ()
        assert context.templates == ()

    def test_engine_passes_context_and_records_ids(self, knowledge, fake_backend, tenant, make_ticket,
                                                   add_article):
        article = add_article(tenant.id, "Password reset", "Use the link.")
        engine = DecisionEngine(fake_backend, knowledge=knowledge)

        decision = asyncio.run(engine.decide(make_ticket(tenant.id), DeflectionSettings(auto_response_enabled=True)))

        assert fake_backend.calls[0]["context"].article_ids == (str(article.id),)
        assert decision.response.knowledge_article_ids == (str(article.id),)


class TestRecordOutcome:
    def test_success_rates_updated(self, knowledge, session_factory, tenant, add_article, add_template):
        article = add_article(tenant.id, "Password reset", "Use the link.")
        template = add_template(tenant.id, "Greeting")

        knowledge.record_outcome([str(article.id)], [str(template.id)], True)
        knowledge.record_outcome([str(article.id)], [], False)

        with session_factory() as session:
            a = session.get(KnowledgeArticle, article.id)
            t = session.get(ResponseTemplate, template.id)
            assert (a.usage_count, a.success_count, a.success_rate) == (2, 1, 0.5)
            assert (t.usage_count, t.success_count, t.success_rate) == (1, 1, 1.0)

    def test_feedback_reaches_resources_behind_the_reply(self, knowledge, session_factory, similarity,
                                                         fake_backend, tenant, make_ticket, add_article):
        article = add_article(tenant.id, "Password reset", "Use the link.")
        engine = DecisionEngine(fake_backend, knowledge=knowledge)
        ticket = make_ticket(tenant.id)
        decision = asyncio.run(engine.decide(ticket, DeflectionSettings(auto_response_enabled=True)))
        similarity.record(ticket, decision)

        learner = FeedbackLearner(session_factory, r=MagicMock(), knowledge=knowledge)
        learner.learn_from_feedback(tenant.id, ticket.id, satisfied=True)

        with session_factory() as session:
            a = session.get(KnowledgeArticle, article.id)
            assert (a.usage_count, a.success_rate) == (1, 1.0)

#!/usr/bin/env python3
"""Seed the database with a demo tenant, the sample deflection config and a small knowledge base."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from pathlib import Path

from sqlalchemy import select

from deflection.database import get_session_factory, init_db
from deflection.models.knowledge import KnowledgeArticle, ResponseTemplate
from deflection.models.tenant import Tenant

SAMPLES_DIR = Path(__file__).parent.parent / "samples"


def seed():
    init_db()
    with get_session_factory()() as session:
        existing = session.execute(select(Tenant).where(Tenant.slug == "demo-company")).scalar_one_or_none()
        if existing:
            print(f"Demo tenant already exists: {existing.id}")
            return

        tenant = Tenant(
            name="Demo Company",
            slug="demo-company",
            is_active=True,
            auto_response_enabled=True,
            confidence_threshold=0.85,
            escalation_threshold=0.5,
            max_tokens_per_day=100000,
            deflection_config_yaml=(SAMPLES_DIR / "deflection.yaml").read_text(),
        )
        session.add(tenant)
        session.flush()

        session.add_all([
            KnowledgeArticle(
                tenant_id=tenant.id,
                title="Resetting your password",
                content="Open the login page, choose 'Forgot password' and follow the emailed link. "
                        "Links expire after 30 minutes; request a new one if it has expired.",
                tags=["password", "login", "account"],
            ),
            KnowledgeArticle(
                tenant_id=tenant.id,
                title="Exporting contacts",
                content="Go to Contacts, select the contacts to export and choose Export > CSV.",
                tags=["export", "contacts", "csv"],
            ),
            ResponseTemplate(
                tenant_id=tenant.id,
                name="Friendly how-to",
                category="general",
                template_content="Hi {name}, thanks for reaching out! Here is how to do that: {steps}",
            ),
        ])
        session.commit()
        print(f"Created demo tenant: {tenant.id} (slug: {tenant.slug})")


if __name__ == "__main__":
    seed()

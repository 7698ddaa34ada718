"""Settings provider - builds per-tenant DeflectionSettings snapshots."""

import uuid
from typing import Optional

import structlog
import yaml
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from deflection.config import settings
from deflection.models.tenant import Tenant
from deflection.schemas.settings import DeflectionSettings

logger = structlog.get_logger()

# Keys accepted from the tenant's deflection YAML
YAML_KEYS = {
    "response_language",
    "business_hours_only",
    "excluded_categories",
    "escalation_keywords",
    "escalation_priorities",
    "custom_instructions",
    "max_content_length",
    "similarity_reuse_enabled",
}

LIST_KEYS = {"excluded_categories", "escalation_keywords", "escalation_priorities"}


def parse_deflection_yaml(raw: Optional[str]) -> dict:
    """Parse the tenant's YAML blob, keeping only known keys."""
    if not raw:
        return {}
    try:
        config = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        logger.warning("deflection_yaml_invalid", error=str(e))
        return {}
    if not isinstance(config, dict):
        logger.warning("deflection_yaml_not_a_mapping")
        return {}

    section = config.get("deflection", config)
    if not isinstance(section, dict):
        logger.warning("deflection_yaml_section_not_a_mapping")
        return {}
    parsed = {}
    for key, value in section.items():
        if key not in YAML_KEYS:
            continue
        if key in LIST_KEYS:
            if isinstance(value, str):
                value = [value]
            value = tuple(str(v) for v in (value or []))
        parsed[key] = value
    return parsed


class TenantSettingsProvider:
    """Read-only view of tenant policy for the deflection core."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, tenant_id: uuid.UUID | str) -> Optional[DeflectionSettings]:
        """Return a settings snapshot, or None if the tenant is unknown or inactive."""
        if isinstance(tenant_id, str):
            tenant_id = uuid.UUID(tenant_id)
        with self.session_factory() as session:
            tenant = session.execute(select(Tenant).where(Tenant.id == tenant_id)).scalar_one_or_none()
            if tenant is None or not tenant.is_active:
                return None
            return self.from_tenant(tenant)

    def from_tenant(self, tenant: Tenant) -> DeflectionSettings:
        values = {
            "max_content_length": settings.max_ticket_length,
            **parse_deflection_yaml(tenant.deflection_config_yaml),
            "auto_response_enabled": tenant.auto_response_enabled,
            "confidence_threshold": tenant.confidence_threshold,
            "escalation_threshold": tenant.escalation_threshold,
            "max_tokens_per_day": tenant.max_tokens_per_day,
        }
        try:
            return DeflectionSettings(**values)
        except ValidationError as e:
            # Retry with the column values only.
            logger.warning("deflection_settings_invalid", tenant_id=str(tenant.id), error=str(e))
            return DeflectionSettings(
                auto_response_enabled=tenant.auto_response_enabled,
                confidence_threshold=tenant.confidence_threshold,
                escalation_threshold=min(tenant.escalation_threshold, tenant.confidence_threshold),
                max_tokens_per_day=tenant.max_tokens_per_day,
                max_content_length=settings.max_ticket_length,
            )

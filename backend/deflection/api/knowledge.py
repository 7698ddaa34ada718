"""Knowledge base admin endpoints: articles and response templates per tenant."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from deflection.database import get_db
from deflection.middleware.auth import verify_admin_token
from deflection.middleware.tenant import get_tenant_by_id
from deflection.models.knowledge import KnowledgeArticle, ResponseTemplate
from deflection.schemas.knowledge import (
    KnowledgeArticleCreate, KnowledgeArticleResponse, ResponseTemplateCreate, ResponseTemplateResponse,
)

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/knowledge", tags=["knowledge"])


@router.get("/articles", response_model=list[KnowledgeArticleResponse])
def list_articles(
    tenant_id: UUID,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    """Active articles for a tenant, best performing first."""
    rows = db.execute(
        select(KnowledgeArticle)
        .where(KnowledgeArticle.tenant_id == tenant_id, KnowledgeArticle.is_active.is_(True))
        .order_by(KnowledgeArticle.success_rate.desc(), KnowledgeArticle.created_at.desc())
    ).scalars().all()
    return [KnowledgeArticleResponse.model_validate(r) for r in rows]


@router.post("/articles", response_model=KnowledgeArticleResponse, status_code=201)
def create_article(
    data: KnowledgeArticleCreate,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    get_tenant_by_id(db, data.tenant_id)
    article = KnowledgeArticle(**data.model_dump())
    db.add(article)
    db.commit()
    db.refresh(article)
    logger.info("knowledge_article_created", tenant_id=str(article.tenant_id), id=str(article.id))
    return KnowledgeArticleResponse.model_validate(article)


@router.delete("/articles/{article_id}", status_code=204)
def deactivate_article(
    article_id: UUID,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    article = db.get(KnowledgeArticle, article_id)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    article.is_active = False
    db.commit()
    logger.info("knowledge_article_deactivated", id=str(article_id))


@router.get("/templates", response_model=list[ResponseTemplateResponse])
def list_templates(
    tenant_id: UUID,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    rows = db.execute(
        select(ResponseTemplate)
        .where(ResponseTemplate.tenant_id == tenant_id, ResponseTemplate.is_active.is_(True))
        .order_by(ResponseTemplate.success_rate.desc(), ResponseTemplate.created_at.desc())
    ).scalars().all()
    return [ResponseTemplateResponse.model_validate(r) for r in rows]


@router.post("/templates", response_model=ResponseTemplateResponse, status_code=201)
def create_template(
    data: ResponseTemplateCreate,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    get_tenant_by_id(db, data.tenant_id)
    values = data.model_dump()
    values["category"] = values["category"].lower()
    template = ResponseTemplate(**values)
    db.add(template)
    db.commit()
    db.refresh(template)
    logger.info("response_template_created", tenant_id=str(template.tenant_id), id=str(template.id),
                category=template.category)
    return ResponseTemplateResponse.model_validate(template)


@router.delete("/templates/{template_id}", status_code=204)
def deactivate_template(
    template_id: UUID,
    admin: str = Depends(verify_admin_token),
    db: Session = Depends(get_db),
):
    template = db.get(ResponseTemplate, template_id)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    template.is_active = False
    db.commit()
    logger.info("response_template_deactivated", id=str(template_id))

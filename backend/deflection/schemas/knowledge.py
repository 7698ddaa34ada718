"""Knowledge base and response template schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class KnowledgeSnippet(BaseModel):
    model_config = {"frozen": True, "from_attributes": True}

    id: uuid.UUID
    title: str
    content: str


class TemplateSnippet(BaseModel):
    model_config = {"frozen": True, "from_attributes": True}

    id: uuid.UUID
    name: str
    category: str
    template_content: str


class PromptContext(BaseModel):
    """Tenant resources handed to the reasoning backend for one ticket."""

    model_config = {"frozen": True}

    articles: tuple[KnowledgeSnippet, ...] = ()
    templates: tuple[TemplateSnippet, ...] = ()

    @property
    def article_ids(self) -> tuple[str, ...]:
        return tuple(str(a.id) for a in self.articles)

    @property
    def template_ids(self) -> tuple[str, ...]:
        return tuple(str(t.id) for t in self.templates)


class KnowledgeArticleCreate(BaseModel):
    tenant_id: uuid.UUID
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)
    tags: list[str] = []


class KnowledgeArticleResponse(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    title: str
    content: str
    tags: list[str]
    is_active: bool
    usage_count: int
    success_rate: float
    created_at: datetime

    model_config = {"from_attributes": True}


class ResponseTemplateCreate(BaseModel):
    tenant_id: uuid.UUID
    name: str = Field(..., min_length=1, max_length=255)
    category: str = Field("general", min_length=1, max_length=100)
    template_content: str = Field(..., min_length=1)


class ResponseTemplateResponse(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    name: str
    category: str
    template_content: str
    is_active: bool
    usage_count: int
    success_rate: float
    created_at: datetime

    model_config = {"from_attributes": True}

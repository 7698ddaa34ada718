"""Reasoning backend - categorizes a ticket and drafts a reply via the Claude API."""

import asyncio
import json
import time
from pathlib import Path
from typing import Callable, Optional

import anthropic
import structlog

from deflection.config import settings
from deflection.errors import (
    BackendAuthError, BackendError, BackendRateLimitError, BackendTimeoutError,
    BackendUnavailableError, MalformedResponseError,
)
from deflection.metrics import BACKEND_CALLS
from deflection.schemas.knowledge import PromptContext
from deflection.schemas.settings import DeflectionSettings
from deflection.schemas.ticket import TicketData
from deflection.services.budget import UsageGuard, price_call

logger = structlog.get_logger()

PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

SYSTEM_PROMPT = """You are a customer support assistant deciding whether a ticket can be answered automatically.
Be empathetic and professional. Provide specific, actionable solutions.
Never make promises about timelines, refunds or features without authorization.
Report a low confidence for sensitive, ambiguous or complex issues."""


def load_prompt_template(template_id: str) -> str:
    """Load a prompt template by ID (filename without extension)."""
    path = PROMPTS_DIR / f"{template_id}.txt"
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {template_id} (searched {PROMPTS_DIR})")
    return path.read_text(encoding="utf-8")


def translate_backend_error(error: Exception) -> BackendError:
    """Map an Anthropic SDK exception onto the deflection error taxonomy."""
    message = str(error) or error.__class__.__name__
    if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return BackendAuthError(message)
    if isinstance(error, anthropic.RateLimitError):
        return BackendRateLimitError(message)
    # APITimeoutError subclasses APIConnectionError
    if isinstance(error, anthropic.APITimeoutError):
        return BackendTimeoutError(message)
    if isinstance(error, (anthropic.APIConnectionError, anthropic.InternalServerError)):
        return BackendUnavailableError(message)
    return BackendError(message)


def parse_analysis(content: str) -> dict:
    """Extract the JSON object from a model reply."""
    if "{" not in content or "}" not in content:
        raise MalformedResponseError("Backend reply contains no JSON object")
    json_str = content[content.index("{"):content.rindex("}") + 1]
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Backend reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError("Backend reply JSON is not an object")
    missing = [k for k in ("confidence", "response_content") if k not in data]
    if missing:
        raise MalformedResponseError(f"Backend reply missing fields: {', '.join(missing)}")
    return data


def format_articles(context: PromptContext) -> str:
    if not context.articles:
        return "No relevant knowledge base articles found."
    return "\n---\n".join(f"Title: {a.title}\nContent: {a.content}" for a in context.articles)


def format_templates(context: PromptContext) -> str:
    if not context.templates:
        return "No relevant response templates found."
    return "\n---\n".join(f"{t.name}: {t.template_content}" for t in context.templates)


def _default_budget_factory(tenant_id: str, model: str, max_tokens_per_day: int) -> UsageGuard:
    return UsageGuard(tenant_id, model, max_tokens_per_day)


class ReasoningBackend:
    """Calls Claude with a hard timeout and reports token usage and cost."""

    TEMPLATE_ID = "deflection_analyze_v1"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        budget_factory: Optional[Callable[[str, str, int], UsageGuard]] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.anthropic_api_key
        self.model = model or settings.reasoning_model
        self.max_tokens = max_tokens or settings.reasoning_max_tokens
        self.timeout = timeout or settings.reasoning_timeout_seconds
        if budget_factory is None and settings.budget_enforcement_enabled:
            budget_factory = _default_budget_factory
        self.budget_factory = budget_factory

    def build_prompt(
        self,
        ticket: TicketData,
        deflection_settings: DeflectionSettings,
        taxonomy: tuple[str, ...],
        context: Optional[PromptContext] = None,
    ) -> str:
        template = load_prompt_template(self.TEMPLATE_ID)
        context = context or PromptContext()
        instructions = deflection_settings.custom_instructions
        return template.format(
            subject=ticket.subject or "N/A",
            customer_email=ticket.customer_email,
            category=ticket.category or "Uncategorized",
            language=deflection_settings.response_language,
            custom_instructions=f"Tenant instructions: {instructions}\n" if instructions else "",
            content=ticket.content[:deflection_settings.max_content_length],
            taxonomy=", ".join(taxonomy),
            knowledge=format_articles(context),
            templates=format_templates(context),
        )

    async def analyze(
        self,
        ticket: TicketData,
        deflection_settings: DeflectionSettings,
        taxonomy: tuple[str, ...],
        track_usage: bool = True,
        context: Optional[PromptContext] = None,
    ) -> dict:
        """Run one analysis call.

        Returns dict with: analysis (parsed JSON), content, model,
        input_tokens, output_tokens, tokens, cost, duration.
        """
        if not self.api_key:
            raise BackendAuthError("No Anthropic API key configured")

        prompt = self.build_prompt(ticket, deflection_settings, taxonomy, context)

        budget = None
        if track_usage and self.budget_factory:
            budget = self.budget_factory(str(ticket.tenant_id), self.model, deflection_settings.max_tokens_per_day)
            estimated_input = len(prompt.split()) * 1.3  # rough estimate
            budget.before_call(int(estimated_input + self.max_tokens))

        start = time.time()
        client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        try:
            response = await asyncio.wait_for(
                client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=0.3,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            self._record_failure(budget, "timeout")
            raise BackendTimeoutError(f"Reasoning backend timed out after {self.timeout}s") from e
        except anthropic.APIError as e:
            error = translate_backend_error(e)
            self._record_failure(budget, error.kind)
            raise error from e
        finally:
            await client.close()

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        cost = price_call(self.model, input_tokens, output_tokens)
        if budget:
            budget.after_success(input_tokens + output_tokens, cost)
        BACKEND_CALLS.labels(model=self.model, outcome="ok").inc()

        content = "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        return {
            "analysis": parse_analysis(content),
            "content": content,
            "model": self.model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "tokens": input_tokens + output_tokens,
            "cost": cost,
            "duration": round(time.time() - start, 3),
        }

    def _record_failure(self, budget: Optional[UsageGuard], outcome: str) -> None:
        BACKEND_CALLS.labels(model=self.model, outcome=outcome).inc()
        if budget:
            budget.after_failure()

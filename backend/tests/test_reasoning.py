"""Tests for the reasoning backend (without actual API calls)."""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest

from deflection.errors import (
    BackendAuthError, BackendError, BackendRateLimitError, BackendTimeoutError,
    BackendUnavailableError, BudgetExceededError, MalformedResponseError,
)
from deflection.schemas.knowledge import KnowledgeSnippet, PromptContext, TemplateSnippet
from deflection.schemas.settings import DeflectionSettings
from deflection.schemas.ticket import TicketData
from deflection.services.engine import DEFAULT_TAXONOMY
from deflection.services.reasoning import (
    PROMPTS_DIR, ReasoningBackend, load_prompt_template, parse_analysis, translate_backend_error,
)

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _status_error(cls, status):
    return cls("error", response=httpx.Response(status, request=REQUEST), body=None)


def _ticket():
    return TicketData(
        id="T-1",
        tenant_id=uuid.uuid4(),
        conversation_id="C-1",
        subject="Export contacts",
        content="How do I export my contacts to CSV?",
        customer_email="customer@example.com",
    )


def _message(text, input_tokens=120, output_tokens=80):
    response = MagicMock()
    response.usage.input_tokens = input_tokens
    response.usage.output_tokens = output_tokens
    response.content = [MagicMock(type="text", text=text)]
    return response


class TestPromptTemplates:
    """Verify prompt templates exist and are valid."""

    def test_analyze_template_exists(self):
        path = PROMPTS_DIR / f"{ReasoningBackend.TEMPLATE_ID}.txt"
        assert path.exists()
        content = path.read_text()
        assert "confidence" in content
        assert "response_content" in content
        assert "category" in content

    def test_missing_template(self):
        with pytest.raises(FileNotFoundError):
            load_prompt_template("does_not_exist_v0")

    def test_build_prompt(self):
        backend = ReasoningBackend(api_key="test")
        settings = DeflectionSettings(auto_response_enabled=True, custom_instructions="Sign off as Acme.")
        prompt = backend.build_prompt(_ticket(), settings, DEFAULT_TAXONOMY)
        assert "How do I export my contacts to CSV?" in prompt
        assert "Tenant instructions: Sign off as Acme." in prompt
        assert "feature_request" in prompt
        assert '"confidence"' in prompt

    def test_build_prompt_with_knowledge(self):
        backend = ReasoningBackend(api_key="test")
        context = PromptContext(
            articles=(KnowledgeSnippet(id=uuid.uuid4(), title="Exporting contacts", content="Contacts > Export > CSV"),),
            templates=(TemplateSnippet(id=uuid.uuid4(), name="How-to", category="general",
                                       template_content="Here is how: {steps}"),),
        )
        prompt = backend.build_prompt(_ticket(), DeflectionSettings(auto_response_enabled=True), DEFAULT_TAXONOMY, context)
        assert "Title: Exporting contacts\nContent: Contacts > Export > CSV" in prompt
        assert "How-to: Here is how: {steps}" in prompt

    def test_build_prompt_without_knowledge(self):
        prompt = ReasoningBackend(api_key="test").build_prompt(
            _ticket(), DeflectionSettings(auto_response_enabled=True), DEFAULT_TAXONOMY,
        )
        assert "No relevant knowledge base articles found." in prompt
        assert "No relevant response templates found." in prompt


class TestParseAnalysis:
    def test_plain_json(self):
        data = parse_analysis('{"confidence": 0.9, "response_content": "Hi"}')
        assert data["confidence"] == 0.9

    def test_json_wrapped_in_prose(self):
        data = parse_analysis('Sure! ```json\n{"confidence": 0.4, "response_content": "Hi"}\n``` Done.')
        assert data["confidence"] == 0.4

    def test_no_json(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis("I cannot help with that.")

    def test_invalid_json(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis('{"confidence": 0.9, response_content: }')

    def test_missing_fields(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis('{"category": "billing"}')


class TestErrorTranslation:
    def test_auth_is_not_retryable(self):
        error = translate_backend_error(_status_error(anthropic.AuthenticationError, 401))
        assert isinstance(error, BackendAuthError)
        assert error.retryable is False

    def test_permission_denied(self):
        assert isinstance(translate_backend_error(_status_error(anthropic.PermissionDeniedError, 403)), BackendAuthError)

    def test_rate_limit(self):
        error = translate_backend_error(_status_error(anthropic.RateLimitError, 429))
        assert isinstance(error, BackendRateLimitError)
        assert error.retryable is True

    def test_timeout(self):
        assert isinstance(translate_backend_error(anthropic.APITimeoutError(request=REQUEST)), BackendTimeoutError)

    def test_connection_error(self):
        error = translate_backend_error(anthropic.APIConnectionError(request=REQUEST))
        assert isinstance(error, BackendUnavailableError)
        assert error.kind == "network"

    def test_server_error(self):
        assert isinstance(translate_backend_error(_status_error(anthropic.InternalServerError, 500)), BackendUnavailableError)

    def test_other_api_errors_are_generic(self):
        error = translate_backend_error(_status_error(anthropic.BadRequestError, 400))
        assert type(error) is BackendError
        assert error.retryable is True


class TestAnalyze:
    def setup_method(self):
        self.settings = DeflectionSettings(auto_response_enabled=True)
        self.budget = MagicMock()
        self.backend = ReasoningBackend(
            api_key="test-key",
            model="claude-haiku-4-5-20251001",
            timeout=5,
            budget_factory=lambda tenant_id, model, max_tokens: self.budget,
        )

    def _client(self, create):
        client = MagicMock()
        client.messages.create = create
        client.close = AsyncMock()
        return client

    def test_no_api_key(self):
        backend = ReasoningBackend(api_key="", budget_factory=None)
        with pytest.raises(BackendAuthError):
            asyncio.run(backend.analyze(_ticket(), self.settings, DEFAULT_TAXONOMY))

    def test_successful_call(self):
        reply = '{"category": "how_to", "confidence": 0.93, "response_content": "Go to Contacts > Export."}'
        client = self._client(AsyncMock(return_value=_message(reply)))
        with patch("deflection.services.reasoning.anthropic.AsyncAnthropic", return_value=client):
            result = asyncio.run(self.backend.analyze(_ticket(), self.settings, DEFAULT_TAXONOMY))

        assert result["analysis"]["category"] == "how_to"
        assert result["tokens"] == 200
        assert result["cost"] == pytest.approx((120 * 1.0 + 80 * 5.0) / 1_000_000)
        self.budget.before_call.assert_called_once()
        self.budget.after_success.assert_called_once_with(200, result["cost"])
        client.close.assert_awaited_once()

    def test_untracked_call_skips_budget(self):
        reply = '{"confidence": 0.93, "response_content": "Go to Contacts > Export."}'
        client = self._client(AsyncMock(return_value=_message(reply)))
        with patch("deflection.services.reasoning.anthropic.AsyncAnthropic", return_value=client):
            asyncio.run(self.backend.analyze(_ticket(), self.settings, DEFAULT_TAXONOMY, track_usage=False))

        self.budget.before_call.assert_not_called()
        self.budget.after_success.assert_not_called()

    def test_budget_exceeded_blocks_call(self):
        self.budget.before_call.side_effect = BudgetExceededError("over", "daily_tokens")
        create = AsyncMock()
        with patch("deflection.services.reasoning.anthropic.AsyncAnthropic", return_value=self._client(create)):
            with pytest.raises(BudgetExceededError):
                asyncio.run(self.backend.analyze(_ticket(), self.settings, DEFAULT_TAXONOMY))
        create.assert_not_called()

    def test_sdk_error_translated_and_recorded(self):
        create = AsyncMock(side_effect=_status_error(anthropic.RateLimitError, 429))
        client = self._client(create)
        with patch("deflection.services.reasoning.anthropic.AsyncAnthropic", return_value=client):
            with pytest.raises(BackendRateLimitError):
                asyncio.run(self.backend.analyze(_ticket(), self.settings, DEFAULT_TAXONOMY))
        self.budget.after_failure.assert_called_once()
        client.close.assert_awaited_once()

    def test_hard_timeout(self):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        backend = ReasoningBackend(api_key="test-key", timeout=0.05, budget_factory=lambda *args: MagicMock())
        with patch("deflection.services.reasoning.anthropic.AsyncAnthropic", return_value=self._client(slow)):
            with pytest.raises(BackendTimeoutError):
                asyncio.run(backend.analyze(_ticket(), self.settings, DEFAULT_TAXONOMY))

    def test_malformed_reply(self):
        client = self._client(AsyncMock(return_value=_message("Sorry, no JSON today.")))
        with patch("deflection.services.reasoning.anthropic.AsyncAnthropic", return_value=client):
            with pytest.raises(MalformedResponseError):
                asyncio.run(self.backend.analyze(_ticket(), self.settings, DEFAULT_TAXONOMY))

"""Tests for the chat-completion client.

Tests cover:
- Provider availability and routing
- Dispatch to OpenRouter, Anthropic and OpenAI
- Anthropic message shaping
- Configuration errors
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ahura_context.providers.llm import (
    CompletionRequest,
    LLMConfigurationError,
    LLMProvider,
    get_available_provider,
)


@pytest.fixture
def mock_settings():
    """Settings with no API keys configured."""
    with patch("ahura_context.providers.llm.settings") as mock:
        mock.LLM_PROVIDER = "openrouter"
        mock.OPENROUTER_API_KEY = None
        mock.OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
        mock.OPENROUTER_APP_TITLE = "Ahura CLI - Summarizer"
        mock.OPENROUTER_REFERER = "https://ahurasense.com"
        mock.ANTHROPIC_API_KEY = None
        mock.OPENAI_API_KEY = None
        mock.LLM_REQUEST_TIMEOUT = 60.0
        yield mock


def _request(model: str = "anthropic/claude-haiku-4.5", provider: str | None = None) -> CompletionRequest:
    return CompletionRequest(
        model=model,
        messages=[
            {"role": "system", "content": "You summarize."},
            {"role": "user", "content": "Hello"},
        ],
        max_tokens=512,
        temperature=0.1,
        provider=provider,
    )


class TestCompletionRequest:
    """Test CompletionRequest dataclass."""

    def test_defaults(self):
        request = CompletionRequest(model="gpt-4o", messages=[{"role": "user", "content": "Hi"}])
        assert request.max_tokens == 4096
        assert request.temperature == 0.7
        assert request.provider is None


class TestAvailability:
    """Test provider availability checks."""

    def test_no_keys(self, mock_settings):
        assert get_available_provider() is None

    def test_openrouter_preferred(self, mock_settings):
        mock_settings.OPENROUTER_API_KEY = "or-key"
        mock_settings.ANTHROPIC_API_KEY = "sk-ant"
        assert get_available_provider() == "openrouter"

    def test_native_keys(self, mock_settings):
        mock_settings.OPENAI_API_KEY = "sk-openai"
        assert get_available_provider() == "openai"

        mock_settings.ANTHROPIC_API_KEY = "sk-ant"
        assert get_available_provider() == "anthropic"


class TestRouting:
    """Test model-to-provider resolution."""

    def test_clients_lazy_initialized(self, mock_settings):
        provider = LLMProvider()
        assert provider._openrouter_client is None
        assert provider._anthropic_client is None
        assert provider._openai_client is None

    def test_openrouter_serves_everything(self, mock_settings):
        mock_settings.OPENROUTER_API_KEY = "or-key"
        mock_settings.ANTHROPIC_API_KEY = "sk-ant"
        provider = LLMProvider()

        assert provider._resolve_provider("anthropic/claude-haiku-4.5") == "openrouter"
        assert provider._resolve_provider("gpt-4o") == "openrouter"

    def test_native_provider_with_key(self, mock_settings):
        mock_settings.ANTHROPIC_API_KEY = "sk-ant"
        mock_settings.OPENAI_API_KEY = "sk-openai"
        provider = LLMProvider()

        assert provider._resolve_provider("anthropic/claude-haiku-4.5") == "anthropic"
        assert provider._resolve_provider("claude-3-opus") == "anthropic"
        assert provider._resolve_provider("openai/gpt-4o-mini") == "openai"
        assert provider._resolve_provider("o1-mini") == "openai"

    def test_falls_back_to_default_provider(self, mock_settings):
        mock_settings.ANTHROPIC_API_KEY = "sk-ant"
        provider = LLMProvider()

        assert provider._resolve_provider("gpt-4o") == "openrouter"
        assert provider._resolve_provider("google/gemini-pro-1.5") == "openrouter"

    def test_strip_vendor_prefix(self):
        assert LLMProvider._strip_vendor_prefix("anthropic/claude-haiku-4.5") == "claude-haiku-4.5"
        assert LLMProvider._strip_vendor_prefix("gpt-4o") == "gpt-4o"


class TestDispatch:
    """Test completion dispatch."""

    @pytest.mark.asyncio
    async def test_dispatches_to_anthropic(self, mock_settings):
        mock_settings.ANTHROPIC_API_KEY = "sk-ant"
        provider = LLMProvider()

        with patch.object(provider, "_complete_anthropic", new_callable=AsyncMock) as mock_complete:
            mock_complete.return_value = {"content": "Hello from Anthropic"}

            result = await provider.complete(_request())

            mock_complete.assert_called_once_with(
                model="anthropic/claude-haiku-4.5",
                messages=_request().messages,
                max_tokens=512,
                temperature=0.1,
            )
            assert result["content"] == "Hello from Anthropic"

    @pytest.mark.asyncio
    async def test_dispatches_to_openrouter(self, mock_settings):
        mock_settings.OPENROUTER_API_KEY = "or-key"
        provider = LLMProvider()
        provider._openrouter_client = MagicMock()

        with patch.object(provider, "_complete_openai_compatible", new_callable=AsyncMock) as mock_complete:
            mock_complete.return_value = {"content": "Hello from OpenRouter"}

            await provider.complete(_request())

            kwargs = mock_complete.call_args.kwargs
            assert kwargs["client"] is provider._openrouter_client
            # OpenRouter keeps the vendor prefix
            assert kwargs["model"] == "anthropic/claude-haiku-4.5"

    @pytest.mark.asyncio
    async def test_explicit_provider_overrides_routing(self, mock_settings):
        mock_settings.OPENROUTER_API_KEY = "or-key"
        provider = LLMProvider()
        provider._openai_client = MagicMock()

        with patch.object(provider, "_complete_openai_compatible", new_callable=AsyncMock) as mock_complete:
            mock_complete.return_value = {"content": "Hello from OpenAI"}

            await provider.complete(_request(model="openai/gpt-4o-mini", provider="openai"))

            kwargs = mock_complete.call_args.kwargs
            assert kwargs["client"] is provider._openai_client
            assert kwargs["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_missing_key_raises(self, mock_settings):
        provider = LLMProvider()

        with pytest.raises(LLMConfigurationError) as exc_info:
            await provider.complete(_request())

        assert "OPENROUTER_API_KEY" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unknown_provider_raises(self, mock_settings):
        provider = LLMProvider()

        with pytest.raises(LLMConfigurationError):
            await provider.complete(_request(provider="vertex"))

    def test_openrouter_client_headers(self, mock_settings):
        mock_settings.OPENROUTER_API_KEY = "or-key"
        provider = LLMProvider()

        with patch("ahura_context.providers.llm.AsyncOpenAI") as mock_openai:
            client = provider.openrouter_client

            assert client is mock_openai.return_value
            kwargs = mock_openai.call_args.kwargs
            assert kwargs["base_url"] == "https://openrouter.ai/api/v1"
            assert kwargs["default_headers"]["X-Title"] == "Ahura CLI - Summarizer"
            assert provider.openrouter_client is client
            mock_openai.assert_called_once()


class TestAnthropicCompletion:
    """Test the Anthropic request and response mapping."""

    @pytest.fixture
    def mock_anthropic_response(self) -> MagicMock:
        """Create mock Anthropic response."""
        response = MagicMock()
        response.content = [MagicMock(type="text", text="Hello from Anthropic")]
        response.stop_reason = "end_turn"
        response.usage = MagicMock(input_tokens=100, output_tokens=50)
        return response

    @pytest.mark.asyncio
    async def test_system_message_lifted(self, mock_settings, mock_anthropic_response):
        provider = LLMProvider()
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=mock_anthropic_response)
        provider._anthropic_client = client

        result = await provider._complete_anthropic(
            model="anthropic/claude-haiku-4.5",
            messages=_request().messages,
            max_tokens=512,
            temperature=0.1,
        )

        client.messages.create.assert_awaited_once_with(
            model="claude-haiku-4-5",
            max_tokens=512,
            temperature=0.1,
            messages=[{"role": "user", "content": "Hello"}],
            system="You summarize.",
        )
        assert result == {
            "content": "Hello from Anthropic",
            "usage": {"input_tokens": 100, "output_tokens": 50, "total_tokens": 150},
            "stop_reason": "end_turn",
        }


class TestOpenAICompatibleCompletion:
    """Test the chat completions response mapping."""

    @pytest.mark.asyncio
    async def test_response_mapping(self, mock_settings):
        provider = LLMProvider()
        response = MagicMock()
        response.choices = [MagicMock(message=MagicMock(content="Hello"), finish_reason="stop")]
        response.usage = MagicMock(prompt_tokens=100, completion_tokens=50, total_tokens=150)
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=response)

        result = await provider._complete_openai_compatible(
            client=client,
            model="gpt-4o",
            messages=[{"role": "user", "content": "Hi"}],
        )

        assert result["content"] == "Hello"
        assert result["stop_reason"] == "stop"
        assert result["usage"] == {"input_tokens": 100, "output_tokens": 50, "total_tokens": 150}

    @pytest.mark.asyncio
    async def test_empty_response(self, mock_settings):
        provider = LLMProvider()
        response = MagicMock(choices=[], usage=None)
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=response)

        result = await provider._complete_openai_compatible(
            client=client,
            model="gpt-4o",
            messages=[{"role": "user", "content": "Hi"}],
        )

        assert result["content"] == ""
        assert result["stop_reason"] is None
        assert result["usage"]["total_tokens"] == 0

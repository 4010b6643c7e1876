"""Chat-completion client used by the summarizer.

Supports OpenRouter (OpenAI-compatible, the default), the Anthropic API and
the OpenAI API. The context engine treats this as an opaque service that
returns a string or raises.
"""

from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from ahura_context.config import settings

logger = structlog.get_logger()


class LLMConfigurationError(RuntimeError):
    """Raised when no usable provider or API key is configured."""


@dataclass
class CompletionRequest:
    """Request parameters for LLM completion."""

    model: str
    messages: list[dict[str, str]]
    max_tokens: int = 4096
    temperature: float = 0.7
    # Overrides routing when set ("openrouter", "anthropic", "openai")
    provider: str | None = None


def get_available_provider() -> str | None:
    """Return the first provider with an API key configured, if any."""
    if settings.OPENROUTER_API_KEY:
        return "openrouter"
    if settings.ANTHROPIC_API_KEY:
        return "anthropic"
    if settings.OPENAI_API_KEY:
        return "openai"
    return None


class LLMProvider:
    """Unified completion interface over OpenRouter, Anthropic and OpenAI."""

    def __init__(self, timeout: float | None = None) -> None:
        """Initialize LLM provider.

        Args:
            timeout: Request timeout in seconds (default: settings.LLM_REQUEST_TIMEOUT)
        """
        self.provider = settings.LLM_PROVIDER
        self._timeout = httpx.Timeout(timeout or settings.LLM_REQUEST_TIMEOUT)
        self._openrouter_client: AsyncOpenAI | None = None
        self._anthropic_client: AsyncAnthropic | None = None
        self._openai_client: AsyncOpenAI | None = None

    @property
    def openrouter_client(self) -> AsyncOpenAI:
        """Get or create the OpenRouter client (OpenAI-compatible API)."""
        if self._openrouter_client is None:
            if not settings.OPENROUTER_API_KEY:
                raise LLMConfigurationError(
                    "OPENROUTER_API_KEY is required. Get your key at https://openrouter.ai/keys"
                )
            self._openrouter_client = AsyncOpenAI(
                api_key=settings.OPENROUTER_API_KEY,
                base_url=settings.OPENROUTER_BASE_URL,
                timeout=self._timeout,
                default_headers={
                    "HTTP-Referer": settings.OPENROUTER_REFERER,
                    "X-Title": settings.OPENROUTER_APP_TITLE,
                },
            )
        return self._openrouter_client

    @property
    def anthropic_client(self) -> AsyncAnthropic:
        """Get or create Anthropic client."""
        if self._anthropic_client is None:
            if not settings.ANTHROPIC_API_KEY:
                raise LLMConfigurationError("ANTHROPIC_API_KEY is required for the anthropic provider")
            self._anthropic_client = AsyncAnthropic(
                api_key=settings.ANTHROPIC_API_KEY,
                timeout=self._timeout,
            )
        return self._anthropic_client

    @property
    def openai_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._openai_client is None:
            if not settings.OPENAI_API_KEY:
                raise LLMConfigurationError("OPENAI_API_KEY is required for the openai provider")
            self._openai_client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=self._timeout,
            )
        return self._openai_client

    def _get_native_provider(self, model: str) -> str:
        """Determine the native provider for a model id.

        Args:
            model: Model identifier (e.g., "anthropic/claude-haiku-4.5", "gpt-4o")

        Returns:
            "anthropic", "openai", or empty string when the id names neither
        """
        model_lower = model.lower()

        if model_lower.startswith(("anthropic/", "claude")):
            return "anthropic"
        if model_lower.startswith(("openai/", "gpt-", "o1", "o3", "chatgpt-")):
            return "openai"
        return ""

    def _resolve_provider(self, model: str) -> str:
        """Resolve which provider serves a model.

        Priority:
        1. OpenRouter whenever its key is configured (it serves every vendor)
        2. The model's native provider, if its key is configured
        3. The configured default provider
        """
        if settings.OPENROUTER_API_KEY:
            return "openrouter"

        native = self._get_native_provider(model)
        if native == "anthropic" and settings.ANTHROPIC_API_KEY:
            return "anthropic"
        if native == "openai" and settings.OPENAI_API_KEY:
            return "openai"

        logger.debug(
            "Using default provider for model",
            model=model,
            native_provider=native or "unknown",
            default_provider=self.provider,
        )
        return self.provider

    @staticmethod
    def _strip_vendor_prefix(model: str) -> str:
        """Drop an OpenRouter-style vendor prefix ("anthropic/claude-x" -> "claude-x")."""
        return model.split("/", 1)[1] if "/" in model else model

    async def complete(self, request: CompletionRequest) -> dict[str, Any]:
        """
        Generate a completion using the appropriate provider.

        Args:
            request: CompletionRequest with model, messages and decoding parameters

        Returns:
            Response dictionary with content, usage and stop_reason

        Raises:
            LLMConfigurationError: If the resolved provider is unknown or has no API key
        """
        provider = request.provider or self._resolve_provider(request.model)

        if provider == "openrouter":
            return await self._complete_openai_compatible(
                client=self.openrouter_client,
                model=request.model,
                messages=request.messages,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            )
        if provider == "openai":
            return await self._complete_openai_compatible(
                client=self.openai_client,
                model=self._strip_vendor_prefix(request.model),
                messages=request.messages,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            )
        if provider == "anthropic":
            return await self._complete_anthropic(
                model=request.model,
                messages=request.messages,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
            )
        raise LLMConfigurationError(f"Unknown provider: {provider}")

    async def _complete_anthropic(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> dict[str, Any]:
        """Complete using the Anthropic API.

        Model ids use dashes in the Anthropic API ("claude-haiku-4-5"), while
        OpenRouter ids use dots ("anthropic/claude-haiku-4.5").
        """
        resolved_model = self._strip_vendor_prefix(model).replace(".", "-")

        # Anthropic takes the system prompt as a separate parameter
        system_message = ""
        conversation_messages = []
        for msg in messages:
            if msg["role"] == "system":
                system_message = msg["content"]
            else:
                conversation_messages.append(msg)

        request_params: dict[str, Any] = {
            "model": resolved_model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": conversation_messages,
        }
        if system_message:
            request_params["system"] = system_message

        response = await self.anthropic_client.messages.create(**request_params)

        content = "".join(block.text for block in response.content if block.type == "text")

        return {
            "content": content,
            "usage": {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
            },
            "stop_reason": response.stop_reason,
        }

    async def _complete_openai_compatible(
        self,
        client: AsyncOpenAI,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> dict[str, Any]:
        """Complete using an OpenAI-compatible chat completions endpoint."""
        response = await client.chat.completions.create(
            model=model,
            messages=messages,  # type: ignore[arg-type]
            max_tokens=max_tokens,
            temperature=temperature,
        )

        content = ""
        stop_reason = None
        if response.choices:
            choice = response.choices[0]
            content = choice.message.content or ""
            stop_reason = choice.finish_reason

        return {
            "content": content,
            "usage": {
                "input_tokens": response.usage.prompt_tokens if response.usage else 0,
                "output_tokens": response.usage.completion_tokens if response.usage else 0,
                "total_tokens": response.usage.total_tokens if response.usage else 0,
            },
            "stop_reason": stop_reason,
        }

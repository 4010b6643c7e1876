# Chat-completion providers

from .llm import (
    CompletionRequest,
    LLMConfigurationError,
    LLMProvider,
    get_available_provider,
)

__all__ = [
    "CompletionRequest",
    "LLMConfigurationError",
    "LLMProvider",
    "get_available_provider",
]

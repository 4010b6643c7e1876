"""
Pytest fixtures for context engine tests.

This module provides:
- A mock chat-completion client returning a canned JSON digest
- Summarizer and ContextEngine fixtures wired to that client
- Helpers for building turn text of a known token cost
"""

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from ahura_context.context.manager import ContextEngine
from ahura_context.context.summarizer import Summarizer

# Default profile for unknown ids: 128K window, "other" family (4 chars/token)
UNKNOWN_MODEL = "acme/unknown-model"


def text_of_tokens(tokens: int, chars_per_token: int = 4) -> str:
    """Plain prose (no code fences, no JSON punctuation) estimating to `tokens`."""
    words = "the quick brown fox jumps over the lazy dog "
    length = tokens * chars_per_token
    return (words * (length // len(words) + 1))[:length]


@pytest.fixture
def digest() -> dict[str, Any]:
    """Digest the mock summarization model returns."""
    return {
        "summary": "User and coder agreed on a FastAPI backend with a Postgres store.",
        "keyFacts": [
            "API lives under src/api",
            "Login error on empty password is unresolved",
        ],
        "decisions": ["Use FastAPI", "Use Postgres"],
        "filesCreated": ["src/api/main.py", "src/api/db.py"],
        "techStack": ["Python", "FastAPI", "Postgres"],
        "activeIssues": ["Flaky migration test"],
    }


@pytest.fixture
def mock_llm_provider(digest: dict[str, Any]) -> MagicMock:
    """Create mock chat-completion client."""
    provider = MagicMock()
    provider.complete = AsyncMock(
        return_value={
            "content": json.dumps(digest),
            "usage": {"input_tokens": 1000, "output_tokens": 120, "total_tokens": 1120},
            "stop_reason": "end_turn",
        }
    )
    return provider


@pytest.fixture
def failing_llm_provider() -> MagicMock:
    """Create a chat-completion client whose every call fails."""
    provider = MagicMock()
    provider.complete = AsyncMock(side_effect=ConnectionError("network unreachable"))
    return provider


@pytest.fixture
def summarizer(mock_llm_provider: MagicMock) -> Summarizer:
    return Summarizer(llm_provider=mock_llm_provider, model="anthropic/claude-haiku-4.5")


@pytest.fixture
def engine(summarizer: Summarizer) -> ContextEngine:
    """Engine on the default 128K profile, threshold 0.7, keep_last_n 6."""
    return ContextEngine(
        UNKNOWN_MODEL,
        summarizer=summarizer,
        compaction_threshold=0.7,
        keep_last_n=6,
    )


@pytest.fixture
def make_text():
    """Factory for prose of a known token cost."""
    return text_of_tokens

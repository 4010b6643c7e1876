"""Token counting utilities for context management.

Counts are character-based estimates tuned per provider family, not exact
tokenizations.
"""

import math
import re
from collections.abc import Iterable, Sequence
from itertools import islice

import structlog

from ahura_context.config import settings
from ahura_context.context.models import ModelProfile, Turn

logger = structlog.get_logger()

# Average characters per token by provider family
CHARS_PER_TOKEN: dict[str, float] = {
    "anthropic": 3.5,
    "openai": 4.0,
    "google": 4.0,
    "meta": 4.0,
    "mistral": 4.0,
    "deepseek": 3.8,
    "other": 4.0,
}

# Token overhead for message structure
MESSAGE_OVERHEAD = 4  # role framing per message
REQUEST_OVERHEAD = 3  # per request

# Fenced code inflates the estimate by 15%
CODE_BLOCK_MULTIPLIER = 1.15
# Each JSON structural character adds 0.3 tokens
JSON_CHAR_WEIGHT = 0.3

_JSON_CHARS = re.compile(r'[{}\[\]:,"]')

# Texts longer than this are cached under a hash instead of verbatim
CACHE_KEY_MAX_LITERAL = 100
# Fraction of the cache dropped when it fills up
CACHE_EVICT_FRACTION = 0.1


def estimate_tokens(text: str, provider: str = "anthropic") -> int:
    """Estimate token count for a text string.

    Args:
        text: Text to estimate tokens for
        provider: Provider family whose tokenizer to approximate

    Returns:
        Estimated token count
    """
    if not text:
        return 0

    chars_per_token = CHARS_PER_TOKEN.get(provider, CHARS_PER_TOKEN["other"])
    estimate = math.ceil(len(text) / chars_per_token)

    # Code tends to tokenize into more pieces than prose
    if "```" in text:
        estimate = math.ceil(estimate * CODE_BLOCK_MULTIPLIER)

    # JSON punctuation is split finely by provider tokenizers
    if "{" in text and "}" in text:
        json_chars = len(_JSON_CHARS.findall(text))
        estimate += math.ceil(json_chars * JSON_CHAR_WEIGHT)

    return estimate


def estimate_message_tokens(turn: Turn, provider: str = "anthropic") -> int:
    """Estimate tokens for a single turn including role framing."""
    return estimate_tokens(turn.content, provider) + MESSAGE_OVERHEAD


def estimate_messages_tokens(turns: Sequence[Turn], provider: str = "anthropic") -> int:
    """Estimate total tokens for a request carrying these turns.

    Args:
        turns: Turns in the request
        provider: Provider family

    Returns:
        Per-turn estimates plus per-message and per-request overhead
    """
    return sum(estimate_message_tokens(turn, provider) for turn in turns) + REQUEST_OVERHEAD


def _rolling_hash(text: str) -> int:
    """32-bit polynomial (x31) rolling hash."""
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    return value


def cache_key(text: str) -> str:
    """Cache key: the text itself when short, else hash plus length."""
    if len(text) <= CACHE_KEY_MAX_LITERAL:
        return text
    return f"hash:{_rolling_hash(text)}:{len(text)}"


class TokenCache:
    """Fixed-capacity token-count cache with bulk eviction.

    When full, the oldest 10% of entries by insertion order are dropped in
    one pass. Lookups do not refresh an entry's position, so this is an
    approximation of LRU rather than LRU.
    """

    def __init__(self, max_size: int = 1000) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._entries: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def max_size(self) -> int:
        return self._max_size

    def get(self, key: str) -> int | None:
        return self._entries.get(key)

    def put(self, key: str, tokens: int) -> None:
        """Store a count, evicting the oldest block first if the cache is full."""
        if key not in self._entries and len(self._entries) >= self._max_size:
            evicted = self.evict_oldest()
            logger.debug("Evicted token cache entries", evicted=evicted, max_size=self._max_size)
        self._entries[key] = tokens

    def evict_oldest(self) -> int:
        """Drop the oldest 10% of entries (at least one). Returns the number dropped."""
        count = max(1, math.floor(self._max_size * CACHE_EVICT_FRACTION))
        # dicts iterate in insertion order
        stale = list(islice(self._entries, count))
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


class TokenCounter:
    """Token counter for one provider family, memoized through a TokenCache."""

    def __init__(self, provider: str = "anthropic", max_cache_size: int | None = None) -> None:
        """Initialize token counter.

        Args:
            provider: Provider family to estimate for
            max_cache_size: Cache capacity (default: settings.TOKEN_CACHE_SIZE)
        """
        self._provider = provider
        self._cache = TokenCache(max_cache_size or settings.TOKEN_CACHE_SIZE)

    @property
    def provider(self) -> str:
        return self._provider

    def count(self, text: str) -> int:
        """Count tokens in a text string, using the cache."""
        if not text:
            return 0

        key = cache_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        tokens = estimate_tokens(text, self._provider)
        self._cache.put(key, tokens)
        return tokens

    def count_many(self, texts: Iterable[str]) -> int:
        """Count tokens across several texts."""
        return sum(self.count(text) for text in texts)

    def count_messages(self, turns: Sequence[Turn]) -> int:
        """Count tokens for a request carrying these turns."""
        return estimate_messages_tokens(turns, self._provider)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict[str, int]:
        """Current cache size and capacity."""
        return {"size": len(self._cache), "max_size": self._cache.max_size}


def format_token_count(tokens: int) -> str:
    """Format a token count for display ("950", "12.3K", "1.2M")."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K"
    return str(tokens)


def calculate_cost(input_tokens: int, output_tokens: int, profile: ModelProfile) -> dict[str, float]:
    """Cost in USD of a request, rounded to 4 decimal places."""
    input_cost = input_tokens / 1000 * profile.cost_per_1k_input
    output_cost = output_tokens / 1000 * profile.cost_per_1k_output

    return {
        "input_cost": round(input_cost, 4),
        "output_cost": round(output_cost, 4),
        "total_cost": round(input_cost + output_cost, 4),
    }


def estimate_max_chars(tokens: int, provider: str = "anthropic") -> int:
    """Characters that fit in a token budget, with a 10% safety margin."""
    chars_per_token = CHARS_PER_TOKEN.get(provider, CHARS_PER_TOKEN["other"])
    return math.floor(tokens * chars_per_token * 0.9)

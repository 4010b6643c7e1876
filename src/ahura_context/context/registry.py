"""Model registry: context limits, pricing and token budgets per model."""

import math
from collections.abc import Mapping
from types import MappingProxyType

import structlog

from ahura_context.config import settings
from ahura_context.context.models import ModelProfile, TokenBudget

logger = structlog.get_logger()

# Fraction of the context window that is usable; the rest is a safety margin
USABLE_FRACTION = 0.9

# Budget allocation ratios (of the usable total)
SYSTEM_PROMPT_RATIO = 0.05
SUMMARY_HISTORY_RATIO = 0.20
RECENT_CONTEXT_RATIO = 0.60
# Current query + response receives the remainder (~15%)

# Unknown models get a 128K window and expensive pricing
DEFAULT_CONTEXT_WINDOW = 128000
DEFAULT_MAX_OUTPUT_TOKENS = 4096
DEFAULT_COST_PER_1K_INPUT = 0.01
DEFAULT_COST_PER_1K_OUTPUT = 0.03


def _profile(
    model_id: str,
    name: str,
    provider: str,
    context_window: int,
    max_output_tokens: int,
    costs: tuple[float, float],
    supports_tools: bool = True,
    supports_vision: bool = True,
) -> ModelProfile:
    return ModelProfile(
        id=model_id,
        name=name,
        provider=provider,  # type: ignore[arg-type]
        context_window=context_window,
        max_output_tokens=max_output_tokens,
        cost_per_1k_input=costs[0],
        cost_per_1k_output=costs[1],
        supports_tools=supports_tools,
        supports_vision=supports_vision,
    )


_PROFILES = [
    # Anthropic
    _profile("anthropic/claude-opus-4", "Claude Opus 4", "anthropic", 200000, 32000, (0.015, 0.075)),
    _profile("anthropic/claude-sonnet-4", "Claude Sonnet 4", "anthropic", 200000, 64000, (0.003, 0.015)),
    _profile(
        "anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5", "anthropic", 1000000, 64000, (0.003, 0.015)
    ),
    _profile(
        "anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet", "anthropic", 200000, 8192, (0.003, 0.015)
    ),
    _profile("anthropic/claude-3.5-haiku", "Claude 3.5 Haiku", "anthropic", 200000, 8192, (0.0008, 0.004)),
    _profile("anthropic/claude-3-opus", "Claude 3 Opus", "anthropic", 200000, 4096, (0.015, 0.075)),
    _profile("anthropic/claude-3-sonnet", "Claude 3 Sonnet", "anthropic", 200000, 4096, (0.003, 0.015)),
    _profile(
        "anthropic/claude-haiku-4.5", "Claude Haiku 4.5", "anthropic", 200000, 12000, (0.00025, 0.00125)
    ),
    # OpenAI
    _profile("openai/gpt-4o", "GPT-4o", "openai", 128000, 16384, (0.005, 0.015)),
    _profile("openai/gpt-4o-mini", "GPT-4o Mini", "openai", 128000, 16384, (0.00015, 0.0006)),
    _profile("openai/gpt-4-turbo", "GPT-4 Turbo", "openai", 128000, 4096, (0.01, 0.03)),
    _profile("openai/gpt-4", "GPT-4", "openai", 8192, 4096, (0.03, 0.06), supports_vision=False),
    _profile("openai/o1", "o1", "openai", 200000, 100000, (0.015, 0.06), supports_tools=False),
    _profile("openai/o1-mini", "o1 Mini", "openai", 128000, 65536, (0.003, 0.012), supports_tools=False),
    _profile(
        "openai/o1-preview",
        "o1 Preview",
        "openai",
        128000,
        32768,
        (0.015, 0.06),
        supports_tools=False,
        supports_vision=False,
    ),
    # Google
    _profile("google/gemini-pro-1.5", "Gemini Pro 1.5", "google", 2000000, 8192, (0.00125, 0.005)),
    _profile("google/gemini-flash-1.5", "Gemini Flash 1.5", "google", 1000000, 8192, (0.000075, 0.0003)),
    _profile("google/gemini-2.0-flash", "Gemini 2.0 Flash", "google", 1000000, 8192, (0.0001, 0.0004)),
    # Meta
    _profile(
        "meta-llama/llama-3.1-405b-instruct",
        "Llama 3.1 405B",
        "meta",
        131072,
        4096,
        (0.003, 0.003),
        supports_vision=False,
    ),
    _profile(
        "meta-llama/llama-3.1-70b-instruct",
        "Llama 3.1 70B",
        "meta",
        131072,
        4096,
        (0.0008, 0.0008),
        supports_vision=False,
    ),
    _profile(
        "meta-llama/llama-3.3-70b-instruct",
        "Llama 3.3 70B",
        "meta",
        131072,
        4096,
        (0.0008, 0.0008),
        supports_vision=False,
    ),
    # Mistral
    _profile(
        "mistralai/mistral-large", "Mistral Large", "mistral", 128000, 4096, (0.003, 0.009),
        supports_vision=False,
    ),
    _profile(
        "mistralai/mistral-medium", "Mistral Medium", "mistral", 32000, 4096, (0.0027, 0.0081),
        supports_vision=False,
    ),
    _profile(
        "mistralai/codestral", "Codestral", "mistral", 32000, 4096, (0.001, 0.003),
        supports_vision=False,
    ),
    # DeepSeek
    _profile(
        "deepseek/deepseek-chat", "DeepSeek Chat", "deepseek", 64000, 4096, (0.00014, 0.00028),
        supports_vision=False,
    ),
    _profile(
        "deepseek/deepseek-coder", "DeepSeek Coder", "deepseek", 64000, 4096, (0.00014, 0.00028),
        supports_vision=False,
    ),
    _profile(
        "deepseek/deepseek-r1", "DeepSeek R1", "deepseek", 64000, 8192, (0.00055, 0.00219),
        supports_vision=False,
    ),
]

MODEL_PROFILES: Mapping[str, ModelProfile] = MappingProxyType({p.id: p for p in _PROFILES})


def _bare_name(model_id: str) -> str:
    """Model id without its vendor prefix, lower-cased."""
    return model_id.rsplit("/", 1)[-1].lower()


class ModelRegistry:
    """Read-only lookup of model profiles.

    Resolution never fails: unknown ids degrade to a default profile with a
    128K window and conservative pricing.
    """

    def __init__(self, profiles: Mapping[str, ModelProfile] | None = None) -> None:
        self._profiles: Mapping[str, ModelProfile] = (
            MODEL_PROFILES if profiles is None else MappingProxyType(dict(profiles))
        )

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._profiles

    @property
    def model_ids(self) -> list[str]:
        """All known model ids."""
        return list(self._profiles)

    def resolve(self, model_id: str) -> ModelProfile:
        """Resolve a model id to its profile.

        Tries, in order: exact id; case-insensitive id or bare name
        ("claude-sonnet-4" for "anthropic/claude-sonnet-4"); substring match in
        either direction, preferring the longest matching bare name; default
        profile stamped with the requested id.

        Args:
            model_id: Model identifier, with or without vendor prefix

        Returns:
            ModelProfile for the model
        """
        profile = self._profiles.get(model_id)
        if profile is not None:
            return profile

        wanted = model_id.strip().lower()
        if wanted:
            wanted_bare = _bare_name(wanted)
            for key, candidate in self._profiles.items():
                if key.lower() == wanted or _bare_name(key) == wanted_bare:
                    return candidate

            matches = [
                key
                for key in self._profiles
                if wanted in key.lower() or _bare_name(key) in wanted
            ]
            if matches:
                best = max(matches, key=lambda key: len(_bare_name(key)))
                logger.debug("Resolved model by partial match", requested=model_id, resolved=best)
                return self._profiles[best]

        logger.debug("Unknown model, using default profile", requested=model_id)
        return self.default_profile(model_id)

    @staticmethod
    def default_profile(model_id: str) -> ModelProfile:
        """Conservative profile for a model the registry does not know."""
        return ModelProfile(
            id=model_id,
            name=model_id,
            provider="other",
            context_window=DEFAULT_CONTEXT_WINDOW,
            max_output_tokens=DEFAULT_MAX_OUTPUT_TOKENS,
            cost_per_1k_input=DEFAULT_COST_PER_1K_INPUT,
            cost_per_1k_output=DEFAULT_COST_PER_1K_OUTPUT,
            supports_tools=True,
            supports_vision=False,
        )


_default_registry = ModelRegistry()


def resolve_model(model_id: str) -> ModelProfile:
    """Resolve a model id against the built-in profile table."""
    return _default_registry.resolve(model_id)


def budget_for(profile: ModelProfile) -> TokenBudget:
    """Derive the token budget for a model profile.

    90% of the context window is usable. The four allocations always sum to
    the usable total; the current-query slice absorbs rounding.
    """
    usable = math.floor(profile.context_window * USABLE_FRACTION)
    system_prompt = math.floor(usable * SYSTEM_PROMPT_RATIO)
    summary_history = math.floor(usable * SUMMARY_HISTORY_RATIO)
    recent_context = math.floor(usable * RECENT_CONTEXT_RATIO)

    return TokenBudget(
        total=usable,
        system_prompt=system_prompt,
        summary_history=summary_history,
        recent_context=recent_context,
        current_query=usable - system_prompt - summary_history - recent_context,
    )


def should_compact(current_tokens: int, profile: ModelProfile, threshold: float = 0.7) -> bool:
    """Check whether committed tokens have crossed the compaction threshold."""
    return current_tokens >= budget_for(profile).total * threshold


def get_summarization_model() -> str:
    """Model used to compact conversation history (fast and cheap)."""
    return settings.SUMMARIZATION_MODEL


def describe_model(model_id: str) -> str:
    """One-line capability summary, e.g. "GPT-4o: 128K context, 16K output, $0.005/$0.015 per 1K"."""
    profile = resolve_model(model_id)
    context_k = round(profile.context_window / 1000)
    output_k = round(profile.max_output_tokens / 1000)

    context_str = f"{context_k}K"
    if context_k >= 1000:
        context_str = f"{context_k / 1000:.1f}M"

    return (
        f"{profile.name}: {context_str} context, {output_k}K output, "
        f"${profile.cost_per_1k_input}/${profile.cost_per_1k_output} per 1K"
    )

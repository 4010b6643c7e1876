"""Context engine configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Context engine settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # LLM Providers
    LLM_PROVIDER: str = "openrouter"  # openrouter (default), anthropic, openai
    OPENROUTER_API_KEY: str | None = None
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_APP_TITLE: str = "Ahura CLI - Summarizer"
    OPENROUTER_REFERER: str = "https://ahurasense.com"
    ANTHROPIC_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None

    # Upper bound on a single completion call; the engine has no timeout of its own
    LLM_REQUEST_TIMEOUT: float = 60.0  # seconds

    # Summarization (fast and cheap model, near-deterministic decoding)
    SUMMARIZATION_MODEL: str = "anthropic/claude-haiku-4.5"
    SUMMARIZATION_MAX_TOKENS: int = 4096
    SUMMARIZATION_TEMPERATURE: float = 0.1

    # Context window settings
    CONTEXT_COMPACTION_THRESHOLD: float = 0.7  # fraction of usable budget
    CONTEXT_KEEP_LAST_N: int = 6  # turns kept verbatim on compaction
    TOKEN_CACHE_SIZE: int = 1000  # entries

    # Sentry
    SENTRY_DSN: str | None = None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()


settings = get_settings()

"""Context window management module."""

from ahura_context.context.manager import ContextEngine, ContextEngineRegistry
from ahura_context.context.models import (
    CompactionOptions,
    CompactionResult,
    ContextState,
    ModelProfile,
    Summary,
    TokenBudget,
    Turn,
    WorkingMemory,
)
from ahura_context.context.registry import ModelRegistry, budget_for, resolve_model
from ahura_context.context.summarizer import Summarizer, SummaryResult
from ahura_context.context.tokenizer import TokenCounter, estimate_tokens

__all__ = [
    "CompactionOptions",
    "CompactionResult",
    "ContextEngine",
    "ContextEngineRegistry",
    "ContextState",
    "ModelProfile",
    "ModelRegistry",
    "Summarizer",
    "Summary",
    "SummaryResult",
    "TokenBudget",
    "TokenCounter",
    "Turn",
    "WorkingMemory",
    "budget_for",
    "estimate_tokens",
    "resolve_model",
]

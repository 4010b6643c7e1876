"""Context engine: keeps one conversation inside its model's context window.

Recent turns are kept verbatim. When committed tokens cross the compaction
threshold, older turns are folded into a Summary and durable facts are
merged into WorkingMemory, which is always rendered in full.

An engine belongs to exactly one conversation and is not safe for
concurrent use; callers await add_turn/compact/update_model before issuing
the next call.
"""

import copy
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from ahura_context.config import settings
from ahura_context.context.models import (
    CompactionOptions,
    CompactionResult,
    ContextState,
    ModelProfile,
    Role,
    Summary,
    TokenBudget,
    Turn,
    WorkingMemory,
)
from ahura_context.context.registry import ModelRegistry, budget_for, should_compact
from ahura_context.context.summarizer import Summarizer, extract_working_memory
from ahura_context.context.tokenizer import TokenCounter, format_token_count

if TYPE_CHECKING:
    from ahura_context.providers.llm import LLMProvider

logger = structlog.get_logger()

STALE_COMPACTION_ERROR = "Context was cleared during compaction"


class ContextEngine:
    """Token-budgeted memory for a single agent conversation.

    Handles:
    - Token accounting against the active model's budget
    - Automatic compaction (summarization) when the threshold is crossed
    - Working memory that survives every compaction
    - Rendering the context block for the next model request
    """

    def __init__(
        self,
        model_id: str,
        summarizer: Summarizer | None = None,
        compaction_threshold: float | None = None,
        keep_last_n: int | None = None,
        model_registry: ModelRegistry | None = None,
    ) -> None:
        """Initialize context engine.

        Args:
            model_id: Model the conversation is sent to
            summarizer: Summarizer used for compaction (default: one over a fresh LLMProvider)
            compaction_threshold: Fraction of the usable budget that triggers compaction
            keep_last_n: Turns kept verbatim on compaction
            model_registry: Profile lookup (default: built-in profiles)
        """
        self._models = model_registry or ModelRegistry()
        self._summarizer = summarizer or Summarizer(_default_llm_provider())
        self._threshold = (
            settings.CONTEXT_COMPACTION_THRESHOLD
            if compaction_threshold is None
            else compaction_threshold
        )
        self._keep_last_n = settings.CONTEXT_KEEP_LAST_N if keep_last_n is None else keep_last_n

        self._profile = self._models.resolve(model_id)
        self._budget = budget_for(self._profile)
        self._counter = TokenCounter(self._profile.provider)

        self._working_memory = WorkingMemory()
        self._summaries: list[Summary] = []
        self._recent: list[Turn] = []
        self._next_seq = 1
        self._compaction_count = 0
        self._compacting = False
        # bumped by clear(); an in-flight compaction from an older generation is discarded
        self._generation = 0

        logger.debug(
            "Context engine initialized",
            model=self._profile.name,
            context_window=format_token_count(self._profile.context_window),
            recent_budget=format_token_count(self._budget.recent_context),
        )

    # ============================================
    # Read-only accessors
    # ============================================

    @property
    def model_profile(self) -> ModelProfile:
        return self._profile

    @property
    def token_budget(self) -> TokenBudget:
        return self._budget

    @property
    def working_memory(self) -> WorkingMemory:
        return self._working_memory

    @property
    def summaries(self) -> tuple[Summary, ...]:
        return tuple(self._summaries)

    @property
    def recent_turns(self) -> tuple[Turn, ...]:
        return tuple(self._recent)

    @property
    def compaction_count(self) -> int:
        return self._compaction_count

    @property
    def is_compacting(self) -> bool:
        return self._compacting

    def working_memory_tokens(self) -> int:
        """Estimated cost of the serialized working memory."""
        return self._counter.count(self._working_memory.to_text())

    def summary_tokens(self) -> int:
        return sum(summary.token_count for summary in self._summaries)

    @property
    def summary_history_exceeded(self) -> bool:
        """Accumulated summaries no longer fit their budget slice.

        Summaries are never merged or re-summarized, so this can only grow.
        """
        return self.summary_tokens() > self._budget.summary_history

    def total_tokens(self) -> int:
        """Tokens currently committed: summaries, recent turns and working memory."""
        recent_tokens = sum(turn.token_count for turn in self._recent)
        return self.summary_tokens() + recent_tokens + self.working_memory_tokens()

    def usage_percentage(self) -> int:
        """Committed tokens as a percentage (0-100) of the usable budget."""
        if self._budget.total <= 0:
            return 100
        return min(100, round(self.total_tokens() / self._budget.total * 100))

    def get_state(self) -> ContextState:
        """Snapshot of the full context state; later mutations do not affect it."""
        return ContextState(
            model_profile=self._profile,
            token_budget=self._budget,
            working_memory=copy.deepcopy(self._working_memory),
            summaries=tuple(self._summaries),
            recent_turns=tuple(self._recent),
            total_tokens=self.total_tokens(),
            compaction_count=self._compaction_count,
        )

    def status_line(self) -> str:
        """One-line status for display, e.g. "Context: 12.3K/115.2K (11%) | Messages: 6 | ..."."""
        used = self.total_tokens()
        return (
            f"Context: {format_token_count(used)}/{format_token_count(self._budget.total)} "
            f"({self.usage_percentage()}%) | "
            f"Messages: {len(self._recent)} | Summaries: {len(self._summaries)} | "
            f"Compactions: {self._compaction_count}"
        )

    # ============================================
    # Conversation
    # ============================================

    def _needs_compaction(self) -> bool:
        return should_compact(self.total_tokens(), self._profile, self._threshold)

    async def add_turn(self, role: Role, content: str, agent_name: str | None = None) -> Turn:
        """Append a turn and compact if the threshold is crossed.

        Args:
            role: Speaker role
            content: Message text
            agent_name: Originating agent, used as the speaker label when rendering

        Returns:
            The stored Turn
        """
        turn = Turn(
            seq=self._next_seq,
            role=role,
            content=content,
            token_count=self._counter.count(content),
            agent_name=agent_name,
        )
        self._next_seq += 1
        self._recent.append(turn)

        if self._needs_compaction():
            if self._compacting:
                logger.debug("Compaction already in progress, deferring", seq=turn.seq)
            else:
                logger.info(
                    "Context threshold reached, triggering compaction",
                    total_tokens=self.total_tokens(),
                    budget=self._budget.total,
                )
                await self.compact()

        return turn

    async def compact(self, options: CompactionOptions | None = None) -> CompactionResult:
        """Summarize all but the most recent turns.

        With keep_last_n or fewer turns buffered this is a no-op. If the
        summarizer fails, the buffer is truncated to the last 2 * keep_last_n
        turns instead and success is False. Never raises for summarizer failures.

        Args:
            options: Compaction options (default: engine's keep_last_n)

        Returns:
            CompactionResult describing what changed
        """
        opts = options or CompactionOptions()
        keep = max(self._keep_last_n if opts.keep_last_n is None else opts.keep_last_n, 0)

        if self._compacting or len(self._recent) <= keep:
            return CompactionResult(success=True)

        start_tokens = self.total_tokens()
        older = self._recent[: len(self._recent) - keep]

        generation = self._generation
        self._compacting = True
        try:
            result = await self._summarizer.summarize(
                older, self._working_memory, provider=self._profile.provider
            )
            if generation != self._generation:
                return self._discard_stale(len(older))
            if result.failed:
                return self._truncate(keep, result.error, result.summary)

            summary = result.summary
            if opts.preserve_key_facts:
                self._working_memory.apply(extract_working_memory(summary, self._working_memory))

            self._summaries.append(summary)
            # turns appended while the summarizer was running stay in the buffer
            self._recent = self._recent[len(older) :]
            self._compaction_count += 1
        except Exception as e:
            logger.exception("Compaction failed")
            if generation != self._generation:
                return self._discard_stale(len(older))
            return self._truncate(keep, str(e) or type(e).__name__)
        finally:
            self._compacting = False

        tokens_saved = start_tokens - self.total_tokens()

        logger.info(
            "Compaction complete",
            messages_compacted=len(older),
            tokens_saved=tokens_saved,
            usage_percentage=self.usage_percentage(),
            degraded=summary.degraded,
        )
        if self.summary_history_exceeded:
            logger.warning(
                "Summary history exceeds its budget",
                summary_tokens=self.summary_tokens(),
                budget=self._budget.summary_history,
                summaries=len(self._summaries),
            )

        return CompactionResult(
            success=True,
            tokens_saved=tokens_saved,
            messages_compacted=len(older),
            new_summary=summary,
        )

    def _discard_stale(self, summarized: int) -> CompactionResult:
        """Drop a summary of turns that clear() removed while the summarizer ran."""
        logger.info("Context cleared during compaction, discarding result", summarized_turns=summarized)
        return CompactionResult(success=False, error=STALE_COMPACTION_ERROR)

    def _truncate(
        self,
        keep: int,
        error: str | None,
        summary: Summary | None = None,
    ) -> CompactionResult:
        """Fallback when summarization fails: keep only the last 2 * keep turns."""
        limit = keep * 2
        dropped = max(len(self._recent) - limit, 0)
        if dropped:
            self._recent = self._recent[-limit:] if limit else []

        logger.warning(
            "Compaction fell back to truncation",
            dropped_turns=dropped,
            remaining_turns=len(self._recent),
            error=error,
        )
        return CompactionResult(success=False, new_summary=summary, error=error)

    def render(self) -> str:
        """Build the context block for the next model request.

        Order: working memory, summaries (oldest first), recent turns (oldest
        first). Has no side effects.
        """
        sections: list[str] = []

        memory = self._working_memory.to_text()
        if memory:
            sections.append(f"<working_memory>\n{memory}\n</working_memory>")

        if self._summaries:
            history = "\n\n---\n\n".join(summary.content for summary in self._summaries)
            sections.append(
                f"<conversation_history_summary>\n{history}\n</conversation_history_summary>"
            )

        if self._recent:
            recent = "\n\n".join(f"[{turn.label}]:\n{turn.content}" for turn in self._recent)
            sections.append(f"<recent_conversation>\n{recent}\n</recent_conversation>")

        return "\n\n".join(sections)

    async def update_model(self, model_id: str) -> CompactionResult | None:
        """Switch the active model and re-derive the budget.

        Compacts immediately when the new budget is smaller and current usage
        already exceeds the threshold of it.

        Returns:
            The CompactionResult if a compaction ran, else None
        """
        old_profile, old_budget = self._profile, self._budget
        self._profile = self._models.resolve(model_id)
        self._budget = budget_for(self._profile)
        if self._profile.provider != self._counter.provider:
            self._counter = TokenCounter(self._profile.provider)

        logger.info(
            "Model changed",
            old_model=old_profile.name,
            new_model=self._profile.name,
            old_window=format_token_count(old_profile.context_window),
            new_window=format_token_count(self._profile.context_window),
        )

        if self._budget.total < old_budget.total and self.total_tokens() > (
            self._budget.total * self._threshold
        ):
            logger.warning(
                "New model has smaller context, triggering compaction",
                total_tokens=self.total_tokens(),
                budget=self._budget.total,
            )
            return await self.compact()
        return None

    def clear(self) -> None:
        """Reset working memory, summaries and turns (new session).

        A compaction still in flight discards its result.
        """
        self._working_memory = WorkingMemory()
        self._summaries = []
        self._recent = []
        self._compaction_count = 0
        self._generation += 1
        logger.debug("Context cleared")

    # ============================================
    # Working memory
    # ============================================

    def update_working_memory(self, **fields: Any) -> None:
        """Overwrite working memory fields by name."""
        for name, value in fields.items():
            if not hasattr(self._working_memory, name):
                raise AttributeError(f"WorkingMemory has no field {name!r}")
            setattr(self._working_memory, name, value)
        self._working_memory.last_updated = datetime.now(UTC)

    def set_project_info(self, name: str, description: str, tech_stack: list[str]) -> None:
        self.update_working_memory(
            project_name=name,
            project_description=description,
            tech_stack=list(tech_stack),
        )

    def set_phase(self, phase: str) -> None:
        self.update_working_memory(current_phase=phase)

    def add_decision(self, decision: str) -> None:
        self._working_memory.add_decision(decision)

    def add_file(self, file_path: str) -> None:
        self._working_memory.add_file(file_path)


def _default_llm_provider() -> "LLMProvider":
    from ahura_context.providers.llm import LLMProvider

    return LLMProvider()


class ContextEngineRegistry:
    """One ContextEngine per (agent, model) conversation.

    Construct once at process start and pass it to whatever needs engines.
    """

    def __init__(self, summarizer: Summarizer | None = None) -> None:
        self._summarizer = summarizer
        self._engines: dict[tuple[str, str], ContextEngine] = {}

    def __len__(self) -> int:
        return len(self._engines)

    def __contains__(self, key: object) -> bool:
        return key in self._engines

    def get(self, agent_id: str, model_id: str) -> ContextEngine:
        """Get the engine for an agent and model, creating it on first use."""
        key = (agent_id, model_id)
        engine = self._engines.get(key)
        if engine is None:
            if self._summarizer is None:
                self._summarizer = Summarizer(_default_llm_provider())
            engine = ContextEngine(model_id, summarizer=self._summarizer)
            self._engines[key] = engine
            logger.debug("Created context engine", agent_id=agent_id, model=model_id)
        return engine

    def remove(self, agent_id: str, model_id: str) -> bool:
        """Drop one engine. Returns True if it existed."""
        engine = self._engines.pop((agent_id, model_id), None)
        if engine is None:
            return False
        engine.clear()
        return True

    def clear_all(self) -> None:
        """Clear and drop every engine."""
        for engine in self._engines.values():
            engine.clear()
        self._engines.clear()
        logger.debug("Cleared all context engines")

"""Data types for context window management."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

ProviderFamily = Literal["anthropic", "openai", "google", "meta", "mistral", "deepseek", "other"]
Role = Literal["user", "assistant", "system"]

# Working memory caps
MAX_DECISIONS = 20
MAX_RECENT_FILES = 30
# Only the tail of the file list is rendered
RENDERED_RECENT_FILES = 10


@dataclass(frozen=True)
class ModelProfile:
    """Static capability and pricing metadata for one model id."""

    id: str
    name: str
    provider: ProviderFamily
    context_window: int
    max_output_tokens: int
    cost_per_1k_input: float
    cost_per_1k_output: float
    supports_tools: bool = True
    supports_vision: bool = False

    def __post_init__(self) -> None:
        if self.context_window <= self.max_output_tokens:
            raise ValueError(
                f"Model {self.id}: context window ({self.context_window}) must exceed "
                f"max output tokens ({self.max_output_tokens})"
            )


@dataclass(frozen=True)
class TokenBudget:
    """Token allocation plan derived from a model's context window."""

    total: int
    system_prompt: int
    summary_history: int
    recent_context: int
    current_query: int


@dataclass(frozen=True)
class Turn:
    """One conversation message."""

    seq: int
    role: Role
    content: str
    token_count: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    agent_name: str | None = None

    @property
    def label(self) -> str:
        """Speaker label used when rendering: agent name if known, else the role."""
        return self.agent_name or self.role.upper()


@dataclass(frozen=True)
class Summary:
    """Digest of a contiguous span of older turns."""

    id: str
    content: str
    token_count: int
    messages_count: int
    original_token_count: int
    narrative: str = ""
    key_facts: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    files_touched: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    tech_stack: list[str] = field(default_factory=list)
    # Built locally because the summarization call failed or was unparseable
    degraded: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "content": self.content,
            "token_count": self.token_count,
            "messages_count": self.messages_count,
            "original_token_count": self.original_token_count,
            "narrative": self.narrative,
            "key_facts": list(self.key_facts),
            "decisions": list(self.decisions),
            "files_touched": list(self.files_touched),
            "issues": list(self.issues),
            "tech_stack": list(self.tech_stack),
            "degraded": self.degraded,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class WorkingMemoryUpdate:
    """Fields of WorkingMemory replaced after a compaction."""

    tech_stack: list[str]
    key_decisions: list[str]
    recent_files: list[str]
    active_issues: list[str]
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class WorkingMemory:
    """Durable facts about the task, included in every rendered context."""

    project_name: str = ""
    project_description: str = ""
    tech_stack: list[str] = field(default_factory=list)
    key_decisions: list[str] = field(default_factory=list)
    current_phase: str = "initial"
    critical_constraints: list[str] = field(default_factory=list)
    recent_files: list[str] = field(default_factory=list)
    active_issues: list[str] = field(default_factory=list)
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))

    def add_decision(self, decision: str) -> None:
        """Append a decision, keeping only the most recent MAX_DECISIONS."""
        self.key_decisions.append(decision)
        if len(self.key_decisions) > MAX_DECISIONS:
            self.key_decisions = self.key_decisions[-MAX_DECISIONS:]
        self.last_updated = datetime.now(UTC)

    def add_file(self, file_path: str) -> None:
        """Record a touched file once, keeping only the most recent MAX_RECENT_FILES."""
        if file_path in self.recent_files:
            return
        self.recent_files.append(file_path)
        if len(self.recent_files) > MAX_RECENT_FILES:
            self.recent_files = self.recent_files[-MAX_RECENT_FILES:]
        self.last_updated = datetime.now(UTC)

    def apply(self, update: WorkingMemoryUpdate) -> None:
        """Supersede the fields carried by a compaction update."""
        self.tech_stack = list(update.tech_stack)
        self.key_decisions = list(update.key_decisions)
        self.recent_files = list(update.recent_files)
        self.active_issues = list(update.active_issues)
        self.last_updated = update.last_updated

    def to_text(self) -> str:
        """Serialize as labeled lines; empty sections are omitted."""
        parts: list[str] = []

        if self.project_name:
            parts.append(f"Project: {self.project_name}")
        if self.project_description:
            parts.append(f"Description: {self.project_description}")
        if self.tech_stack:
            parts.append(f"Tech Stack: {', '.join(self.tech_stack)}")
        if self.current_phase:
            parts.append(f"Current Phase: {self.current_phase}")
        if self.key_decisions:
            parts.append("Key Decisions:\n" + "\n".join(f"  • {d}" for d in self.key_decisions))
        if self.critical_constraints:
            parts.append(
                "Constraints:\n" + "\n".join(f"  • {c}" for c in self.critical_constraints)
            )
        if self.recent_files:
            parts.append(f"Recent Files: {', '.join(self.recent_files[-RENDERED_RECENT_FILES:])}")
        if self.active_issues:
            parts.append("Active Issues:\n" + "\n".join(f"  • {i}" for i in self.active_issues))

        return "\n".join(parts)


@dataclass(frozen=True)
class ContextState:
    """Read-only snapshot of one conversation's context."""

    model_profile: ModelProfile
    token_budget: TokenBudget
    working_memory: WorkingMemory
    summaries: tuple[Summary, ...]
    recent_turns: tuple[Turn, ...]
    total_tokens: int
    compaction_count: int


@dataclass
class CompactionOptions:
    """Options for a single compaction."""

    # None uses the engine's keep_last_n
    keep_last_n: int | None = None
    # Merge extracted facts into working memory
    preserve_key_facts: bool = True


@dataclass
class CompactionResult:
    """Outcome of a compaction."""

    success: bool
    tokens_saved: int = 0
    messages_compacted: int = 0
    new_summary: Summary | None = None
    error: str | None = None

"""Conversation summarization for context management."""

import json
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal
from uuid import uuid4

import structlog

from ahura_context.config import settings
from ahura_context.context.models import (
    MAX_DECISIONS,
    MAX_RECENT_FILES,
    Summary,
    Turn,
    WorkingMemory,
    WorkingMemoryUpdate,
)
from ahura_context.context.tokenizer import estimate_tokens
from ahura_context.providers.llm import CompletionRequest

if TYPE_CHECKING:
    from ahura_context.providers.llm import LLMProvider

logger = structlog.get_logger()

SUMMARIZER_PROMPT = """You are a precise conversation summarizer for an AI coding assistant.
Your job is to compress conversation history while preserving ALL critical information.

EXTRACT AND PRESERVE:
1. Project details (name, description, tech stack)
2. Key decisions made (architecture choices, library selections)
3. Files created/modified (with brief purpose)
4. Important constraints or requirements
5. Unresolved issues or bugs
6. Current task status

OUTPUT FORMAT (JSON):
{
  "summary": "Concise narrative summary of the conversation",
  "keyFacts": ["fact1", "fact2", ...],
  "decisions": ["decision1", "decision2", ...],
  "filesCreated": ["path/file1.py", "path/file2.py", ...],
  "techStack": ["FastAPI", "PostgreSQL", ...],
  "activeIssues": ["issue1", "issue2", ...]
}

RULES:
- Be concise but complete - no critical info should be lost
- Include specific file paths when mentioned
- Preserve error messages and their resolutions
- Keep technical details accurate
- Output ONLY valid JSON, no markdown"""

TEXT_SUMMARY_PROMPT = (
    "Summarize the following text concisely, preserving key technical details. "
    "Output plain text only."
)

FAILED_SUMMARY_HEADER = "[Summary failed - keeping recent context]"
FALLBACK_TURNS = 3
FALLBACK_CHARS_PER_TURN = 200
EMPTY_REPLY_ERROR = "Summarizer returned an empty digest"

# Key facts mentioning any of these are treated as open issues
ISSUE_KEYWORDS = ("issue", "bug", "error")

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


# ============================================
# Reply parsing
# ============================================


def _as_digest(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def parse_direct(reply: str) -> dict[str, Any] | None:
    """The whole reply is a JSON object."""
    try:
        return _as_digest(json.loads(reply))
    except (json.JSONDecodeError, TypeError):
        return None


def parse_fenced(reply: str) -> dict[str, Any] | None:
    """The JSON object sits inside a ```json fenced block."""
    match = _FENCED_JSON.search(reply)
    if match is None:
        return None
    return parse_direct(match.group(1))


def parse_brace_scan(reply: str) -> dict[str, Any] | None:
    """The first balanced {...} span in the reply is a JSON object."""
    start = reply.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(reply)):
            char = reply[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    parsed = parse_direct(reply[start : index + 1])
                    if parsed is not None:
                        return parsed
                    break
        start = reply.find("{", start + 1)
    return None


# Tried in order; the first non-None result wins
PARSE_STRATEGIES: tuple[Callable[[str], dict[str, Any] | None], ...] = (
    parse_direct,
    parse_fenced,
    parse_brace_scan,
)


def parse_digest(reply: str) -> dict[str, Any] | None:
    """Parse a summarizer reply into a digest dict, or None if nothing parses."""
    text = reply.strip()
    for strategy in PARSE_STRATEGIES:
        parsed = strategy(text)
        if parsed is not None:
            return parsed
    return None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _dedupe(items: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _clip(text: str, limit: int) -> str:
    """Cut text to limit characters, marking the cut with an ellipsis."""
    return text if len(text) <= limit else f"{text[:limit]}..."


def format_digest(
    narrative: str,
    tech_stack: Sequence[str],
    key_facts: Sequence[str],
    decisions: Sequence[str],
    files: Sequence[str],
    issues: Sequence[str],
) -> str:
    """Render a digest as labeled markdown sections; empty sections are omitted."""
    sections: list[str] = []

    if narrative:
        sections.append(f"## Summary\n{narrative}")
    if tech_stack:
        sections.append(f"## Tech Stack\n{', '.join(tech_stack)}")
    if key_facts:
        sections.append("## Key Facts\n" + "\n".join(f"• {f}" for f in key_facts))
    if decisions:
        sections.append("## Decisions Made\n" + "\n".join(f"• {d}" for d in decisions))
    if files:
        sections.append("## Files Created/Modified\n" + "\n".join(f"• {f}" for f in files))
    if issues:
        sections.append("## Active Issues\n" + "\n".join(f"• {i}" for i in issues))

    return "\n\n".join(sections)


# ============================================
# Working memory extraction
# ============================================


def detect_active_issues(facts: Sequence[str]) -> list[str]:
    """Pick the facts that describe an open problem.

    Plain keyword match on ISSUE_KEYWORDS; swap this function out for a
    better classifier without touching compaction.
    """
    return [fact for fact in facts if any(word in fact.lower() for word in ISSUE_KEYWORDS)]


def extract_working_memory(
    summary: Summary,
    existing: WorkingMemory | None = None,
) -> WorkingMemoryUpdate:
    """Merge a summary's extracted facts into working memory fields.

    Tech stack is deduplicated; decisions keep the last 20; touched files
    keep the last 30; active issues are re-derived from this summary.
    """
    existing = existing or WorkingMemory()

    return WorkingMemoryUpdate(
        tech_stack=_dedupe([*existing.tech_stack, *summary.tech_stack]),
        key_decisions=[*existing.key_decisions, *summary.decisions][-MAX_DECISIONS:],
        recent_files=_dedupe([*existing.recent_files, *summary.files_touched])[-MAX_RECENT_FILES:],
        active_issues=_dedupe([*summary.issues, *detect_active_issues(summary.key_facts)]),
        last_updated=datetime.now(UTC),
    )


# ============================================
# Summarizer
# ============================================


@dataclass(frozen=True)
class SummaryResult:
    """Tagged result of a summarization.

    kind is "ok" when the reply parsed into a digest, "fallback" when the
    summary was built locally. error is set only when the model call itself
    failed.
    """

    kind: Literal["ok", "fallback"]
    summary: Summary
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.kind == "ok"

    @property
    def failed(self) -> bool:
        return self.error is not None


class Summarizer:
    """Compresses batches of conversation turns with a fast, cheap model."""

    def __init__(
        self,
        llm_provider: "LLMProvider",
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> None:
        """Initialize summarizer.

        Args:
            llm_provider: Chat-completion client
            model: Summarization model (default: settings.SUMMARIZATION_MODEL)
            max_tokens: Max output tokens per summary
            temperature: Sampling temperature; keep low for reproducible digests
        """
        self._llm = llm_provider
        self._model = model or settings.SUMMARIZATION_MODEL
        self._max_tokens = max_tokens or settings.SUMMARIZATION_MAX_TOKENS
        self._temperature = (
            settings.SUMMARIZATION_TEMPERATURE if temperature is None else temperature
        )

    @property
    def model(self) -> str:
        return self._model

    async def summarize(
        self,
        turns: Sequence[Turn],
        working_memory: WorkingMemory | None = None,
        provider: str = "anthropic",
    ) -> SummaryResult:
        """Summarize turns into a structured digest.

        Never raises for model or network failures; those produce a fallback
        result built from the last few raw turns.

        Args:
            turns: Turns to summarize, oldest first
            working_memory: Existing project context to prime the summarizer
            provider: Provider family used to estimate the summary's token cost

        Returns:
            SummaryResult wrapping the new Summary

        Raises:
            ValueError: If turns is empty
        """
        if not turns:
            raise ValueError("No turns to summarize")

        original_tokens = sum(turn.token_count for turn in turns)
        prompt = self._build_prompt(turns, working_memory)

        request = CompletionRequest(
            model=self._model,
            messages=[
                {"role": "system", "content": SUMMARIZER_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )

        try:
            response = await self._llm.complete(request)
        except Exception as e:
            logger.exception("Summarization failed", model=self._model, turns=len(turns))
            return SummaryResult(
                kind="fallback",
                summary=self._failed_summary(turns, original_tokens, provider),
                error=str(e) or type(e).__name__,
            )

        reply = str(response.get("content") or "")
        if not reply.strip():
            logger.warning("Summarizer returned an empty reply", model=self._model, turns=len(turns))
            return SummaryResult(
                kind="fallback",
                summary=self._failed_summary(turns, original_tokens, provider),
                error=EMPTY_REPLY_ERROR,
            )

        digest = parse_digest(reply)

        if digest is None:
            logger.warning(
                "Failed to parse summarizer response as JSON, using raw content",
                reply_length=len(reply),
            )
            return SummaryResult(
                kind="fallback",
                summary=self._build_summary(
                    {"summary": reply.strip()}, turns, original_tokens, provider, degraded=True
                ),
            )

        summary = self._build_summary(digest, turns, original_tokens, provider)
        if not summary.content:
            logger.warning("Summarizer digest has no content", model=self._model, turns=len(turns))
            return SummaryResult(
                kind="fallback",
                summary=self._failed_summary(turns, original_tokens, provider),
                error=EMPTY_REPLY_ERROR,
            )

        logger.info(
            "Summarized turns",
            turns=len(turns),
            original_tokens=original_tokens,
            summary_tokens=summary.token_count,
        )

        return SummaryResult(kind="ok", summary=summary)

    async def summarize_text(self, text: str, max_tokens: int = 500) -> str:
        """Compress one long text to plain prose.

        Errors from the model call propagate. An empty reply falls back to the
        first 1000 characters of the input.
        """
        request = CompletionRequest(
            model=self._model,
            messages=[
                {"role": "system", "content": TEXT_SUMMARY_PROMPT},
                {"role": "user", "content": text},
            ],
            max_tokens=max_tokens,
            temperature=self._temperature,
        )
        response = await self._llm.complete(request)
        return str(response.get("content") or "") or text[:1000]

    def _build_prompt(self, turns: Sequence[Turn], working_memory: WorkingMemory | None) -> str:
        conversation = "\n\n---\n\n".join(
            f"[{turn.role.upper()}{f' - {turn.agent_name}' if turn.agent_name else ''}]:\n"
            f"{turn.content}"
            for turn in turns
        )

        prefix = ""
        if working_memory is not None:
            prefix = (
                "EXISTING PROJECT CONTEXT:\n"
                f"Project: {working_memory.project_name}\n"
                f"Description: {working_memory.project_description}\n"
                f"Tech Stack: {', '.join(working_memory.tech_stack)}\n"
                f"Current Phase: {working_memory.current_phase}\n"
                f"Previous Decisions: {'; '.join(working_memory.key_decisions)}\n\n"
                "---\n\n"
                "NEW CONVERSATION TO SUMMARIZE:\n"
            )

        return (
            f"{prefix}{conversation}\n\n---\n\n"
            "Summarize this conversation, preserving all critical technical details."
        )

    def _build_summary(
        self,
        digest: dict[str, Any],
        turns: Sequence[Turn],
        original_tokens: int,
        provider: str,
        degraded: bool = False,
    ) -> Summary:
        narrative = str(digest.get("summary") or "").strip()
        key_facts = _string_list(digest.get("keyFacts"))
        decisions = _string_list(digest.get("decisions"))
        files = _string_list(digest.get("filesCreated"))
        tech_stack = _string_list(digest.get("techStack"))
        issues = _string_list(digest.get("activeIssues"))

        content = format_digest(narrative, tech_stack, key_facts, decisions, files, issues)

        return Summary(
            id=str(uuid4()),
            content=content,
            # Never trust a token count reported by the model
            token_count=estimate_tokens(content, provider),
            messages_count=len(turns),
            original_token_count=original_tokens,
            narrative=narrative,
            key_facts=key_facts,
            decisions=decisions,
            files_touched=files,
            issues=issues,
            tech_stack=tech_stack,
            degraded=degraded,
        )

    def _failed_summary(self, turns: Sequence[Turn], original_tokens: int, provider: str) -> Summary:
        recent = "\n".join(
            f"{turn.role}: {_clip(turn.content, FALLBACK_CHARS_PER_TURN)}"
            for turn in turns[-FALLBACK_TURNS:]
        )
        content = f"{FAILED_SUMMARY_HEADER}\n{recent}"

        return Summary(
            id=str(uuid4()),
            content=content,
            token_count=estimate_tokens(content, provider),
            messages_count=len(turns),
            original_token_count=original_tokens,
            narrative=content,
            degraded=True,
        )

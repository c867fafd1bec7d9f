"""Chapter memory: detect when story history should be compressed, and compress it.

MemoryService wraps the model calls (analysis, summarization, chapter Q&A,
retrieval decisions). ChapterService runs the per-cycle state machine:

    idle -> checking -> skip
                     -> analyzing -> skip
                                  -> creating -> skip   (empty slice)
                                              -> done

Every terminal state returns to idle. A failed model call skips the cycle;
nothing is retried until the next threshold crossing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Callable

from pydantic import BaseModel, Field

from story_engine.cancel import AbortError, AbortSignal
from story_engine.llm import LLM, LLMError
from story_engine.models import Chapter, MemoryConfig, StoryEntry
from story_engine.prompts import (
    CHAPTER_ANALYSIS_PROMPT,
    CHAPTER_ANALYSIS_SYSTEM,
    CHAPTER_QUERY_PROMPT,
    CHAPTER_QUERY_SYSTEM,
    CHAPTER_SUMMARY_PROMPT,
    CHAPTER_SUMMARY_SYSTEM,
    RETRIEVAL_DECISION_PROMPT,
    RETRIEVAL_DECISION_SYSTEM,
    PromptError,
    render_prompt,
)
from story_engine.storage import Persistence

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured model outputs
# ---------------------------------------------------------------------------

class ChapterAnalysis(BaseModel):
    should_create_chapter: bool
    optimal_end_index: int  # exclusive end into the full entry list
    suggested_title: str | None = None
    keywords: list[str] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    plot_threads: list[str] = Field(default_factory=list)
    emotional_tone: str = ""
    significant_events: list[str] = Field(default_factory=list)


class ChapterSummaryResult(BaseModel):
    title: str | None = None
    summary: str
    keywords: list[str] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    plot_threads: list[str] = Field(default_factory=list)
    emotional_tone: str | None = None


class RetrievalDecision(BaseModel):
    should_retrieve: bool
    relevant_chapter_ids: list[str] = Field(default_factory=list)
    reasoning: str | None = None


# ---------------------------------------------------------------------------
# Token accounting helpers
# ---------------------------------------------------------------------------

def approximate_tokens(text: str) -> int:
    """Rough default counter; callers with a real tokenizer should pass their own."""
    return (len(text) + 3) // 4


def last_chapter_end_index(entries: list[StoryEntry], chapters: list[Chapter]) -> int:
    """Index of the first entry not covered by any chapter."""
    if not chapters:
        return 0
    last = max(chapters, key=lambda c: c.number)
    for i, e in enumerate(entries):
        if e.id == last.end_entry_id:
            return i + 1
    logger.warning("Chapter %d end entry %s not found in entries", last.number, last.end_entry_id)
    return 0


def tokens_outside_buffer(
    entries: list[StoryEntry],
    last_end_index: int,
    chapter_buffer: int,
    count_tokens: Callable[[str], int] = approximate_tokens,
) -> int:
    """Tokens between the last chapter boundary and the protected recent buffer."""
    end = len(entries) - chapter_buffer
    if end <= last_end_index:
        return 0
    total = 0
    for e in entries[last_end_index:end]:
        if e.metadata.token_count is not None:
            total += e.metadata.token_count
        else:
            total += count_tokens(e.content)
    return total


# ---------------------------------------------------------------------------
# MemoryService
# ---------------------------------------------------------------------------

def _chapter_ctx(chapters: list[Chapter]) -> list[dict]:
    return [c.model_dump() for c in sorted(chapters, key=lambda c: c.number)]


def _entry_ctx(entries: list[StoryEntry]) -> list[dict]:
    return [{"type": e.type, "content": e.content} for e in entries]


class MemoryService:
    """Model-backed chapter operations. Errors propagate to the caller."""

    def __init__(self, llm: LLM) -> None:
        self._llm = llm

    async def analyze_for_chapter(
        self,
        entries: list[StoryEntry],
        start_index: int,
        end_limit: int,
        previous: list[Chapter],
        *,
        signal: AbortSignal | None = None,
    ) -> ChapterAnalysis:
        messages = [
            {"index": i, "type": e.type, "content": e.content}
            for i, e in enumerate(entries[start_index:end_limit], start=start_index)
        ]
        prompt = render_prompt(CHAPTER_ANALYSIS_PROMPT, {
            "previous": _chapter_ctx(previous),
            "messages": messages,
            "min_end": start_index + 1,
            "max_end": end_limit,
        })
        analysis = await self._llm.generate_structured(
            "chapter_analysis", ChapterAnalysis, CHAPTER_ANALYSIS_SYSTEM, prompt, signal=signal,
        )
        if analysis.optimal_end_index > end_limit:
            logger.debug("Clamping chapter end %d to %d", analysis.optimal_end_index, end_limit)
            analysis.optimal_end_index = end_limit
        return analysis

    async def summarize_chapter(
        self,
        entries: list[StoryEntry],
        previous: list[Chapter],
        *,
        signal: AbortSignal | None = None,
    ) -> ChapterSummaryResult:
        prompt = render_prompt(CHAPTER_SUMMARY_PROMPT, {
            "previous": _chapter_ctx(previous),
            "entries": _entry_ctx(entries),
        })
        return await self._llm.generate_structured(
            "chapter_summary", ChapterSummaryResult, CHAPTER_SUMMARY_SYSTEM, prompt, signal=signal,
        )

    async def answer_chapter_question(
        self,
        chapter: Chapter,
        entries: list[StoryEntry],
        question: str,
        *,
        signal: AbortSignal | None = None,
    ) -> str:
        prompt = render_prompt(CHAPTER_QUERY_PROMPT, {
            **chapter.model_dump(),
            "entries": _entry_ctx(entries),
            "question": question,
        })
        answer = await self._llm.generate_text(
            "chapter_query", CHAPTER_QUERY_SYSTEM, prompt, signal=signal,
        )
        return answer.strip()

    async def decide_retrieval(
        self,
        user_input: str,
        recent: list[StoryEntry],
        chapters: list[Chapter],
        max_chapters: int = 3,
        *,
        signal: AbortSignal | None = None,
    ) -> RetrievalDecision:
        if not chapters:
            return RetrievalDecision(should_retrieve=False, reasoning="No chapters")
        prompt = render_prompt(RETRIEVAL_DECISION_PROMPT, {
            "user_input": user_input,
            "recent": _entry_ctx(recent),
            "chapters": _chapter_ctx(chapters),
            "max": max_chapters,
        })
        decision = await self._llm.generate_structured(
            "retrieval_decision", RetrievalDecision, RETRIEVAL_DECISION_SYSTEM, prompt, signal=signal,
        )
        decision.relevant_chapter_ids = decision.relevant_chapter_ids[:max_chapters]
        return decision


def chapter_entries(chapter: Chapter, entries: list[StoryEntry]) -> list[StoryEntry]:
    """The entries a chapter covers, located by its boundary ids."""
    ids = [e.id for e in entries]
    try:
        start = ids.index(chapter.start_entry_id)
        end = ids.index(chapter.end_entry_id)
    except ValueError:
        return []
    return entries[start:end + 1]


def build_retrieved_context_block(chapters: list[Chapter]) -> str:
    if not chapters:
        return ""
    parts = ["[RETRIEVED MEMORY]"]
    for c in sorted(chapters, key=lambda c: c.number):
        header = f"--- Chapter {c.number}: {c.title} ---" if c.title else f"--- Chapter {c.number} ---"
        parts.append(header)
        parts.append(c.summary)
        if c.keywords:
            parts.append(f"[Keywords: {', '.join(c.keywords)}]")
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# ChapterService
# ---------------------------------------------------------------------------

class ChapterState(enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    ANALYZING = "analyzing"
    CREATING = "creating"
    SKIP = "skip"
    DONE = "done"


class ChapterCheckInput(BaseModel):
    story_id: str
    branch_id: str | None = None
    entries: list[StoryEntry]
    last_chapter_end_index: int
    tokens_outside_buffer: int
    memory_config: MemoryConfig = Field(default_factory=MemoryConfig)


class ChapterCheckResult(BaseModel):
    created: bool
    chapter: Chapter | None = None
    lore_management_triggered: bool = False
    skip_reason: str | None = None


def _skip(reason: str) -> ChapterCheckResult:
    return ChapterCheckResult(created=False, lore_management_triggered=False, skip_reason=reason)


class ChapterService:
    """Creates at most one chapter per generation cycle per story branch."""

    def __init__(self, memory: MemoryService, persistence: Persistence) -> None:
        self._memory = memory
        self._persistence = persistence
        self._locks: dict[tuple[str, str | None], asyncio.Lock] = {}
        self._states: dict[tuple[str, str | None], ChapterState] = {}

    def state(self, story_id: str, branch_id: str | None = None) -> ChapterState:
        return self._states.get((story_id, branch_id), ChapterState.IDLE)

    def _enter(self, key: tuple[str, str | None], state: ChapterState) -> None:
        self._states[key] = state
        logger.debug("chapter check story=%s branch=%s state=%s", key[0], key[1], state.value)

    async def check_and_create_chapter(
        self, inp: ChapterCheckInput, *, signal: AbortSignal | None = None,
    ) -> ChapterCheckResult:
        key = (inp.story_id, inp.branch_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                result = await self._run(key, inp, signal)
            finally:
                self._enter(key, ChapterState.IDLE)
            return result

    async def _run(
        self, key: tuple[str, str | None], inp: ChapterCheckInput, signal: AbortSignal | None,
    ) -> ChapterCheckResult:
        self._enter(key, ChapterState.CHECKING)
        config = inp.memory_config

        if inp.tokens_outside_buffer <= 0:
            self._enter(key, ChapterState.SKIP)
            return _skip("no_tokens")
        if inp.tokens_outside_buffer < config.token_threshold:
            logger.debug(
                "Below chapter threshold: %d < %d", inp.tokens_outside_buffer, config.token_threshold,
            )
            self._enter(key, ChapterState.SKIP)
            return _skip("below_threshold")

        start = inp.last_chapter_end_index
        entries = inp.entries
        if start >= len(entries):
            self._enter(key, ChapterState.SKIP)
            return _skip("no_entries")

        previous = self._persistence.get_chapters(inp.story_id, inp.branch_id)
        if any(c.start_entry_id == entries[start].id for c in previous):
            logger.warning(
                "Chapter already exists starting at entry %s (index %d), skipping",
                entries[start].id, start,
            )
            self._enter(key, ChapterState.SKIP)
            return _skip("already_chaptered")

        self._enter(key, ChapterState.ANALYZING)
        end_limit = max(start, len(entries) - config.chapter_buffer)
        try:
            analysis = await self._memory.analyze_for_chapter(
                entries, start, end_limit, previous, signal=signal,
            )
        except AbortError:
            logger.info("Chapter check for story %s aborted during analysis", inp.story_id)
            self._enter(key, ChapterState.SKIP)
            return _skip("aborted")
        except (LLMError, PromptError, ValueError) as e:
            logger.warning("Chapter analysis failed, skipping this cycle: %s", e)
            self._enter(key, ChapterState.SKIP)
            return _skip("analysis_failed")

        if not analysis.should_create_chapter:
            logger.info("Analysis declined to create a chapter for story %s", inp.story_id)
            self._enter(key, ChapterState.SKIP)
            return _skip("analysis_declined")

        self._enter(key, ChapterState.CREATING)
        chapter_slice = entries[start:analysis.optimal_end_index]
        if not chapter_slice:
            logger.warning(
                "Analysis chose a chapter end (%d) at or before the last boundary (%d); "
                "not creating an empty chapter",
                analysis.optimal_end_index, start,
            )
            self._enter(key, ChapterState.SKIP)
            return _skip("empty_slice")

        previous = sorted(previous, key=lambda c: c.number)
        try:
            summary = await self._memory.summarize_chapter(chapter_slice, previous, signal=signal)
        except AbortError:
            logger.info("Chapter check for story %s aborted during summarization", inp.story_id)
            self._enter(key, ChapterState.SKIP)
            return _skip("aborted")
        except (LLMError, PromptError, ValueError) as e:
            logger.warning("Chapter summarization failed, skipping this cycle: %s", e)
            self._enter(key, ChapterState.SKIP)
            return _skip("summary_failed")

        number = self._persistence.get_next_chapter_number(inp.story_id, inp.branch_id)
        first, last = chapter_slice[0], chapter_slice[-1]
        chapter = Chapter(
            id=str(uuid.uuid4()),
            story_id=inp.story_id,
            number=number,
            title=analysis.suggested_title or summary.title,
            start_entry_id=first.id,
            end_entry_id=last.id,
            entry_count=len(chapter_slice),
            summary=summary.summary,
            start_time=first.metadata.time_start,
            end_time=last.metadata.time_end,
            keywords=summary.keywords or analysis.keywords,
            characters=summary.characters or analysis.characters,
            locations=summary.locations or analysis.locations,
            plot_threads=summary.plot_threads or analysis.plot_threads,
            emotional_tone=summary.emotional_tone or analysis.emotional_tone or None,
            branch_id=inp.branch_id,
        )
        self._persistence.add_chapter(chapter)
        logger.info(
            "Created chapter %d for story %s (%d entries)", number, inp.story_id, len(chapter_slice),
        )
        self._enter(key, ChapterState.DONE)
        return ChapterCheckResult(created=True, chapter=chapter, lore_management_triggered=True)

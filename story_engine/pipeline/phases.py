"""The three phases of one generation cycle.

  pre_generation  snapshot state for retry, resolve story settings,
                  allocate the id of the entry being generated
  retrieval       memory retrieval and lorebook retrieval, concurrently
  narrative       tier the world state, build the prompt, call the model

Each phase emits phase_start, then exactly one of phase_complete / aborted
(narrative may also emit error). Retrieval failures degrade to "no extra
context"; only a narrative failure is fatal and raises GenerationError.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from story_engine.cancel import AbortError, AbortSignal
from story_engine.config import RetrievalSettings
from story_engine.context import ContextBuilder, ContextResult
from story_engine.llm import LLM
from story_engine.memory import MemoryService, RetrievalDecision, build_retrieved_context_block
from story_engine.models import Story, StoryEntry, TimeTracker, WorldState
from story_engine.pipeline.events import (
    Aborted,
    GenerationFailed,
    PhaseComplete,
    PhaseStart,
    ProgressSink,
    emit,
)
from story_engine.pipeline.retry import RetryBackupData
from story_engine.prompts import NARRATIVE_PROMPT, NARRATIVE_SYSTEM, render_prompt
from story_engine.retrieval.agentic import AgenticRetrievalResult, AgenticRetrievalService
from story_engine.retrieval.entries import LorebookRetriever
from story_engine.retrieval.timeline import TimelineFillResult, TimelineFillService

logger = logging.getLogger(__name__)

MAX_EMPTY_RESPONSE_RETRIES = 3


class GenerationError(RuntimeError):
    """The narrative call failed; no text was produced for this user action."""

    def __init__(self, message: str, *, entry_id: str, backup: RetryBackupData | None = None) -> None:
        super().__init__(message)
        self.entry_id = entry_id
        self.backup = backup


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

class UserAction(BaseModel):
    entry_id: str
    content: str
    raw_input: str
    action_type: str = "do"
    was_raw_action_choice: bool = False


@dataclass
class GenerationContext:
    """Everything one generation cycle reads. Built once per user action."""

    story: Story
    world_state: WorldState
    visible_entries: list[StoryEntry]
    user_action: UserAction
    signal: AbortSignal = field(default_factory=AbortSignal)
    branch_id: str | None = None
    all_entries: list[StoryEntry] | None = None  # chapter lookups; defaults to visible_entries
    embedded_images: list[dict[str, Any]] = field(default_factory=list)
    time_tracker: TimeTracker | None = None

    @property
    def entries(self) -> list[StoryEntry]:
        return self.all_entries if self.all_entries is not None else self.visible_entries


class PreGenerationResult(BaseModel):
    retry_backup: RetryBackupData
    visual_prose_mode: bool = False
    streaming_entry_id: str


class RetrievalResult(BaseModel):
    chapter_context: str | None = None
    lorebook_context: str | None = None
    timeline_fill_result: TimelineFillResult | None = None
    agentic_result: AgenticRetrievalResult | None = None
    retrieval_decision: RetrievalDecision | None = None
    combined_context: str | None = None
    lorebook_handled: bool = False  # lore already covered; narrative tiering skips it


class NarrativeResult(BaseModel):
    entry_id: str
    content: str
    context: ContextResult


# ---------------------------------------------------------------------------
# Pre-generation
# ---------------------------------------------------------------------------

def run_pre_generation(ctx: GenerationContext, sink: ProgressSink | None = None) -> PreGenerationResult:
    emit(sink, PhaseStart(phase="pre_generation"))
    world = ctx.world_state
    backup = RetryBackupData.snapshot(
        story_id=ctx.story.id,
        branch_id=ctx.branch_id,
        entries=ctx.entries,
        characters=world.characters,
        locations=world.locations,
        items=world.items,
        story_beats=world.story_beats,
        embedded_images=ctx.embedded_images,
        user_action_content=ctx.user_action.content,
        raw_input=ctx.user_action.raw_input,
        action_type=ctx.user_action.action_type,
        was_raw_action_choice=ctx.user_action.was_raw_action_choice,
        time_tracker=ctx.time_tracker,
    )
    result = PreGenerationResult(
        retry_backup=backup,
        visual_prose_mode=ctx.story.settings.visual_prose_mode,
        streaming_entry_id=str(uuid.uuid4()),
    )
    emit(sink, PhaseComplete(phase="pre_generation", result=result))
    return result


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class RetrievalPhase:
    """Runs memory and lorebook retrieval side by side and joins them once.

    Any source may be None, in which case the corresponding task never runs.
    With timeline fill switched off, *memory* picks whole chapter summaries
    instead of answering questions about them.
    """

    def __init__(
        self,
        *,
        timeline: TimelineFillService | None = None,
        agentic: AgenticRetrievalService | None = None,
        lorebook: LorebookRetriever | None = None,
        memory: MemoryService | None = None,
        settings: RetrievalSettings | None = None,
    ) -> None:
        self._timeline = timeline
        self._memory = memory
        self._agentic = agentic
        self._lorebook = lorebook
        self.settings = settings or RetrievalSettings()

    def use_timeline(self) -> bool:
        return self._timeline is not None and self.settings.timeline_fill_enabled

    def use_agentic(self, chapter_count: int) -> bool:
        return (
            self._agentic is not None
            and self.settings.agentic_enabled
            and chapter_count > self.settings.agentic_threshold
        )

    async def run(self, ctx: GenerationContext, sink: ProgressSink | None = None) -> RetrievalResult:
        emit(sink, PhaseStart(phase="retrieval"))
        if ctx.signal.aborted:
            emit(sink, Aborted(phase="retrieval"))
            return RetrievalResult()

        world = ctx.world_state
        chapters = world.chapters
        agentic = self.use_agentic(len(chapters))
        user_input = ctx.user_action.content
        slots: dict[str, Any] = {}

        async def memory_task() -> None:
            if agentic:
                result = await self._agentic.run(
                    user_input=user_input,
                    recent=ctx.visible_entries[-self.settings.lorebook_recent_entries:],
                    chapters=chapters,
                    lorebook_entries=world.lorebook_entries,
                    entries=ctx.entries,
                    signal=ctx.signal,
                )
                slots["agentic"] = result
                slots["chapter"] = result.render()
            elif self.use_timeline():
                result = await self._timeline.run(
                    user_input, ctx.visible_entries, chapters, ctx.entries, signal=ctx.signal,
                )
                slots["timeline"] = result
                slots["chapter"] = result.render()
            else:
                decision = await self._memory.decide_retrieval(
                    user_input,
                    ctx.visible_entries[-self.settings.lorebook_recent_entries:],
                    chapters,
                    ctx.story.memory_config.max_chapters_per_retrieval,
                    signal=ctx.signal,
                )
                slots["decision"] = decision
                if decision.should_retrieve:
                    wanted = set(decision.relevant_chapter_ids)
                    picked = [c for c in chapters if c.id in wanted]
                    slots["chapter"] = build_retrieved_context_block(picked) or None

        async def lorebook_task() -> None:
            result = await self._lorebook.retrieve(
                world.lorebook_entries,
                user_input,
                ctx.visible_entries[-self.settings.lorebook_recent_entries:],
                signal=ctx.signal,
            )
            slots["lorebook"] = result.context_block

        names: list[str] = []
        tasks = []
        memory_enabled = ctx.story.memory_config.enable_retrieval and (
            agentic or self.use_timeline() or self._memory is not None
        )
        if chapters and memory_enabled:
            names.append("memory")
            tasks.append(memory_task())
        run_lorebook = bool(world.lorebook_entries) and not agentic and self._lorebook is not None
        if run_lorebook:
            names.append("lorebook")
            tasks.append(lorebook_task())

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, (AbortError, asyncio.CancelledError)):
                continue
            if isinstance(outcome, BaseException):
                logger.warning("Retrieval task %s failed, continuing without it: %s", name, outcome)

        if ctx.signal.aborted:
            emit(sink, Aborted(phase="retrieval"))
            return RetrievalResult()

        chapter_context = slots.get("chapter")
        lorebook_context = slots.get("lorebook")
        combined = "\n".join(c for c in (chapter_context, lorebook_context) if c) or None
        result = RetrievalResult(
            chapter_context=chapter_context,
            lorebook_context=lorebook_context,
            timeline_fill_result=slots.get("timeline"),
            agentic_result=slots.get("agentic"),
            retrieval_decision=slots.get("decision"),
            combined_context=combined,
            lorebook_handled=agentic or run_lorebook,
        )
        emit(sink, PhaseComplete(phase="retrieval", result=result))
        return result


# ---------------------------------------------------------------------------
# Narrative
# ---------------------------------------------------------------------------

class NarrativePhase:
    def __init__(self, llm: LLM, context_builder: ContextBuilder | None = None) -> None:
        self._llm = llm
        self._builder = context_builder or ContextBuilder(llm)

    async def run(
        self,
        ctx: GenerationContext,
        pre: PreGenerationResult,
        retrieval: RetrievalResult,
        sink: ProgressSink | None = None,
    ) -> NarrativeResult | None:
        """Returns None when aborted; raises GenerationError on failure."""
        emit(sink, PhaseStart(phase="narrative"))
        try:
            ctx.signal.raise_if_aborted()
            world = ctx.world_state
            if retrieval.lorebook_handled:
                world = world.model_copy(update={"lorebook_entries": []})
            context = await self._builder.build_context(
                world,
                ctx.user_action.content,
                ctx.visible_entries,
                retrieved_context=retrieval.combined_context,
                signal=ctx.signal,
            )
            system = render_prompt(NARRATIVE_SYSTEM, {
                "system_prompt": ctx.story.settings.system_prompt,
                "genre": ctx.story.genre,
                "visual_prose": pre.visual_prose_mode,
            })
            prompt = render_prompt(NARRATIVE_PROMPT, {
                "context": context.context_block,
                "recent": [
                    {"content": e.content, "is_user": e.type == "user_action"}
                    for e in ctx.visible_entries
                ],
                "user_input": ctx.user_action.content,
            })

            text = ""
            for attempt in range(MAX_EMPTY_RESPONSE_RETRIES + 1):
                text = (await self._llm.generate_text(
                    "narrative", system, prompt, signal=ctx.signal,
                )).strip()
                if text:
                    break
                logger.warning(
                    "Empty narrative response (attempt %d/%d)", attempt + 1, MAX_EMPTY_RESPONSE_RETRIES + 1,
                )
            if not text:
                raise ValueError("Model returned an empty response")

            # Output produced after an abort is discarded, never committed.
            ctx.signal.raise_if_aborted()
        except AbortError:
            emit(sink, Aborted(phase="narrative"))
            return None
        except Exception as e:
            logger.error("Narrative generation failed for %s: %s", ctx.user_action.entry_id, e)
            emit(sink, GenerationFailed(
                phase="narrative", error=str(e), entry_id=ctx.user_action.entry_id,
            ))
            raise GenerationError(
                f"Narrative generation failed: {e}",
                entry_id=ctx.user_action.entry_id,
                backup=pre.retry_backup,
            ) from e

        result = NarrativeResult(entry_id=pre.streaming_entry_id, content=text, context=context)
        emit(sink, PhaseComplete(phase="narrative", result=result))
        return result

"""Tests for the generation pipeline: phases, events, cancellation and failure."""

import asyncio

import pytest

from story_engine.config import RetrievalSettings
from story_engine.llm import LLMError
from story_engine.memory import MemoryService
from story_engine.models import (
    Chapter,
    Character,
    Injection,
    Location,
    LorebookEntry,
    MemoryConfig,
    Story,
    StorySettings,
    StoryEntry,
    WorldState,
)
from story_engine.pipeline import (
    EventCollector,
    GenerationContext,
    GenerationError,
    GenerationPipeline,
    RetrievalPhase,
    UserAction,
    run_pre_generation,
)
from story_engine.retrieval.agentic import AgenticRetrievalService
from story_engine.retrieval.entries import LorebookRetriever
from story_engine.retrieval.timeline import TimelineFillService


def _entries(n: int) -> list[StoryEntry]:
    return [
        StoryEntry(id=f"e{i}", story_id="story-1", type="narration", content=f"Entry {i}", position=i)
        for i in range(n)
    ]


def _chapters(n: int) -> list[Chapter]:
    return [
        Chapter(
            id=f"ch{i}", story_id="story-1", number=i, start_entry_id=f"e{i - 1}", end_entry_id=f"e{i - 1}",
            entry_count=1, summary=f"Chapter {i} happened.",
        )
        for i in range(1, n + 1)
    ]


def _ctx(world: WorldState | None = None, story: Story | None = None, **kw) -> GenerationContext:
    return GenerationContext(
        story=story or Story(id="story-1", title="The Broken Compass", genre="fantasy"),
        world_state=world or WorldState(),
        visible_entries=kw.pop("visible_entries", _entries(4)),
        user_action=UserAction(entry_id="ua-1", content="I open the map", raw_input="open the map"),
        **kw,
    )


COMPASS = LorebookEntry(
    id="lore-1", name="Broken Compass", type="item", description="Points to what you fear",
    injection=Injection(mode="always"),
)


def _pipeline(llm, *, lorebook: bool = True, settings: RetrievalSettings | None = None) -> GenerationPipeline:
    memory = MemoryService(llm)
    return GenerationPipeline(llm, retrieval=RetrievalPhase(
        timeline=TimelineFillService(llm, memory),
        agentic=AgenticRetrievalService(llm, memory, max_iterations=5),
        lorebook=LorebookRetriever() if lorebook else None,
        settings=settings,
    ))


# ---------------------------------------------------------------------------
# Happy path and events
# ---------------------------------------------------------------------------

class TestPipelineFlow:
    async def test_events_in_phase_order(self, llm) -> None:
        llm.script_text("narrative", "The map unrolls.")
        events = EventCollector()

        result = await _pipeline(llm).run(_ctx(), events)

        assert [(e.type, e.phase) for e in events.events] == [
            ("phase_start", "pre_generation"), ("phase_complete", "pre_generation"),
            ("phase_start", "retrieval"), ("phase_complete", "retrieval"),
            ("phase_start", "narrative"), ("phase_complete", "narrative"),
        ]
        assert result.aborted is False
        assert result.narrative.content == "The map unrolls."
        assert result.narrative.entry_id == result.pre_generation.streaming_entry_id

    async def test_runs_without_sink(self, llm) -> None:
        result = await _pipeline(llm).run(_ctx())
        assert result.narrative.content == "ok"

    async def test_timeline_and_lorebook_combined(self, llm) -> None:
        world = WorldState(chapters=_chapters(2), lorebook_entries=[COMPASS])
        llm.script_structured("timeline_queries", {"queries": [{"query": "Where is the map?", "chapters": [1]}]})
        llm.script_text("chapter_query", "In the captain's chest.")
        llm.script_text("narrative", "You find it.")

        result = await _pipeline(llm).run(_ctx(world, visible_entries=_entries(2)))

        retrieval = result.retrieval
        assert retrieval.chapter_context == "[TIMELINE CONTEXT]\nQ: Where is the map?\nA: In the captain's chest."
        assert retrieval.lorebook_context.startswith("[LOREBOOK]\n• Broken Compass (item)")
        assert retrieval.combined_context == f"{retrieval.chapter_context}\n{retrieval.lorebook_context}"
        narrative_prompt = next(c.payload for c in llm.calls if c.stage == "narrative")
        assert "In the captain's chest." in narrative_prompt

    async def test_lorebook_handled_skips_lore_in_tiering(self, llm) -> None:
        world = WorldState(locations=[Location(id="loc1", name="Harbor", current=True)], lorebook_entries=[COMPASS])
        result = await _pipeline(llm).run(_ctx(world))
        assert result.retrieval.lorebook_handled is True
        assert [e.type for e in result.narrative.context.all] == ["location"]

    async def test_without_lorebook_retriever_tiering_keeps_lore(self, llm) -> None:
        world = WorldState(lorebook_entries=[COMPASS])
        result = await _pipeline(llm, lorebook=False).run(_ctx(world))
        assert result.retrieval.lorebook_handled is False
        assert [e.id for e in result.narrative.context.all] == ["lore-1"]

    async def test_memory_retrieval_respects_story_setting(self, llm) -> None:
        story = Story(id="story-1", title="t", memory_config=MemoryConfig(enable_retrieval=False))
        await _pipeline(llm).run(_ctx(WorldState(chapters=_chapters(2)), story=story))
        assert llm.stages() == ["narrative"]


# ---------------------------------------------------------------------------
# Pre-generation
# ---------------------------------------------------------------------------

class TestPreGeneration:
    def test_backup_is_a_deep_copy(self) -> None:
        ctx = _ctx(WorldState(characters=[Character(id="c1", name="Mira")]))
        pre = run_pre_generation(ctx)

        ctx.visible_entries[0].content = "changed"
        ctx.world_state.characters[0].name = "Renamed"

        backup = pre.retry_backup
        assert backup.entries[0].content == "Entry 0"
        assert backup.characters[0].name == "Mira"
        assert (backup.user_action_content, backup.raw_input) == ("I open the map", "open the map")

    def test_settings_and_streaming_id(self) -> None:
        story = Story(id="story-1", title="t", settings=StorySettings(visual_prose_mode=True))
        first = run_pre_generation(_ctx(story=story))
        second = run_pre_generation(_ctx(story=story))
        assert first.visual_prose_mode is True
        assert first.streaming_entry_id != second.streaming_entry_id


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class TestRetrievalPhase:
    def test_agentic_threshold(self, llm) -> None:
        phase = RetrievalPhase(agentic=AgenticRetrievalService(llm), settings=RetrievalSettings(agentic_threshold=2))
        assert phase.use_agentic(2) is False
        assert phase.use_agentic(3) is True

    def test_agentic_needs_service_and_flag(self, llm) -> None:
        assert RetrievalPhase().use_agentic(100) is False
        disabled = RetrievalPhase(
            agentic=AgenticRetrievalService(llm), settings=RetrievalSettings(agentic_enabled=False),
        )
        assert disabled.use_agentic(100) is False

    async def test_agentic_replaces_timeline_and_lorebook(self, llm) -> None:
        world = WorldState(chapters=_chapters(3), lorebook_entries=[COMPASS])
        llm.script_tool_calls(
            "agentic_retrieval",
            [("select_entry", {"index": 0, "reason": "the map"})],
            [("finish_retrieval", {"synthesis": "The compass matters", "confidence": "high"})],
        )
        settings = RetrievalSettings(agentic_threshold=2)

        result = await _pipeline(llm, settings=settings).run(_ctx(world))

        retrieval = result.retrieval
        assert retrieval.agentic_result.selected == [COMPASS]
        assert retrieval.timeline_fill_result is None
        assert retrieval.lorebook_context is None
        assert retrieval.chapter_context.startswith("[Retrieved Context - The compass matters]")
        assert retrieval.lorebook_handled is True
        assert "timeline_queries" not in llm.stages()

    async def test_failure_degrades_to_no_context(self, llm) -> None:
        llm.script_structured("timeline_queries", LLMError("timeout"))
        events = EventCollector()

        result = await _pipeline(llm).run(_ctx(WorldState(chapters=_chapters(2))), events)

        assert result.retrieval.chapter_context is None
        assert result.retrieval.combined_context is None
        assert [e.type for e in events.of_phase("retrieval")] == ["phase_start", "phase_complete"]
        assert result.narrative is not None

    async def test_chapter_selection_without_timeline_fill(self, llm) -> None:
        llm.script_structured("retrieval_decision", {
            "should_retrieve": True, "relevant_chapter_ids": ["ch3", "ch1", "ch9"], "reasoning": "the map",
        })
        llm.script_text("narrative", "The map unrolls.")
        memory = MemoryService(llm)
        phase = RetrievalPhase(
            timeline=TimelineFillService(llm, memory),
            memory=memory,
            settings=RetrievalSettings(timeline_fill_enabled=False),
        )

        result = await GenerationPipeline(llm, retrieval=phase).run(_ctx(WorldState(chapters=_chapters(3))))

        retrieval = result.retrieval
        assert retrieval.retrieval_decision.relevant_chapter_ids == ["ch3", "ch1", "ch9"]
        assert retrieval.chapter_context == (
            "[RETRIEVED MEMORY]\n--- Chapter 1 ---\nChapter 1 happened.\n--- Chapter 3 ---\nChapter 3 happened."
        )
        assert retrieval.timeline_fill_result is None
        assert "timeline_queries" not in llm.stages()
        assert "RETRIEVED MEMORY" in next(c.payload for c in llm.calls if c.stage == "narrative")

    async def test_declined_chapter_selection_adds_nothing(self, llm) -> None:
        llm.script_structured("retrieval_decision", {"should_retrieve": False, "relevant_chapter_ids": ["ch1"]})
        phase = RetrievalPhase(memory=MemoryService(llm))

        result = await phase.run(_ctx(WorldState(chapters=_chapters(2))))

        assert result.retrieval_decision.should_retrieve is False
        assert result.chapter_context is None
        assert result.combined_context is None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestAbort:
    async def test_abort_during_retrieval(self, llm) -> None:
        ctx = _ctx(WorldState(chapters=_chapters(2), lorebook_entries=[COMPASS]))

        async def abort_and_hang(_prompt):
            ctx.signal.abort("user stopped")
            await asyncio.Event().wait()

        llm.script_structured("timeline_queries", abort_and_hang)
        events = EventCollector()

        result = await _pipeline(llm).run(ctx, events)

        assert result.aborted is True
        assert result.narrative is None
        retrieval = result.retrieval
        assert retrieval.chapter_context is None
        assert retrieval.lorebook_context is None
        assert retrieval.timeline_fill_result is None
        assert retrieval.combined_context is None
        assert [e.type for e in events.of_phase("retrieval")] == ["phase_start", "aborted"]
        assert events.of_phase("narrative") == []
        assert "narrative" not in llm.stages()

    async def test_abort_during_narrative_discards_text(self, llm) -> None:
        ctx = _ctx()

        def abort_then_answer(_prompt):
            ctx.signal.abort()
            return "Too late."

        llm.script_text("narrative", abort_then_answer)
        events = EventCollector()

        result = await _pipeline(llm).run(ctx, events)

        assert result.aborted is True
        assert events.types[-1] == "aborted"

    async def test_already_aborted(self, llm) -> None:
        ctx = _ctx()
        ctx.signal.abort()
        events = EventCollector()
        result = await _pipeline(llm).run(ctx, events)
        assert result.aborted is True
        assert llm.calls == []
        assert events.types == ["phase_start", "phase_complete", "phase_start", "aborted"]


# ---------------------------------------------------------------------------
# Narrative failure
# ---------------------------------------------------------------------------

class TestNarrativeFailure:
    async def test_model_error_is_fatal(self, llm) -> None:
        llm.script_text("narrative", LLMError("503 Service Unavailable"))
        events = EventCollector()

        with pytest.raises(GenerationError) as exc_info:
            await _pipeline(llm).run(_ctx(), events)

        err = exc_info.value
        assert err.entry_id == "ua-1"
        assert err.backup.raw_input == "open the map"
        assert "503" in str(err)
        last = events.events[-1]
        assert (last.type, last.phase, last.entry_id) == ("error", "narrative", "ua-1")

    async def test_empty_response_retried(self, llm) -> None:
        llm.script_text("narrative", "", "   ", "Waves lap at the hull.")
        result = await _pipeline(llm).run(_ctx())
        assert result.narrative.content == "Waves lap at the hull."
        assert llm.stages() == ["narrative"] * 3

    async def test_persistently_empty_response_fails(self, llm) -> None:
        llm.script_text("narrative", "", "", "", "")
        with pytest.raises(GenerationError, match="empty response"):
            await _pipeline(llm).run(_ctx())
        assert len(llm.calls) == 4

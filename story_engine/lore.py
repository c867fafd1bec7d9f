"""Lore management: an agent run that keeps a story's lorebook current.

Usually scheduled after a new chapter is created. The agent sees the
lorebook (minus blacklisted entries), the recent story and the chapter
summaries, and proposes edits through the story lorebook tools. The run ends
when it calls finish_lore_management, stops requesting tools, or reaches
max_iterations. Every proposal is a PendingChange; nothing is saved here.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from story_engine.agents.loop import AgentLoop, AgentStep, StopReason, ToolCallRecord
from story_engine.agents.lorebook_tools import story_lorebook_tools
from story_engine.agents.pending import ChangeLog, PendingChangeSink, WorkingSet
from story_engine.agents.stop import stop_on_terminal_tool
from story_engine.agents.story_tools import (
    FINISH_LORE_MANAGEMENT,
    chapter_tools,
    finish_lore_management_tool,
    recent_story_tool,
)
from story_engine.agents.tools import ToolRegistry
from story_engine.cancel import AbortSignal
from story_engine.config import LoreManagementSettings
from story_engine.llm import LLM
from story_engine.memory import MemoryService, chapter_entries
from story_engine.models import Chapter, LorebookEntry, PendingChange, StoryEntry
from story_engine.prompts import LORE_MANAGEMENT_PROMPT, LORE_MANAGEMENT_SYSTEM, render_prompt

logger = logging.getLogger(__name__)


class LoreManagementResult(BaseModel):
    pending_changes: list[PendingChange] = Field(default_factory=list)
    summary: str | None = None
    stop_reason: StopReason
    steps: list[AgentStep] = Field(default_factory=list)
    tool_call_log: list[ToolCallRecord] = Field(default_factory=list)


class LoreManagementService:
    def __init__(
        self,
        llm: LLM,
        memory: MemoryService | None = None,
        settings: LoreManagementSettings | None = None,
    ) -> None:
        self._llm = llm
        self._memory = memory or MemoryService(llm)
        self.settings = settings or LoreManagementSettings()

    async def run(
        self,
        *,
        story_id: str,
        branch_id: str | None = None,
        lorebook_entries: list[LorebookEntry],
        entries: list[StoryEntry],
        chapters: list[Chapter],
        on_pending_change: PendingChangeSink | None = None,
        signal: AbortSignal | None = None,
    ) -> LoreManagementResult:
        visible = [e for e in lorebook_entries if not e.lore_management_blacklisted]
        hidden = len(lorebook_entries) - len(visible)
        if hidden:
            logger.info("Lore management for %s: %d blacklisted entries hidden", story_id, hidden)

        working = WorkingSet(visible)
        changes = ChangeLog(on_pending_change)
        chapters = sorted(chapters, key=lambda c: c.number)

        async def ask(chapter: Chapter, question: str, sig: AbortSignal | None) -> str:
            return await self._memory.answer_chapter_question(
                chapter, chapter_entries(chapter, entries), question, signal=sig,
            )

        registry = ToolRegistry.of(
            story_lorebook_tools(working, changes, branch_id),
            [recent_story_tool(entries)],
            chapter_tools(chapters, ask),
            [finish_lore_management_tool()],
        )
        loop = AgentLoop(
            self._llm,
            registry,
            stop_on_terminal_tool(FINISH_LORE_MANAGEMENT, self.settings.max_iterations),
            max_iterations=self.settings.max_iterations,
            stage="lore_management",
        )
        prompt = render_prompt(LORE_MANAGEMENT_PROMPT, {
            "entries": [e.model_dump() for e in visible],
            "recent": [
                {"type": e.type, "content": e.content}
                for e in entries[-self.settings.recent_entries:]
            ],
            "chapters": [c.model_dump() for c in chapters],
        })
        result = await loop.run(LORE_MANAGEMENT_SYSTEM, prompt, signal=signal)

        finished = result.results_for(FINISH_LORE_MANAGEMENT)
        summary = finished[-1].get("summary") if finished else result.final_text
        logger.info(
            "Lore management for %s proposed %d changes (%s)",
            story_id, len(changes.changes), result.stop_reason,
        )
        return LoreManagementResult(
            pending_changes=changes.changes,
            summary=summary,
            stop_reason=result.stop_reason,
            steps=result.steps,
            tool_call_log=result.tool_call_log,
        )

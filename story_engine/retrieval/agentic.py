"""Agentic retrieval: an agent that interrogates chapters and picks lorebook entries.

Used instead of timeline fill once a story has many chapters. The agent can
list and query chapters, search and select lorebook entries, and ends by
calling finish_retrieval with a synthesis of what it learned.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

from story_engine.agents.loop import AgentLoop, StopReason
from story_engine.agents.pending import failed
from story_engine.agents.story_tools import chapter_tools
from story_engine.agents.stop import stop_on_terminal_tool
from story_engine.agents.tools import Tool, ToolContext, ToolRegistry
from story_engine.cancel import AbortError, AbortSignal
from story_engine.llm import LLM
from story_engine.memory import MemoryService, chapter_entries
from story_engine.models import Chapter, LorebookEntry, LoreType, StoryEntry
from story_engine.prompts import AGENTIC_RETRIEVAL_PROMPT, AGENTIC_RETRIEVAL_SYSTEM, render_prompt

logger = logging.getLogger(__name__)

FINISH_RETRIEVAL = "finish_retrieval"

Confidence = Literal["low", "medium", "high"]


class SearchEntriesArgs(BaseModel):
    query: str | None = Field(default=None, description="Matches name, description, aliases or keywords")
    type: LoreType | None = None
    limit: int = Field(default=20, ge=1)


class SelectEntryArgs(BaseModel):
    index: int
    reason: str


class FinishRetrievalArgs(BaseModel):
    synthesis: str
    chapter_summary: str | None = None
    confidence: Confidence
    additional_context: str | None = None


class AgenticRetrievalResult(BaseModel):
    selected: list[LorebookEntry] = Field(default_factory=list)
    synthesis: str | None = None
    chapter_summary: str | None = None
    confidence: Confidence | None = None
    additional_context: str | None = None
    stop_reason: StopReason

    def render(self) -> str | None:
        parts = []
        if self.synthesis:
            parts.append(f"[Retrieved Context - {self.synthesis}]")
        if self.chapter_summary:
            parts.append(f"## Past Story Context\n{self.chapter_summary}")
        for e in self.selected:
            parts.append(f"## {e.name} ({e.type})\n{e.description}")
        if self.additional_context:
            parts.append(f"## Notes\n{self.additional_context}")
        return "\n\n".join(parts) or None


def _retrieval_tools(entries: list[LorebookEntry], selected: list[int]) -> list[Tool]:
    def search_entries(args: SearchEntriesArgs, ctx: ToolContext) -> dict:
        found = [(i, e) for i, e in enumerate(entries) if args.type is None or e.type == args.type]
        if args.query:
            q = args.query.lower()
            found = [
                (i, e) for i, e in found
                if q in e.name.lower()
                or q in e.description.lower()
                or any(q in a.lower() for a in e.aliases)
                or any(q in k.lower() for k in e.injection.keywords)
            ]
        limited = found[: args.limit]
        return {
            "entries": [
                {
                    "index": i,
                    "name": e.name,
                    "type": e.type,
                    "description": e.description[:200] + ("..." if len(e.description) > 200 else ""),
                    "aliases": e.aliases,
                    "keywords": e.injection.keywords,
                }
                for i, e in limited
            ],
            "total": len(limited),
            "available_total": len(found),
        }

    def select_entry(args: SelectEntryArgs, ctx: ToolContext) -> dict:
        if not 0 <= args.index < len(entries):
            return failed(f"Entry index {args.index} out of range (0-{len(entries) - 1})")
        if args.index not in selected:
            selected.append(args.index)
        entry = entries[args.index]
        return {
            "success": True,
            "selected": {"index": args.index, "name": entry.name, "type": entry.type},
            "reason": args.reason,
        }

    def finish_retrieval(args: FinishRetrievalArgs, ctx: ToolContext) -> dict:
        return {"completed": True, **args.model_dump()}

    return [
        Tool("search_entries", "Search lorebook entries by text or type.", search_entries, SearchEntriesArgs),
        Tool("select_entry", "Include a lorebook entry in the narrative context.", select_entry, SelectEntryArgs),
        Tool(
            FINISH_RETRIEVAL,
            "Call when done. Explain the selection and summarize what the chapter queries revealed.",
            finish_retrieval, FinishRetrievalArgs,
        ),
    ]


class AgenticRetrievalService:
    def __init__(self, llm: LLM, memory: MemoryService | None = None, max_iterations: int = 30) -> None:
        self._llm = llm
        self._memory = memory or MemoryService(llm)
        self.max_iterations = max_iterations

    async def run(
        self,
        *,
        user_input: str,
        recent: list[StoryEntry],
        chapters: list[Chapter],
        lorebook_entries: list[LorebookEntry],
        entries: list[StoryEntry],
        signal: AbortSignal | None = None,
    ) -> AgenticRetrievalResult:
        """Raises AbortError when cancelled; other failures end the run early."""
        chapters = sorted(chapters, key=lambda c: c.number)
        usable = [e for e in lorebook_entries if e.injection.mode != "never"]
        selected: list[int] = []

        async def ask(chapter: Chapter, question: str, sig: AbortSignal | None) -> str:
            return await self._memory.answer_chapter_question(
                chapter, chapter_entries(chapter, entries), question, signal=sig,
            )

        registry = ToolRegistry.of(chapter_tools(chapters, ask), _retrieval_tools(usable, selected))
        loop = AgentLoop(
            self._llm,
            registry,
            stop_on_terminal_tool(FINISH_RETRIEVAL, self.max_iterations),
            max_iterations=self.max_iterations,
            stage="agentic_retrieval",
        )
        prompt = render_prompt(AGENTIC_RETRIEVAL_PROMPT, {
            "user_input": user_input,
            "recent": [{"type": e.type, "content": e.content} for e in recent],
            "chapter_count": len(chapters),
            "entry_count": len(usable),
        })
        run = await loop.run(AGENTIC_RETRIEVAL_SYSTEM, prompt, signal=signal)
        if run.stop_reason == "aborted":
            raise AbortError("agentic retrieval aborted")

        finished = run.results_for(FINISH_RETRIEVAL)
        final = finished[-1] if finished else {}
        logger.info(
            "Agentic retrieval selected %d entries in %d steps (%s)",
            len(selected), len(run.steps), run.stop_reason,
        )
        return AgenticRetrievalResult(
            selected=[usable[i] for i in selected],
            synthesis=final.get("synthesis"),
            chapter_summary=final.get("chapter_summary"),
            confidence=final.get("confidence"),
            additional_context=final.get("additional_context"),
            stop_reason=run.stop_reason,
        )

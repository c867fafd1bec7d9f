"""Read-only story tools (chapters, recent entries) and the lore-management terminal tool."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, Field

from story_engine.agents.pending import failed
from story_engine.agents.tools import Tool, ToolContext
from story_engine.cancel import AbortError, AbortSignal
from story_engine.llm import LLMError
from story_engine.models import Chapter, StoryEntry

logger = logging.getLogger(__name__)

ChapterQuery = Callable[[Chapter, str, AbortSignal | None], Awaitable[str]]

FINISH_LORE_MANAGEMENT = "finish_lore_management"


class ListChaptersArgs(BaseModel):
    limit: int = Field(default=20, ge=1)


class ChapterNumberArgs(BaseModel):
    number: int


class QueryChapterArgs(BaseModel):
    number: int
    question: str = Field(description='A targeted question, e.g. "What happened to Mira?"')


class QueryChaptersArgs(BaseModel):
    start: int
    end: int
    question: str


class RecentStoryArgs(BaseModel):
    count: int = Field(default=10, ge=1, le=100)


class FinishLoreManagementArgs(BaseModel):
    summary: str
    entries_created: int = 0
    entries_updated: int = 0
    entries_deleted: int = 0
    entries_merged: int = 0


def chapter_brief(c: Chapter) -> dict:
    return {
        "number": c.number,
        "title": c.title,
        "summary": c.summary[:500] + ("..." if len(c.summary) > 500 else ""),
        "keywords": c.keywords,
        "characters": c.characters,
        "locations": c.locations,
        "plot_threads": c.plot_threads,
        "emotional_tone": c.emotional_tone,
    }


def chapter_tools(chapters: list[Chapter], query: ChapterQuery | None = None) -> list[Tool]:
    """list_chapters, get_chapter_summary, query_chapter and query_chapters."""
    by_number = {c.number: c for c in chapters}

    async def ask(chapter: Chapter, question: str, signal: AbortSignal | None) -> str:
        if query is None:
            return "Unable to answer - using summary only"
        try:
            return await query(chapter, question, signal)
        except AbortError:
            raise
        except (LLMError, ValueError) as e:
            logger.warning("Chapter %d query failed: %s", chapter.number, e)
            return "Unable to answer - using summary only"

    def list_chapters(args: ListChaptersArgs, ctx: ToolContext) -> dict:
        return {
            "chapters": [chapter_brief(c) for c in chapters[: args.limit]],
            "total": len(chapters),
        }

    def get_chapter_summary(args: ChapterNumberArgs, ctx: ToolContext) -> dict:
        chapter = by_number.get(args.number)
        if chapter is None:
            return failed(f"Chapter {args.number} not found")
        return {"success": True, "chapter": chapter.model_dump(exclude={"story_id", "branch_id"})}

    async def query_chapter(args: QueryChapterArgs, ctx: ToolContext) -> dict:
        chapter = by_number.get(args.number)
        if chapter is None:
            return {"found": False, "error": f"Chapter {args.number} not found"}
        answer = await ask(chapter, args.question, ctx.signal)
        return {
            "found": True,
            "chapter": {"number": chapter.number, "title": chapter.title, "summary": chapter.summary},
            "question": args.question,
            "answer": answer,
        }

    async def query_chapters(args: QueryChaptersArgs, ctx: ToolContext) -> dict:
        selected = [c for c in chapters if args.start <= c.number <= args.end]
        if not selected:
            return {"found": False, "error": f"No chapters between {args.start} and {args.end}"}
        answers = []
        for chapter in selected:
            answers.append({"number": chapter.number, "answer": await ask(chapter, args.question, ctx.signal)})
        return {"found": True, "question": args.question, "answers": answers}

    return [
        Tool("list_chapters", "List chapters with summaries, keywords and characters.", list_chapters, ListChaptersArgs),
        Tool("get_chapter_summary", "Read the full summary record of one chapter.", get_chapter_summary, ChapterNumberArgs),
        Tool(
            "query_chapter",
            "Ask a targeted question about one chapter. Do not ask for its full content.",
            query_chapter, QueryChapterArgs,
        ),
        Tool("query_chapters", "Ask the same question of every chapter in a range.", query_chapters, QueryChaptersArgs),
    ]


def recent_story_tool(entries: list[StoryEntry]) -> Tool:
    def get_recent_story(args: RecentStoryArgs, ctx: ToolContext) -> dict:
        recent = entries[-args.count:]
        return {
            "entries": [{"type": e.type, "content": e.content} for e in recent],
            "total": len(entries),
        }

    return Tool("get_recent_story", "Read the most recent story entries.", get_recent_story, RecentStoryArgs)


def finish_lore_management_tool() -> Tool:
    def finish(args: FinishLoreManagementArgs, ctx: ToolContext) -> dict:
        return {"completed": True, **args.model_dump()}

    return Tool(
        FINISH_LORE_MANAGEMENT,
        "Call when the lorebook is up to date. Summarize what you changed.",
        finish, FinishLoreManagementArgs,
    )

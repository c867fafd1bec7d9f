"""Timeline fill: answer a few targeted questions about earlier chapters.

The model first plans up to `max_queries` questions from the chapter
timeline and the recent story, then each question is answered against the
chapters it targets. Questions are answered concurrently.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel, Field

from story_engine.cancel import AbortSignal
from story_engine.llm import LLM, LLMError
from story_engine.memory import MemoryService, chapter_entries
from story_engine.models import Chapter, StoryEntry
from story_engine.prompts import (
    TIMELINE_QUERIES_PROMPT,
    TIMELINE_QUERIES_SYSTEM,
    PromptError,
    render_prompt,
)

logger = logging.getLogger(__name__)

NO_CHAPTERS_ANSWER = "No relevant chapters found."
FAILED_ANSWER = "Failed to retrieve information from these chapters."


class TimelineQuery(BaseModel):
    query: str
    chapters: list[int] | None = None
    start_chapter: int | None = None
    end_chapter: int | None = None

    def targets(self, chapters: list[Chapter], default_count: int = 3) -> list[Chapter]:
        if self.chapters:
            wanted = set(self.chapters)
            return [c for c in chapters if c.number in wanted]
        if self.start_chapter is not None or self.end_chapter is not None:
            lo = self.start_chapter if self.start_chapter is not None else 1
            hi = self.end_chapter if self.end_chapter is not None else max(c.number for c in chapters)
            return [c for c in chapters if lo <= c.number <= hi]
        return chapters[-default_count:]


class TimelineQueries(BaseModel):
    queries: list[TimelineQuery] = Field(default_factory=list)


class TimelineResponse(BaseModel):
    query: str
    chapters: list[int] = Field(default_factory=list)
    answer: str


class TimelineFillResult(BaseModel):
    queries: list[TimelineQuery] = Field(default_factory=list)
    responses: list[TimelineResponse] = Field(default_factory=list)

    def render(self) -> str | None:
        if not self.responses:
            return None
        lines = ["[TIMELINE CONTEXT]"]
        for r in self.responses:
            lines.append(f"Q: {r.query}")
            lines.append(f"A: {r.answer}")
        return "\n".join(lines)


class TimelineFillService:
    def __init__(self, llm: LLM, memory: MemoryService | None = None, max_queries: int = 5) -> None:
        self._llm = llm
        self._memory = memory or MemoryService(llm)
        self.max_queries = max_queries

    async def generate_queries(
        self,
        user_input: str,
        recent: list[StoryEntry],
        chapters: list[Chapter],
        *,
        signal: AbortSignal | None = None,
    ) -> list[TimelineQuery]:
        prompt = render_prompt(TIMELINE_QUERIES_PROMPT, {
            "chapters": [
                {"number": c.number, "title": c.title, "summary": c.summary[:200]} for c in chapters
            ],
            "recent": [{"type": e.type, "content": e.content} for e in recent[-10:]],
            "user_input": user_input,
            "max_queries": self.max_queries,
        })
        result = await self._llm.generate_structured(
            "timeline_queries", TimelineQueries, TIMELINE_QUERIES_SYSTEM, prompt, signal=signal,
        )
        return result.queries[: self.max_queries]

    async def answer_query(
        self,
        query: TimelineQuery,
        chapters: list[Chapter],
        entries: list[StoryEntry],
        *,
        signal: AbortSignal | None = None,
    ) -> TimelineResponse:
        targets = query.targets(chapters)
        if not targets:
            return TimelineResponse(query=query.query, answer=NO_CHAPTERS_ANSWER)

        numbers = [c.number for c in targets]
        answers = []
        try:
            for chapter in targets:
                answer = await self._memory.answer_chapter_question(
                    chapter, chapter_entries(chapter, entries), query.query, signal=signal,
                )
                answers.append(answer if len(targets) == 1 else f"Chapter {chapter.number}: {answer}")
        except (LLMError, PromptError, ValueError) as e:
            logger.warning("Timeline query %r failed: %s", query.query, e)
            return TimelineResponse(query=query.query, chapters=numbers, answer=FAILED_ANSWER)
        return TimelineResponse(query=query.query, chapters=numbers, answer="\n".join(answers))

    async def run(
        self,
        user_input: str,
        recent: list[StoryEntry],
        chapters: list[Chapter],
        entries: list[StoryEntry],
        *,
        signal: AbortSignal | None = None,
    ) -> TimelineFillResult:
        chapters = sorted(chapters, key=lambda c: c.number)
        if not chapters:
            return TimelineFillResult()
        queries = await self.generate_queries(user_input, recent, chapters, signal=signal)
        responses = await asyncio.gather(*(
            self.answer_query(q, chapters, entries, signal=signal) for q in queries
        ), return_exceptions=True)
        for outcome in responses:
            # only cancellation gets past answer_query
            if isinstance(outcome, BaseException):
                raise outcome
        logger.debug("Timeline fill answered %d queries", len(responses))
        return TimelineFillResult(queries=queries, responses=list(responses))

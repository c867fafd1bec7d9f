"""Post-generation work: chapter check, then lore management when triggered.

Runs after the narrative entry has been persisted. Model failures in either
step are logged and end that step early; they never undo the generation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import BaseModel

from story_engine.agents.pending import PendingChangeSink
from story_engine.cancel import AbortSignal
from story_engine.config import LoreManagementSettings
from story_engine.lore import LoreManagementResult, LoreManagementService
from story_engine.memory import (
    ChapterCheckInput,
    ChapterCheckResult,
    ChapterService,
    approximate_tokens,
    last_chapter_end_index,
    tokens_outside_buffer,
)
from story_engine.storage import Persistence

logger = logging.getLogger(__name__)


class PostGenerationResult(BaseModel):
    chapter_check: ChapterCheckResult
    lore_management: LoreManagementResult | None = None


async def run_post_generation(
    *,
    persistence: Persistence,
    chapters: ChapterService,
    lore: LoreManagementService | None,
    story_id: str,
    branch_id: str | None = None,
    lore_settings: LoreManagementSettings | None = None,
    on_pending_change: PendingChangeSink | None = None,
    count_tokens: Callable[[str], int] = approximate_tokens,
    signal: AbortSignal | None = None,
) -> PostGenerationResult:
    story = persistence.get_story(story_id)
    if story is None:
        raise KeyError(f"Story {story_id} not found")
    config = story.memory_config
    lore_settings = lore_settings or LoreManagementSettings()

    if not config.auto_summarize:
        logger.debug("Auto-summarize disabled for story %s", story_id)
        return PostGenerationResult(
            chapter_check=ChapterCheckResult(created=False, skip_reason="disabled"),
        )

    entries = persistence.get_entries(story_id, branch_id)
    existing = persistence.get_chapters(story_id, branch_id)
    last_end = last_chapter_end_index(entries, existing)
    outside = tokens_outside_buffer(entries, last_end, config.chapter_buffer, count_tokens)

    check = await chapters.check_and_create_chapter(
        ChapterCheckInput(
            story_id=story_id,
            branch_id=branch_id,
            entries=entries,
            last_chapter_end_index=last_end,
            tokens_outside_buffer=outside,
            memory_config=config,
        ),
        signal=signal,
    )
    if not check.lore_management_triggered or lore is None or not lore_settings.enabled:
        return PostGenerationResult(chapter_check=check)

    result = await lore.run(
        story_id=story_id,
        branch_id=branch_id,
        lorebook_entries=persistence.get_lorebook_entries(story_id, branch_id),
        entries=entries,
        chapters=persistence.get_chapters(story_id, branch_id),
        on_pending_change=on_pending_change,
        signal=signal,
    )
    return PostGenerationResult(chapter_check=check, lore_management=result)

"""Lorebook-entry retrieval.

Runs the context tiering engine over lorebook entries only, with one
addition: an entry activated on a recent turn stays in Tier 1 for a number
of turns that depends on its type, so a faction mentioned two turns ago is
not forgotten the moment the conversation moves on.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from story_engine.cancel import AbortSignal
from story_engine.config import ContextConfig
from story_engine.context import ContextBuilder, RelevantEntry
from story_engine.llm import LLM
from story_engine.models import LorebookEntry, StoryEntry, WorldState

logger = logging.getLogger(__name__)

STICKINESS_BY_TYPE: dict[str, int] = {
    "concept": 5,
    "faction": 4,
    "character": 3,
    "location": 3,
    "event": 2,
    "item": 2,
}


class ActivationTracker:
    """Remembers on which turn each entry was last injected."""

    def __init__(self) -> None:
        self.turn = 0
        self._last: dict[str, int] = {}

    def advance(self) -> int:
        self.turn += 1
        return self.turn

    def record(self, entry_ids: list[str]) -> None:
        for entry_id in entry_ids:
            self._last[entry_id] = self.turn

    def is_sticky(self, entry: LorebookEntry) -> bool:
        last = self._last.get(entry.id)
        if last is None:
            return False
        return self.turn - last <= STICKINESS_BY_TYPE.get(entry.type, 2)


class LorebookRetrievalResult(BaseModel):
    entries: list[RelevantEntry] = Field(default_factory=list)
    context_block: str | None = None


class LorebookRetriever:
    def __init__(
        self,
        llm: LLM | None = None,
        config: ContextConfig | None = None,
        tracker: ActivationTracker | None = None,
    ) -> None:
        self._builder = ContextBuilder(llm, config)
        self.tracker = tracker or ActivationTracker()

    async def retrieve(
        self,
        lorebook_entries: list[LorebookEntry],
        user_input: str,
        recent: list[StoryEntry],
        *,
        signal: AbortSignal | None = None,
    ) -> LorebookRetrievalResult:
        self.tracker.advance()
        promoted = []
        for entry in lorebook_entries:
            if entry.injection.mode not in ("always", "never") and self.tracker.is_sticky(entry):
                entry = entry.model_copy(update={
                    "injection": entry.injection.model_copy(update={"mode": "always"}),
                })
            promoted.append(entry)

        result = await self._builder.build_context(
            WorldState(lorebook_entries=promoted), user_input, recent, signal=signal,
        )
        # Only keyword or model matches start a sticky window.
        self.tracker.record([e.id for e in result.all if e.tier > 1])
        if not result.all:
            return LorebookRetrievalResult()

        by_id = {e.id: e for e in lorebook_entries}
        lines = ["[LOREBOOK]"]
        for rel in result.all:
            entry = by_id[rel.id]
            lines.append(f"• {entry.name} ({entry.type}): {entry.description}")
        logger.debug("Lorebook retrieval selected %d entries", len(result.all))
        return LorebookRetrievalResult(entries=result.all, context_block="\n".join(lines))

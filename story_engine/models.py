"""Core domain models.

Every component of the engine reads and produces these types. Pydantic is
used for validation and serialisation at every data boundary: persistence,
structured model output, tool arguments and pending changes.

World entities carry only the fields the engine reads. Everything else a
host application stores about them is its own business.
"""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, Field

EntryType = Literal["user_action", "narration", "system", "retry"]
CharacterStatus = Literal["active", "inactive", "deceased"]
BeatType = Literal["quest", "revelation", "event", "milestone"]
BeatStatus = Literal["pending", "active", "completed", "failed"]
LoreType = Literal["character", "location", "item", "faction", "concept", "event"]
InjectionMode = Literal["always", "keyword", "relevant", "never"]


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Story and entries
# ---------------------------------------------------------------------------

class MemoryConfig(BaseModel):
    """Per-story chapter and retrieval thresholds."""

    token_threshold: int = 24000
    chapter_buffer: int = 10  # newest entries never folded into a chapter
    auto_summarize: bool = True
    enable_retrieval: bool = True
    max_chapters_per_retrieval: int = 3


class StorySettings(BaseModel):
    visual_prose_mode: bool = False
    system_prompt: str | None = None


class Story(BaseModel):
    id: str
    title: str
    genre: str | None = None
    description: str | None = None
    settings: StorySettings = Field(default_factory=StorySettings)
    memory_config: MemoryConfig = Field(default_factory=MemoryConfig)


class TimeTracker(BaseModel):
    years: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0


class EntryMetadata(BaseModel):
    token_count: int | None = None
    time_start: TimeTracker | None = None
    time_end: TimeTracker | None = None


class StoryEntry(BaseModel):
    """One message in a story's ordered entry stream."""

    id: str
    story_id: str
    type: EntryType
    content: str
    position: int = 0
    branch_id: str | None = None
    metadata: EntryMetadata = Field(default_factory=EntryMetadata)
    created_at: int = Field(default_factory=_now_ms)


# ---------------------------------------------------------------------------
# World entities
# ---------------------------------------------------------------------------

class Character(BaseModel):
    id: str
    name: str
    description: str | None = None
    relationship: str | None = None
    status: CharacterStatus = "active"
    traits: list[str] = Field(default_factory=list)
    visual_descriptors: list[str] = Field(default_factory=list)
    is_protagonist: bool = False
    branch_id: str | None = None


class Location(BaseModel):
    id: str
    name: str
    description: str | None = None
    visited: bool = False
    current: bool = False
    branch_id: str | None = None


class Item(BaseModel):
    id: str
    name: str
    description: str | None = None
    quantity: int = 1
    equipped: bool = False
    location: str = "inventory"
    branch_id: str | None = None


class StoryBeat(BaseModel):
    """A quest or plot thread."""

    id: str
    title: str
    description: str | None = None
    type: BeatType = "quest"
    status: BeatStatus = "pending"
    branch_id: str | None = None


class Injection(BaseModel):
    mode: InjectionMode = "keyword"
    keywords: list[str] = Field(default_factory=list)
    priority: int = 50


class LorebookEntry(BaseModel):
    id: str
    name: str
    type: LoreType = "concept"
    description: str = ""
    aliases: list[str] = Field(default_factory=list)
    hidden_info: str | None = None
    injection: Injection = Field(default_factory=Injection)
    lore_management_blacklisted: bool = False
    branch_id: str | None = None


class Chapter(BaseModel):
    """A persisted summary of a contiguous range of story entries."""

    id: str
    story_id: str
    number: int
    title: str | None = None
    start_entry_id: str
    end_entry_id: str
    entry_count: int
    summary: str
    start_time: TimeTracker | None = None
    end_time: TimeTracker | None = None
    keywords: list[str] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    plot_threads: list[str] = Field(default_factory=list)
    emotional_tone: str | None = None
    branch_id: str | None = None
    created_at: int = Field(default_factory=_now_ms)


class WorldState(BaseModel):
    """Read-only snapshot of one story branch for a single pipeline run."""

    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)
    story_beats: list[StoryBeat] = Field(default_factory=list)
    lorebook_entries: list[LorebookEntry] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)

    @property
    def current_location(self) -> Location | None:
        return next((loc for loc in self.locations if loc.current), None)


# ---------------------------------------------------------------------------
# Vault (story-independent library edited by the vault assistant)
# ---------------------------------------------------------------------------

class VaultCharacter(BaseModel):
    id: str
    name: str
    description: str = ""
    traits: list[str] = Field(default_factory=list)
    visual_descriptors: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    favorite: bool = False


class VaultScenario(BaseModel):
    id: str
    name: str
    description: str = ""
    setting_seed: str = ""
    npcs: list[str] = Field(default_factory=list)
    primary_character_name: str = ""
    first_message: str = ""
    alternate_greetings: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    favorite: bool = False


class VaultLorebook(BaseModel):
    id: str
    name: str
    description: str = ""
    entries: list[LorebookEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pending changes
# ---------------------------------------------------------------------------

EntityType = Literal["character", "scenario", "lorebook_entry", "lorebook"]
ChangeAction = Literal["create", "update", "delete", "merge"]
ChangeStatus = Literal["pending", "approved", "rejected"]


class PendingChange(BaseModel):
    """An inert proposal produced by a mutation tool.

    Nothing in the engine applies a pending change; an approval sink decides
    whether it ever reaches persistence.
    """

    id: str
    tool_call_id: str
    entity_type: EntityType
    action: ChangeAction
    entity_id: str | None = None
    data: dict[str, Any] | None = None
    previous: dict[str, Any] | list[dict[str, Any]] | None = None
    status: ChangeStatus = "pending"
    # Index-addressed vault lorebook mutations
    lorebook_id: str | None = None
    indices: list[int] | None = None

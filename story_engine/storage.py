"""Persistence contract and the JSON file store that implements it.

The engine never writes to persistence on its own initiative except in two
places: ChapterService.add_chapter and the approval sink applying an approved
PendingChange. Everything else reads.

Directory layout of Storage:

    {base}/
      stories/
        {story_id}.json          <- Story metadata
        {story_id}/
          entries.json           <- ordered StoryEntry list
          chapters.json
          characters.json
          locations.json
          items.json
          story_beats.json
          lorebook.json          <- LorebookEntry list
      vault/
        characters.json          <- VaultCharacter list
        scenarios.json           <- VaultScenario list
        lorebooks.json           <- VaultLorebook list (entries inline)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

from story_engine.models import (
    Chapter,
    Character,
    Item,
    Location,
    LorebookEntry,
    Story,
    StoryBeat,
    StoryEntry,
    VaultCharacter,
    VaultLorebook,
    VaultScenario,
    WorldState,
)

M = TypeVar("M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Protocol: what the engine needs from a persistence engine
# ---------------------------------------------------------------------------

class Persistence(Protocol):
    def get_story(self, story_id: str) -> Story | None: ...

    def get_entries(self, story_id: str, branch_id: str | None = None) -> list[StoryEntry]: ...
    def add_entry(self, entry: StoryEntry) -> StoryEntry: ...
    def update_entry(self, story_id: str, entry_id: str, fields: dict[str, Any]) -> StoryEntry | None: ...
    def delete_entry(self, story_id: str, entry_id: str) -> bool: ...

    def get_chapters(self, story_id: str, branch_id: str | None = None) -> list[Chapter]: ...
    def get_next_chapter_number(self, story_id: str, branch_id: str | None = None) -> int: ...
    def add_chapter(self, chapter: Chapter) -> Chapter: ...

    def get_characters(self, story_id: str, branch_id: str | None = None) -> list[Character]: ...
    def save_character(self, story_id: str, character: Character) -> None: ...
    def delete_character(self, story_id: str, character_id: str) -> bool: ...
    def get_locations(self, story_id: str, branch_id: str | None = None) -> list[Location]: ...
    def save_location(self, story_id: str, location: Location) -> None: ...
    def delete_location(self, story_id: str, location_id: str) -> bool: ...
    def get_items(self, story_id: str, branch_id: str | None = None) -> list[Item]: ...
    def save_item(self, story_id: str, item: Item) -> None: ...
    def delete_item(self, story_id: str, item_id: str) -> bool: ...
    def get_story_beats(self, story_id: str, branch_id: str | None = None) -> list[StoryBeat]: ...
    def save_story_beat(self, story_id: str, beat: StoryBeat) -> None: ...
    def delete_story_beat(self, story_id: str, beat_id: str) -> bool: ...
    def get_lorebook_entries(self, story_id: str, branch_id: str | None = None) -> list[LorebookEntry]: ...
    def save_lorebook_entry(self, story_id: str, entry: LorebookEntry) -> None: ...
    def delete_lorebook_entry(self, story_id: str, entry_id: str) -> bool: ...

    def get_vault_characters(self) -> list[VaultCharacter]: ...
    def save_vault_character(self, character: VaultCharacter) -> None: ...
    def delete_vault_character(self, character_id: str) -> bool: ...
    def get_vault_scenarios(self) -> list[VaultScenario]: ...
    def save_vault_scenario(self, scenario: VaultScenario) -> None: ...
    def delete_vault_scenario(self, scenario_id: str) -> bool: ...
    def get_vault_lorebooks(self) -> list[VaultLorebook]: ...
    def save_vault_lorebook(self, lorebook: VaultLorebook) -> None: ...


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._story_root = base_path / "stories"
        self._vault_root = base_path / "vault"
        self._story_root.mkdir(parents=True, exist_ok=True)
        self._vault_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path and collection helpers
    # ------------------------------------------------------------------

    def _story_file(self, story_id: str) -> Path:
        return self._story_root / f"{story_id}.json"

    def _story_dir(self, story_id: str) -> Path:
        path = self._story_root / story_id
        path.mkdir(exist_ok=True)
        return path

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _load(self, path: Path, model: type[M]) -> list[M]:
        if not path.exists():
            return []
        return [model.model_validate(d) for d in self._read_json(path)]

    def _dump(self, path: Path, items: list[BaseModel]) -> None:
        self._write_json(path, [i.model_dump(mode="json") for i in items])

    def _upsert(self, path: Path, model: type[M], obj: M) -> None:
        """Upsert by id, keeping insertion order."""
        items = self._load(path, model)
        for i, existing in enumerate(items):
            if existing.id == obj.id:
                items[i] = obj
                break
        else:
            items.append(obj)
        self._dump(path, items)

    def _remove(self, path: Path, model: type[M], obj_id: str) -> bool:
        items = self._load(path, model)
        kept = [i for i in items if i.id != obj_id]
        if len(kept) == len(items):
            return False
        self._dump(path, kept)
        return True

    def _branch(self, path: Path, model: type[M], branch_id: str | None) -> list[M]:
        return [i for i in self._load(path, model) if i.branch_id == branch_id]

    # ------------------------------------------------------------------
    # Stories
    # ------------------------------------------------------------------

    def create_story(self, story: Story) -> Story:
        self._story_file(story.id).write_text(story.model_dump_json(indent=2))
        self._story_dir(story.id)
        return story

    def get_story(self, story_id: str) -> Story | None:
        path = self._story_file(story_id)
        if not path.exists():
            return None
        return Story.model_validate_json(path.read_text())

    def get_world_state(self, story_id: str, branch_id: str | None = None) -> WorldState:
        """Snapshot every world collection of one branch."""
        return WorldState(
            characters=self.get_characters(story_id, branch_id),
            locations=self.get_locations(story_id, branch_id),
            items=self.get_items(story_id, branch_id),
            story_beats=self.get_story_beats(story_id, branch_id),
            lorebook_entries=self.get_lorebook_entries(story_id, branch_id),
            chapters=self.get_chapters(story_id, branch_id),
        )

    # ------------------------------------------------------------------
    # Entries (insertion order preserved)
    # ------------------------------------------------------------------

    def _entries_path(self, story_id: str) -> Path:
        return self._story_dir(story_id) / "entries.json"

    def get_entries(self, story_id: str, branch_id: str | None = None) -> list[StoryEntry]:
        return self._branch(self._entries_path(story_id), StoryEntry, branch_id)

    def add_entry(self, entry: StoryEntry) -> StoryEntry:
        path = self._entries_path(entry.story_id)
        entries = self._load(path, StoryEntry)
        entry = entry.model_copy(update={"position": len(entries)})
        entries.append(entry)
        self._dump(path, entries)
        return entry

    def update_entry(self, story_id: str, entry_id: str, fields: dict[str, Any]) -> StoryEntry | None:
        path = self._entries_path(story_id)
        entries = self._load(path, StoryEntry)
        for i, e in enumerate(entries):
            if e.id == entry_id:
                entries[i] = StoryEntry.model_validate({**e.model_dump(), **fields})
                self._dump(path, entries)
                return entries[i]
        return None

    def delete_entry(self, story_id: str, entry_id: str) -> bool:
        return self._remove(self._entries_path(story_id), StoryEntry, entry_id)

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    def _chapters_path(self, story_id: str) -> Path:
        return self._story_dir(story_id) / "chapters.json"

    def get_chapters(self, story_id: str, branch_id: str | None = None) -> list[Chapter]:
        chapters = self._branch(self._chapters_path(story_id), Chapter, branch_id)
        return sorted(chapters, key=lambda c: c.number)

    def get_next_chapter_number(self, story_id: str, branch_id: str | None = None) -> int:
        return max((c.number for c in self.get_chapters(story_id, branch_id)), default=0) + 1

    def add_chapter(self, chapter: Chapter) -> Chapter:
        self._upsert(self._chapters_path(chapter.story_id), Chapter, chapter)
        return chapter

    # ------------------------------------------------------------------
    # World entities
    # ------------------------------------------------------------------

    def get_characters(self, story_id: str, branch_id: str | None = None) -> list[Character]:
        return self._branch(self._story_dir(story_id) / "characters.json", Character, branch_id)

    def save_character(self, story_id: str, character: Character) -> None:
        self._upsert(self._story_dir(story_id) / "characters.json", Character, character)

    def delete_character(self, story_id: str, character_id: str) -> bool:
        return self._remove(self._story_dir(story_id) / "characters.json", Character, character_id)

    def get_locations(self, story_id: str, branch_id: str | None = None) -> list[Location]:
        return self._branch(self._story_dir(story_id) / "locations.json", Location, branch_id)

    def save_location(self, story_id: str, location: Location) -> None:
        self._upsert(self._story_dir(story_id) / "locations.json", Location, location)

    def delete_location(self, story_id: str, location_id: str) -> bool:
        return self._remove(self._story_dir(story_id) / "locations.json", Location, location_id)

    def get_items(self, story_id: str, branch_id: str | None = None) -> list[Item]:
        return self._branch(self._story_dir(story_id) / "items.json", Item, branch_id)

    def save_item(self, story_id: str, item: Item) -> None:
        self._upsert(self._story_dir(story_id) / "items.json", Item, item)

    def delete_item(self, story_id: str, item_id: str) -> bool:
        return self._remove(self._story_dir(story_id) / "items.json", Item, item_id)

    def get_story_beats(self, story_id: str, branch_id: str | None = None) -> list[StoryBeat]:
        return self._branch(self._story_dir(story_id) / "story_beats.json", StoryBeat, branch_id)

    def save_story_beat(self, story_id: str, beat: StoryBeat) -> None:
        self._upsert(self._story_dir(story_id) / "story_beats.json", StoryBeat, beat)

    def delete_story_beat(self, story_id: str, beat_id: str) -> bool:
        return self._remove(self._story_dir(story_id) / "story_beats.json", StoryBeat, beat_id)

    def get_lorebook_entries(self, story_id: str, branch_id: str | None = None) -> list[LorebookEntry]:
        return self._branch(self._story_dir(story_id) / "lorebook.json", LorebookEntry, branch_id)

    def save_lorebook_entry(self, story_id: str, entry: LorebookEntry) -> None:
        self._upsert(self._story_dir(story_id) / "lorebook.json", LorebookEntry, entry)

    def delete_lorebook_entry(self, story_id: str, entry_id: str) -> bool:
        return self._remove(self._story_dir(story_id) / "lorebook.json", LorebookEntry, entry_id)

    # ------------------------------------------------------------------
    # Vault
    # ------------------------------------------------------------------

    def get_vault_characters(self) -> list[VaultCharacter]:
        return self._load(self._vault_root / "characters.json", VaultCharacter)

    def save_vault_character(self, character: VaultCharacter) -> None:
        self._upsert(self._vault_root / "characters.json", VaultCharacter, character)

    def delete_vault_character(self, character_id: str) -> bool:
        return self._remove(self._vault_root / "characters.json", VaultCharacter, character_id)

    def get_vault_scenarios(self) -> list[VaultScenario]:
        return self._load(self._vault_root / "scenarios.json", VaultScenario)

    def save_vault_scenario(self, scenario: VaultScenario) -> None:
        self._upsert(self._vault_root / "scenarios.json", VaultScenario, scenario)

    def delete_vault_scenario(self, scenario_id: str) -> bool:
        return self._remove(self._vault_root / "scenarios.json", VaultScenario, scenario_id)

    def get_vault_lorebooks(self) -> list[VaultLorebook]:
        return self._load(self._vault_root / "lorebooks.json", VaultLorebook)

    def save_vault_lorebook(self, lorebook: VaultLorebook) -> None:
        self._upsert(self._vault_root / "lorebooks.json", VaultLorebook, lorebook)

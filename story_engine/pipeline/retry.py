"""Retry backups: the state a failed or unwanted generation rolls back to.

The pre-generation phase captures a RetryBackupData; the caller decides
where to keep it. restore_from_backup() puts persistence back the way the
snapshot saw it and hands back the raw input so the action can be re-run.
"""

from __future__ import annotations

import copy
import logging
import time
from typing import Any

from pydantic import BaseModel, Field

from story_engine.models import (
    Character,
    Item,
    Location,
    StoryBeat,
    StoryEntry,
    TimeTracker,
)
from story_engine.storage import Persistence

logger = logging.getLogger(__name__)


class RetryBackupData(BaseModel):
    story_id: str
    branch_id: str | None = None
    entries: list[StoryEntry] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)
    story_beats: list[StoryBeat] = Field(default_factory=list)
    embedded_images: list[dict[str, Any]] = Field(default_factory=list)
    user_action_content: str
    raw_input: str
    action_type: str = "do"
    was_raw_action_choice: bool = False
    time_tracker: TimeTracker | None = None
    created_at: float = Field(default_factory=time.time)

    @classmethod
    def snapshot(cls, **fields: Any) -> RetryBackupData:
        """Build a backup from deep copies so later edits cannot leak into it."""
        return cls(**copy.deepcopy(fields))


def _sync(current_ids: set[str], keep: list, delete, save) -> None:
    keep_ids = {e.id for e in keep}
    for stale in current_ids - keep_ids:
        delete(stale)
    for entity in keep:
        save(entity)


def restore_from_backup(persistence: Persistence, backup: RetryBackupData) -> str:
    """Roll story state back to *backup*. Returns the raw user input."""
    sid, bid = backup.story_id, backup.branch_id

    current_entries = {e.id: e for e in persistence.get_entries(sid, bid)}
    backed_up = {e.id for e in backup.entries}
    for entry_id in current_entries.keys() - backed_up:
        persistence.delete_entry(sid, entry_id)
    for entry in backup.entries:
        if entry.id in current_entries:
            if current_entries[entry.id] != entry:
                persistence.update_entry(sid, entry.id, entry.model_dump(exclude={"id", "story_id"}))
        else:
            persistence.add_entry(entry)

    _sync(
        {c.id for c in persistence.get_characters(sid, bid)}, backup.characters,
        lambda i: persistence.delete_character(sid, i), lambda c: persistence.save_character(sid, c),
    )
    _sync(
        {l.id for l in persistence.get_locations(sid, bid)}, backup.locations,
        lambda i: persistence.delete_location(sid, i), lambda l: persistence.save_location(sid, l),
    )
    _sync(
        {i.id for i in persistence.get_items(sid, bid)}, backup.items,
        lambda i: persistence.delete_item(sid, i), lambda it: persistence.save_item(sid, it),
    )
    _sync(
        {b.id for b in persistence.get_story_beats(sid, bid)}, backup.story_beats,
        lambda i: persistence.delete_story_beat(sid, i), lambda b: persistence.save_story_beat(sid, b),
    )
    logger.info("Restored story %s to backup from %.0f", sid, backup.created_at)
    return backup.raw_input

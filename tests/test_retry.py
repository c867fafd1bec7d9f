"""Tests for retry backups and restoring story state from them."""

from story_engine.models import Character, Item, Location, StoryEntry
from story_engine.pipeline.retry import RetryBackupData, restore_from_backup


def _entry(i: int, content: str | None = None) -> StoryEntry:
    return StoryEntry(id=f"e{i}", story_id="story-1", type="narration", content=content or f"Entry {i}")


class TestRetryBackup:
    def test_snapshot_copies_inputs(self) -> None:
        entries = [_entry(0)]
        backup = RetryBackupData.snapshot(
            story_id="story-1", entries=entries, user_action_content="I run", raw_input="run",
        )
        entries[0].content = "edited"
        entries.append(_entry(1))
        assert [e.content for e in backup.entries] == ["Entry 0"]

    def test_restore_rolls_back(self, storage, story) -> None:
        storage.add_entry(_entry(0))
        storage.add_entry(_entry(1))
        storage.save_character(story.id, Character(id="c1", name="Mira"))
        storage.save_location(story.id, Location(id="l1", name="Harbor", current=True))
        backup = RetryBackupData.snapshot(
            story_id=story.id,
            entries=storage.get_entries(story.id),
            characters=storage.get_characters(story.id),
            locations=storage.get_locations(story.id),
            user_action_content="I sail north",
            raw_input="sail north",
        )

        storage.add_entry(_entry(2, "A storm hits."))
        storage.update_entry(story.id, "e1", {"content": "rewritten"})
        storage.save_character(story.id, Character(id="c1", name="Mira", status="inactive"))
        storage.save_character(story.id, Character(id="c2", name="Tobin"))
        storage.delete_location(story.id, "l1")
        storage.save_item(story.id, Item(id="i1", name="Rope"))

        raw = restore_from_backup(storage, backup)

        assert raw == "sail north"
        assert [(e.id, e.content) for e in storage.get_entries(story.id)] == [("e0", "Entry 0"), ("e1", "Entry 1")]
        assert [(c.id, c.status) for c in storage.get_characters(story.id)] == [("c1", "active")]
        assert [loc.id for loc in storage.get_locations(story.id)] == ["l1"]
        assert storage.get_items(story.id) == []

"""Tests for the mutation tools: lorebook (story and vault), characters, scenarios."""

import json

import pytest

from story_engine.agents.character_tools import character_tools
from story_engine.agents.lorebook_tools import story_lorebook_tools, vault_lorebook_tools
from story_engine.agents.pending import ChangeLog, WorkingSet, merge_list
from story_engine.agents.scenario_tools import scenario_tools
from story_engine.agents.tools import ToolRegistry
from story_engine.llm import ToolCall
from story_engine.models import Injection, LorebookEntry, VaultCharacter, VaultLorebook, VaultScenario


def _lore(entry_id: str, name: str, **kw) -> LorebookEntry:
    return LorebookEntry(id=entry_id, name=name, description=f"About {name}", **kw)


async def _run(registry: ToolRegistry, name: str, /, **args) -> dict:
    return await registry.execute(ToolCall(id=f"tc-{name}", name=name, arguments=json.dumps(args)))


@pytest.fixture
def sink() -> list:
    return []


# ---------------------------------------------------------------------------
# merge_list
# ---------------------------------------------------------------------------

class TestMergeList:
    def test_replace_wins_over_add_and_remove(self) -> None:
        assert merge_list(["a", "b"], replace=["x"], add=["y"], remove=["a"]) == ["x"]

    def test_remove_is_case_insensitive(self) -> None:
        assert merge_list(["Sword", "Shield"], remove=["sword"]) == ["Shield"]

    def test_add_skips_duplicates(self) -> None:
        assert merge_list(["a"], add=["a", "b", "b"]) == ["a", "b"]

    def test_nothing_given_keeps_current(self) -> None:
        assert merge_list(["a"]) == ["a"]


# ---------------------------------------------------------------------------
# Story lorebook tools
# ---------------------------------------------------------------------------

class TestStoryLorebookTools:
    @pytest.fixture
    def working(self) -> WorkingSet:
        return WorkingSet([
            _lore("l1", "Mira", type="character", injection=Injection(keywords=["sailor", "captain"])),
            _lore("l2", "Harbor", type="location"),
        ])

    @pytest.fixture
    def registry(self, working, sink) -> ToolRegistry:
        return ToolRegistry.of(story_lorebook_tools(working, ChangeLog(sink.append)))

    async def test_list_filters_by_type(self, registry) -> None:
        result = await _run(registry, "list_entries", type="location")
        assert [e["name"] for e in result["entries"]] == ["Harbor"]

    async def test_get_missing_entry(self, registry) -> None:
        result = await _run(registry, "get_entry", entry_id="zzz")
        assert result == {"success": False, "error": 'Entry with ID "zzz" not found'}

    async def test_create_proposes_exactly_one_change(self, registry, sink) -> None:
        result = await _run(registry, "create_entry", name="Compass", type="item", description="Broken")

        assert result["success"] is True
        assert result["message"].endswith("Awaiting approval.")
        assert len(sink) == 1
        change = sink[0]
        assert (change.entity_type, change.action, change.status) == ("lorebook_entry", "create", "pending")
        assert change.tool_call_id == "tc-create_entry"
        assert result["pending_change"]["id"] == change.id

    async def test_created_entry_visible_to_later_reads(self, registry) -> None:
        await _run(registry, "create_entry", name="Compass", type="item", description="Broken")
        listed = await _run(registry, "list_entries")
        assert [e["name"] for e in listed["entries"]] == ["Mira", "Harbor", "Compass"]

    async def test_update_replace_wins_over_add(self, registry, sink) -> None:
        await _run(registry, "update_entry", entry_id="l1", keywords=["pilot"], add_keywords=["ignored"])
        assert sink[0].data["injection"]["keywords"] == ["pilot"]
        assert sink[0].previous["injection"]["keywords"] == ["sailor", "captain"]

    async def test_update_incremental(self, registry, sink) -> None:
        await _run(
            registry, "update_entry", entry_id="l1",
            add_keywords=["pilot"], remove_keywords=["SAILOR"], add_aliases=["the Captain"],
        )
        assert sink[0].data["injection"]["keywords"] == ["captain", "pilot"]
        assert sink[0].data["aliases"] == ["the Captain"]
        assert sink[0].data["name"] == "Mira"

    async def test_invalid_type_rejected_without_change(self, registry, sink) -> None:
        result = await _run(registry, "create_entry", name="X", type="spaceship", description="")
        assert result["error"].startswith("Invalid arguments for create_entry:")
        assert sink == []

    async def test_delete(self, registry, sink) -> None:
        await _run(registry, "delete_entry", entry_id="l2")
        assert (sink[0].action, sink[0].entity_id) == ("delete", "l2")
        assert (await _run(registry, "get_entry", entry_id="l2"))["success"] is False

    async def test_merge(self, registry, sink) -> None:
        result = await _run(
            registry, "merge_entries", entry_ids=["l1", "l2"],
            name="Mira of the Harbor", type="character", description="Both",
        )
        assert result["success"] is True
        change = sink[0]
        assert change.action == "merge"
        assert [p["id"] for p in change.previous] == ["l1", "l2"]
        listed = await _run(registry, "list_entries")
        assert [e["name"] for e in listed["entries"]] == ["Mira of the Harbor"]

    async def test_merge_needs_two(self, registry, sink) -> None:
        result = await _run(registry, "merge_entries", entry_ids=["l1"], name="x", type="concept", description="")
        assert result == {"success": False, "error": "At least 2 entries are required to merge"}
        assert sink == []

    async def test_working_set_is_a_copy(self, sink) -> None:
        original = [_lore("l1", "Mira")]
        registry = ToolRegistry.of(story_lorebook_tools(WorkingSet(original), ChangeLog(sink.append)))
        await _run(registry, "update_entry", entry_id="l1", name="Renamed")
        assert original[0].name == "Mira"


# ---------------------------------------------------------------------------
# Vault lorebook tools
# ---------------------------------------------------------------------------

class TestVaultLorebookTools:
    @pytest.fixture
    def registry(self, sink) -> ToolRegistry:
        book = VaultLorebook(id="b1", name="Sea Lore", entries=[
            _lore("v0", "Kraken", type="character"),
            _lore("v1", "Reef", type="location"),
            _lore("v2", "Storm", type="event"),
        ])
        return ToolRegistry.of(vault_lorebook_tools(WorkingSet([book]), ChangeLog(sink.append)))

    async def test_summary_counts_by_type(self, registry) -> None:
        result = await _run(registry, "read_lorebook_summary", lorebook_id="b1")
        assert result["entries_by_type"] == {"character": 1, "location": 1, "event": 1}

    async def test_out_of_range(self, registry, sink) -> None:
        result = await _run(registry, "read_entry", lorebook_id="b1", index=3)
        assert result == {"success": False, "error": "Entry index 3 out of range (0-2)"}
        result = await _run(registry, "delete_entry", lorebook_id="b1", index=-1)
        assert result["error"] == "Entry index -1 out of range (0-2)"
        assert sink == []

    async def test_unknown_lorebook(self, registry) -> None:
        result = await _run(registry, "list_entries", lorebook_id="nope")
        assert result["error"] == 'Lorebook with ID "nope" not found'

    async def test_indices_stay_stable_after_delete(self, registry, sink) -> None:
        await _run(registry, "delete_entry", lorebook_id="b1", index=0)
        result = await _run(registry, "read_entry", lorebook_id="b1", index=2)
        assert result["entry"]["name"] == "Storm"
        assert (sink[0].lorebook_id, sink[0].indices) == ("b1", [0])

    async def test_merge_records_indices(self, registry, sink) -> None:
        await _run(
            registry, "merge_entries", lorebook_id="b1", indices=[2, 0],
            name="Kraken Storm", type="event", description="The kraken brings storms",
        )
        assert sink[0].indices == [2, 0]
        assert [p["name"] for p in sink[0].previous] == ["Storm", "Kraken"]

    async def test_merge_rejects_duplicates(self, registry) -> None:
        result = await _run(
            registry, "merge_entries", lorebook_id="b1", indices=[1, 1],
            name="x", type="concept", description="",
        )
        assert result["error"] == "Duplicate indices in merge"

    async def test_create_lorebook(self, registry, sink) -> None:
        await _run(registry, "create_lorebook", name="Desert Lore")
        assert (sink[0].entity_type, sink[0].action, sink[0].data["name"]) == ("lorebook", "create", "Desert Lore")


# ---------------------------------------------------------------------------
# Characters and scenarios
# ---------------------------------------------------------------------------

class TestCharacterTools:
    @pytest.fixture
    def registry(self, sink) -> ToolRegistry:
        characters = WorkingSet([
            VaultCharacter(id="c1", name="Mira", traits=["brave", "stubborn"], tags=["crew"], favorite=True),
            VaultCharacter(id="c2", name="Tobin", tags=["crew", "villain"]),
        ])
        return ToolRegistry.of(character_tools(characters, ChangeLog(sink.append)))

    async def test_list_filters(self, registry) -> None:
        by_tag = await _run(registry, "list_characters", tags=["VILLAIN"])
        assert [c["name"] for c in by_tag["characters"]] == ["Tobin"]
        favorites = await _run(registry, "list_characters", favorites_only=True)
        assert [c["name"] for c in favorites["characters"]] == ["Mira"]

    async def test_update_traits(self, registry, sink) -> None:
        await _run(registry, "update_character", character_id="c1", add_traits=["loyal"], remove_traits=["Stubborn"])
        assert sink[0].data["traits"] == ["brave", "loyal"]
        assert sink[0].data["tags"] == ["crew"]

    async def test_replace_traits_wins(self, registry, sink) -> None:
        await _run(registry, "update_character", character_id="c1", replace_traits=["calm"], add_traits=["loyal"])
        assert sink[0].data["traits"] == ["calm"]

    async def test_missing_character(self, registry, sink) -> None:
        result = await _run(registry, "delete_character", character_id="c9")
        assert result["error"] == 'Character with ID "c9" not found'
        assert sink == []


class TestScenarioTools:
    @pytest.fixture
    def registry(self, sink) -> ToolRegistry:
        scenarios = WorkingSet([VaultScenario(id="s1", name="Harbor Heist", alternate_greetings=["Ahoy"])])
        return ToolRegistry.of(scenario_tools(scenarios, ChangeLog(sink.append)))

    async def test_create_then_read(self, registry, sink) -> None:
        created = await _run(registry, "create_scenario", name="Desert Run", tags=["desert"])
        new_id = created["pending_change"]["entity_id"]
        read = await _run(registry, "read_scenario", scenario_id=new_id)
        assert read["scenario"]["name"] == "Desert Run"
        assert len(sink) == 1

    async def test_update_greetings(self, registry, sink) -> None:
        await _run(registry, "update_scenario", scenario_id="s1", add_alternate_greetings=["Welcome aboard"])
        assert sink[0].data["alternate_greetings"] == ["Ahoy", "Welcome aboard"]

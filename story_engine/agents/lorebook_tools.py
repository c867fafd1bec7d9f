"""Lorebook tools.

Two families share argument shapes:

  story tools   entries of one story, addressed by stable entry id. Used by
                lore management and the MCP server. Proposed changes are
                applied to the run's WorkingSet so later reads see them.
  vault tools   entries inside a vault lorebook, addressed by position. The
                snapshot is never edited during a run, so indices given to
                the model stay valid for every later call.
"""

from __future__ import annotations

import uuid

from pydantic import BaseModel, Field

from story_engine.agents.pending import ChangeLog, WorkingSet, accepted, failed, merge_list
from story_engine.agents.tools import NoArgs, Tool, ToolContext
from story_engine.models import (
    Injection,
    InjectionMode,
    LorebookEntry,
    LoreType,
    VaultLorebook,
)


def _short(text: str, limit: int = 200) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def entry_summary(entry: LorebookEntry, **extra) -> dict:
    return {
        **extra,
        "id": entry.id,
        "name": entry.name,
        "type": entry.type,
        "description": _short(entry.description),
        "keywords": entry.injection.keywords[:5],
        "aliases": entry.aliases,
        "injection_mode": entry.injection.mode,
    }


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------

class ListEntriesArgs(BaseModel):
    type: LoreType | None = Field(default=None, description="Only list entries of this type")


class EntryFields(BaseModel):
    name: str
    type: LoreType
    description: str
    keywords: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
    injection_mode: InjectionMode = "keyword"
    priority: int = 50
    hidden_info: str | None = None

    def to_entry(self, entry_id: str, branch_id: str | None = None) -> LorebookEntry:
        return LorebookEntry(
            id=entry_id,
            branch_id=branch_id,
            name=self.name,
            type=self.type,
            description=self.description,
            aliases=self.aliases,
            hidden_info=self.hidden_info,
            injection=Injection(
                mode=self.injection_mode, keywords=self.keywords, priority=self.priority,
            ),
        )


class EntryUpdates(BaseModel):
    name: str | None = None
    type: LoreType | None = None
    description: str | None = None
    hidden_info: str | None = None
    injection_mode: InjectionMode | None = None
    priority: int | None = None
    keywords: list[str] | None = Field(default=None, description="Replace all keywords")
    add_keywords: list[str] | None = None
    remove_keywords: list[str] | None = None
    aliases: list[str] | None = Field(default=None, description="Replace all aliases")
    add_aliases: list[str] | None = None
    remove_aliases: list[str] | None = None

    def apply(self, entry: LorebookEntry) -> LorebookEntry:
        scalars = {
            k: v for k, v in {
                "name": self.name,
                "type": self.type,
                "description": self.description,
                "hidden_info": self.hidden_info,
            }.items() if v is not None
        }
        injection = entry.injection.model_copy(update={
            k: v for k, v in {
                "mode": self.injection_mode,
                "priority": self.priority,
            }.items() if v is not None
        })
        injection.keywords = merge_list(
            entry.injection.keywords, self.keywords, self.add_keywords, self.remove_keywords,
        )
        aliases = merge_list(entry.aliases, self.aliases, self.add_aliases, self.remove_aliases)
        return entry.model_copy(update={**scalars, "injection": injection, "aliases": aliases})


class EntryIdArgs(BaseModel):
    entry_id: str


class UpdateEntryArgs(EntryUpdates):
    entry_id: str


class MergeEntriesArgs(EntryFields):
    entry_ids: list[str] = Field(description="Ids of the entries to merge (at least 2)")


# ---------------------------------------------------------------------------
# Story tools (by id)
# ---------------------------------------------------------------------------

def story_lorebook_tools(
    working: WorkingSet[LorebookEntry], changes: ChangeLog, branch_id: str | None = None,
) -> list[Tool]:
    """Tools over one story branch; created and merged entries belong to *branch_id*."""

    def not_found(entry_id: str) -> dict:
        return failed(f'Entry with ID "{entry_id}" not found')

    def list_entries(args: ListEntriesArgs, ctx: ToolContext) -> dict:
        entries = [e for e in working.all() if args.type is None or e.type == args.type]
        return {"entries": [entry_summary(e) for e in entries], "total": len(entries)}

    def get_entry(args: EntryIdArgs, ctx: ToolContext) -> dict:
        entry = working.get(args.entry_id)
        if entry is None:
            return not_found(args.entry_id)
        return {"success": True, "entry": entry.model_dump()}

    def create_entry(args: EntryFields, ctx: ToolContext) -> dict:
        entry = args.to_entry(str(uuid.uuid4()), branch_id)
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook_entry", action="create",
            entity_id=entry.id, data=entry.model_dump(),
        )
        working.add(entry)
        return accepted(change, f"Proposed new entry '{entry.name}'.")

    def update_entry(args: UpdateEntryArgs, ctx: ToolContext) -> dict:
        entry = working.get(args.entry_id)
        if entry is None:
            return not_found(args.entry_id)
        updated = args.apply(entry)
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook_entry", action="update",
            entity_id=entry.id, data=updated.model_dump(), previous=entry.model_dump(),
        )
        working.replace(updated)
        return accepted(change, f"Proposed update to '{entry.name}'.")

    def delete_entry(args: EntryIdArgs, ctx: ToolContext) -> dict:
        entry = working.get(args.entry_id)
        if entry is None:
            return not_found(args.entry_id)
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook_entry", action="delete",
            entity_id=entry.id, previous=entry.model_dump(),
        )
        working.remove(entry.id)
        return accepted(change, f"Proposed deletion of '{entry.name}'.")

    def merge_entries(args: MergeEntriesArgs, ctx: ToolContext) -> dict:
        if len(args.entry_ids) < 2:
            return failed("At least 2 entries are required to merge")
        if len(set(args.entry_ids)) != len(args.entry_ids):
            return failed("Duplicate entry ids in merge")
        sources = []
        for entry_id in args.entry_ids:
            entry = working.get(entry_id)
            if entry is None:
                return not_found(entry_id)
            sources.append(entry)
        merged = args.to_entry(str(uuid.uuid4()), branch_id)
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook_entry", action="merge",
            entity_id=merged.id, data=merged.model_dump(),
            previous=[s.model_dump() for s in sources],
        )
        for s in sources:
            working.remove(s.id)
        working.add(merged)
        return accepted(change, f"Proposed merging {len(sources)} entries into '{merged.name}'.")

    return [
        Tool("list_entries", "List lorebook entries with short descriptions.", list_entries, ListEntriesArgs),
        Tool("get_entry", "Read one lorebook entry in full.", get_entry, EntryIdArgs),
        Tool("create_entry", "Propose a new lorebook entry.", create_entry, EntryFields),
        Tool(
            "update_entry",
            "Propose changes to an entry. List fields replace the whole list; "
            "add_*/remove_* edit it instead and are ignored when the full list is given.",
            update_entry, UpdateEntryArgs,
        ),
        Tool("delete_entry", "Propose deleting an entry.", delete_entry, EntryIdArgs),
        Tool("merge_entries", "Propose merging two or more entries into a new one.", merge_entries, MergeEntriesArgs),
    ]


# ---------------------------------------------------------------------------
# Vault tools (by index within a lorebook)
# ---------------------------------------------------------------------------

class LorebookIdArgs(BaseModel):
    lorebook_id: str


class CreateLorebookArgs(BaseModel):
    name: str
    description: str = ""


class VaultListEntriesArgs(ListEntriesArgs):
    lorebook_id: str


class VaultEntryArgs(BaseModel):
    lorebook_id: str
    index: int


class VaultCreateEntryArgs(EntryFields):
    lorebook_id: str


class VaultUpdateEntryArgs(EntryUpdates):
    lorebook_id: str
    index: int


class VaultMergeEntriesArgs(EntryFields):
    lorebook_id: str
    indices: list[int] = Field(description="Positions of the entries to merge (at least 2)")


def vault_lorebook_tools(lorebooks: WorkingSet[VaultLorebook], changes: ChangeLog) -> list[Tool]:
    def lookup(lorebook_id: str) -> VaultLorebook | None:
        return lorebooks.get(lorebook_id)

    def out_of_range(index: int, book: VaultLorebook) -> dict | None:
        if 0 <= index < len(book.entries):
            return None
        return failed(f"Entry index {index} out of range (0-{len(book.entries) - 1})")

    def missing(lorebook_id: str) -> dict:
        return failed(f'Lorebook with ID "{lorebook_id}" not found')

    def list_lorebooks(args: NoArgs, ctx: ToolContext) -> dict:
        return {"lorebooks": [
            {"id": b.id, "name": b.name, "description": _short(b.description), "entry_count": len(b.entries)}
            for b in lorebooks.all()
        ]}

    def read_lorebook_summary(args: LorebookIdArgs, ctx: ToolContext) -> dict:
        book = lookup(args.lorebook_id)
        if book is None:
            return missing(args.lorebook_id)
        counts: dict[str, int] = {}
        for e in book.entries:
            counts[e.type] = counts.get(e.type, 0) + 1
        return {
            "id": book.id, "name": book.name, "description": book.description,
            "entry_count": len(book.entries), "entries_by_type": counts,
        }

    def create_lorebook(args: CreateLorebookArgs, ctx: ToolContext) -> dict:
        book = VaultLorebook(id=str(uuid.uuid4()), name=args.name, description=args.description)
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook", action="create",
            entity_id=book.id, data=book.model_dump(),
        )
        return accepted(change, f"Proposed new lorebook '{book.name}'.")

    def list_entries(args: VaultListEntriesArgs, ctx: ToolContext) -> dict:
        book = lookup(args.lorebook_id)
        if book is None:
            return missing(args.lorebook_id)
        listed = [
            entry_summary(e, index=i) for i, e in enumerate(book.entries)
            if args.type is None or e.type == args.type
        ]
        return {"entries": listed, "total": len(listed)}

    def read_entry(args: VaultEntryArgs, ctx: ToolContext) -> dict:
        book = lookup(args.lorebook_id)
        if book is None:
            return missing(args.lorebook_id)
        if (err := out_of_range(args.index, book)) is not None:
            return err
        return {"success": True, "index": args.index, "entry": book.entries[args.index].model_dump()}

    def create_entry(args: VaultCreateEntryArgs, ctx: ToolContext) -> dict:
        book = lookup(args.lorebook_id)
        if book is None:
            return missing(args.lorebook_id)
        entry = args.to_entry(str(uuid.uuid4()))
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook_entry", action="create",
            entity_id=entry.id, data=entry.model_dump(), lorebook_id=book.id,
        )
        return accepted(change, f"Proposed new entry '{entry.name}' in '{book.name}'.")

    def update_entry(args: VaultUpdateEntryArgs, ctx: ToolContext) -> dict:
        book = lookup(args.lorebook_id)
        if book is None:
            return missing(args.lorebook_id)
        if (err := out_of_range(args.index, book)) is not None:
            return err
        entry = book.entries[args.index]
        updated = args.apply(entry)
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook_entry", action="update",
            entity_id=entry.id, data=updated.model_dump(), previous=entry.model_dump(),
            lorebook_id=book.id, indices=[args.index],
        )
        return accepted(change, f"Proposed update to '{entry.name}'.")

    def delete_entry(args: VaultEntryArgs, ctx: ToolContext) -> dict:
        book = lookup(args.lorebook_id)
        if book is None:
            return missing(args.lorebook_id)
        if (err := out_of_range(args.index, book)) is not None:
            return err
        entry = book.entries[args.index]
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook_entry", action="delete",
            entity_id=entry.id, previous=entry.model_dump(),
            lorebook_id=book.id, indices=[args.index],
        )
        return accepted(change, f"Proposed deletion of '{entry.name}'.")

    def merge_entries(args: VaultMergeEntriesArgs, ctx: ToolContext) -> dict:
        book = lookup(args.lorebook_id)
        if book is None:
            return missing(args.lorebook_id)
        if len(args.indices) < 2:
            return failed("At least 2 entries are required to merge")
        if len(set(args.indices)) != len(args.indices):
            return failed("Duplicate indices in merge")
        for i in args.indices:
            if (err := out_of_range(i, book)) is not None:
                return err
        merged = args.to_entry(str(uuid.uuid4()))
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="lorebook_entry", action="merge",
            entity_id=merged.id, data=merged.model_dump(),
            previous=[book.entries[i].model_dump() for i in args.indices],
            lorebook_id=book.id, indices=list(args.indices),
        )
        return accepted(change, f"Proposed merging {len(args.indices)} entries into '{merged.name}'.")

    return [
        Tool("list_lorebooks", "List all lorebooks in the vault.", list_lorebooks),
        Tool("read_lorebook_summary", "Describe a lorebook and count its entries by type.", read_lorebook_summary, LorebookIdArgs),
        Tool("create_lorebook", "Propose a new, empty lorebook.", create_lorebook, CreateLorebookArgs),
        Tool("list_entries", "List the entries of a lorebook with their positions.", list_entries, VaultListEntriesArgs),
        Tool("read_entry", "Read the entry at a position in a lorebook.", read_entry, VaultEntryArgs),
        Tool("create_entry", "Propose a new entry in a lorebook.", create_entry, VaultCreateEntryArgs),
        Tool("update_entry", "Propose changes to the entry at a position.", update_entry, VaultUpdateEntryArgs),
        Tool("delete_entry", "Propose deleting the entry at a position.", delete_entry, VaultEntryArgs),
        Tool("merge_entries", "Propose merging entries at two or more positions.", merge_entries, VaultMergeEntriesArgs),
    ]

"""Vault character tools for the vault assistant."""

from __future__ import annotations

import uuid

from pydantic import BaseModel, Field

from story_engine.agents.pending import ChangeLog, WorkingSet, accepted, failed, merge_list
from story_engine.agents.tools import Tool, ToolContext
from story_engine.models import VaultCharacter


class ListCharactersArgs(BaseModel):
    name_search: str | None = None
    tags: list[str] | None = Field(default=None, description="Only characters carrying all of these tags")
    favorites_only: bool = False


class CharacterIdArgs(BaseModel):
    character_id: str


class CreateCharacterArgs(BaseModel):
    name: str
    description: str = ""
    traits: list[str] = Field(default_factory=list)
    visual_descriptors: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class UpdateCharacterArgs(BaseModel):
    character_id: str
    name: str | None = None
    description: str | None = None
    visual_descriptors: list[str] | None = None
    favorite: bool | None = None
    replace_traits: list[str] | None = None
    add_traits: list[str] | None = None
    remove_traits: list[str] | None = None
    replace_tags: list[str] | None = None
    add_tags: list[str] | None = None
    remove_tags: list[str] | None = None


def _brief(c: VaultCharacter) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "description": c.description[:200] + ("..." if len(c.description) > 200 else ""),
        "tags": c.tags,
        "favorite": c.favorite,
    }


def character_tools(characters: WorkingSet[VaultCharacter], changes: ChangeLog) -> list[Tool]:
    def not_found(character_id: str) -> dict:
        return failed(f'Character with ID "{character_id}" not found')

    def list_characters(args: ListCharactersArgs, ctx: ToolContext) -> dict:
        found = characters.all()
        if args.name_search:
            needle = args.name_search.lower()
            found = [c for c in found if needle in c.name.lower()]
        if args.tags:
            wanted = {t.lower() for t in args.tags}
            found = [c for c in found if wanted <= {t.lower() for t in c.tags}]
        if args.favorites_only:
            found = [c for c in found if c.favorite]
        return {"characters": [_brief(c) for c in found], "total": len(found)}

    def read_character(args: CharacterIdArgs, ctx: ToolContext) -> dict:
        character = characters.get(args.character_id)
        if character is None:
            return not_found(args.character_id)
        return {"success": True, "character": character.model_dump()}

    def create_character(args: CreateCharacterArgs, ctx: ToolContext) -> dict:
        character = VaultCharacter(id=str(uuid.uuid4()), **args.model_dump())
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="character", action="create",
            entity_id=character.id, data=character.model_dump(),
        )
        characters.add(character)
        return accepted(change, f"Proposed new character '{character.name}'.")

    def update_character(args: UpdateCharacterArgs, ctx: ToolContext) -> dict:
        character = characters.get(args.character_id)
        if character is None:
            return not_found(args.character_id)
        scalars = args.model_dump(
            include={"name", "description", "visual_descriptors", "favorite"}, exclude_none=True,
        )
        updated = character.model_copy(update={
            **scalars,
            "traits": merge_list(character.traits, args.replace_traits, args.add_traits, args.remove_traits),
            "tags": merge_list(character.tags, args.replace_tags, args.add_tags, args.remove_tags),
        })
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="character", action="update",
            entity_id=character.id, data=updated.model_dump(), previous=character.model_dump(),
        )
        characters.replace(updated)
        return accepted(change, f"Proposed update to '{character.name}'.")

    def delete_character(args: CharacterIdArgs, ctx: ToolContext) -> dict:
        character = characters.get(args.character_id)
        if character is None:
            return not_found(args.character_id)
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="character", action="delete",
            entity_id=character.id, previous=character.model_dump(),
        )
        characters.remove(character.id)
        return accepted(change, f"Proposed deletion of '{character.name}'.")

    return [
        Tool("list_characters", "Search vault characters by name, tags or favorite flag.", list_characters, ListCharactersArgs),
        Tool("read_character", "Read one vault character in full.", read_character, CharacterIdArgs),
        Tool("create_character", "Propose a new vault character.", create_character, CreateCharacterArgs),
        Tool(
            "update_character",
            "Propose changes to a character. replace_* lists win over add_*/remove_*.",
            update_character, UpdateCharacterArgs,
        ),
        Tool("delete_character", "Propose deleting a vault character.", delete_character, CharacterIdArgs),
    ]

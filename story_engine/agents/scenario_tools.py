"""Vault scenario tools for the vault assistant."""

from __future__ import annotations

import uuid

from pydantic import BaseModel, Field

from story_engine.agents.pending import ChangeLog, WorkingSet, accepted, failed, merge_list
from story_engine.agents.tools import Tool, ToolContext
from story_engine.models import VaultScenario


class ListScenariosArgs(BaseModel):
    name_search: str | None = None
    tags: list[str] | None = None
    favorites_only: bool = False


class ScenarioIdArgs(BaseModel):
    scenario_id: str


class CreateScenarioArgs(BaseModel):
    name: str
    description: str = ""
    setting_seed: str = ""
    npcs: list[str] = Field(default_factory=list)
    primary_character_name: str = ""
    first_message: str = ""
    alternate_greetings: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class UpdateScenarioArgs(BaseModel):
    scenario_id: str
    name: str | None = None
    description: str | None = None
    setting_seed: str | None = None
    npcs: list[str] | None = None
    primary_character_name: str | None = None
    first_message: str | None = None
    favorite: bool | None = None
    replace_alternate_greetings: list[str] | None = None
    add_alternate_greetings: list[str] | None = None
    remove_alternate_greetings: list[str] | None = None
    replace_tags: list[str] | None = None
    add_tags: list[str] | None = None
    remove_tags: list[str] | None = None


_SCALARS = {
    "name", "description", "setting_seed", "npcs",
    "primary_character_name", "first_message", "favorite",
}


def scenario_tools(scenarios: WorkingSet[VaultScenario], changes: ChangeLog) -> list[Tool]:
    def not_found(scenario_id: str) -> dict:
        return failed(f'Scenario with ID "{scenario_id}" not found')

    def list_scenarios(args: ListScenariosArgs, ctx: ToolContext) -> dict:
        found = scenarios.all()
        if args.name_search:
            found = [s for s in found if args.name_search.lower() in s.name.lower()]
        if args.tags:
            wanted = {t.lower() for t in args.tags}
            found = [s for s in found if wanted <= {t.lower() for t in s.tags}]
        if args.favorites_only:
            found = [s for s in found if s.favorite]
        return {
            "scenarios": [
                {"id": s.id, "name": s.name, "description": s.description[:200], "tags": s.tags}
                for s in found
            ],
            "total": len(found),
        }

    def read_scenario(args: ScenarioIdArgs, ctx: ToolContext) -> dict:
        scenario = scenarios.get(args.scenario_id)
        if scenario is None:
            return not_found(args.scenario_id)
        return {"success": True, "scenario": scenario.model_dump()}

    def create_scenario(args: CreateScenarioArgs, ctx: ToolContext) -> dict:
        scenario = VaultScenario(id=str(uuid.uuid4()), **args.model_dump())
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="scenario", action="create",
            entity_id=scenario.id, data=scenario.model_dump(),
        )
        scenarios.add(scenario)
        return accepted(change, f"Proposed new scenario '{scenario.name}'.")

    def update_scenario(args: UpdateScenarioArgs, ctx: ToolContext) -> dict:
        scenario = scenarios.get(args.scenario_id)
        if scenario is None:
            return not_found(args.scenario_id)
        updated = scenario.model_copy(update={
            **args.model_dump(include=_SCALARS, exclude_none=True),
            "alternate_greetings": merge_list(
                scenario.alternate_greetings,
                args.replace_alternate_greetings,
                args.add_alternate_greetings,
                args.remove_alternate_greetings,
            ),
            "tags": merge_list(scenario.tags, args.replace_tags, args.add_tags, args.remove_tags),
        })
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="scenario", action="update",
            entity_id=scenario.id, data=updated.model_dump(), previous=scenario.model_dump(),
        )
        scenarios.replace(updated)
        return accepted(change, f"Proposed update to '{scenario.name}'.")

    def delete_scenario(args: ScenarioIdArgs, ctx: ToolContext) -> dict:
        scenario = scenarios.get(args.scenario_id)
        if scenario is None:
            return not_found(args.scenario_id)
        change = changes.propose(
            tool_call_id=ctx.tool_call_id, entity_type="scenario", action="delete",
            entity_id=scenario.id, previous=scenario.model_dump(),
        )
        scenarios.remove(scenario.id)
        return accepted(change, f"Proposed deletion of '{scenario.name}'.")

    return [
        Tool("list_scenarios", "Search vault scenarios.", list_scenarios, ListScenariosArgs),
        Tool("read_scenario", "Read one scenario in full.", read_scenario, ScenarioIdArgs),
        Tool("create_scenario", "Propose a new scenario.", create_scenario, CreateScenarioArgs),
        Tool(
            "update_scenario",
            "Propose changes to a scenario. replace_* lists win over add_*/remove_*.",
            update_scenario, UpdateScenarioArgs,
        ),
        Tool("delete_scenario", "Propose deleting a scenario.", delete_scenario, ScenarioIdArgs),
    ]

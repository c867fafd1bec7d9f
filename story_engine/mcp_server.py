"""FastMCP server exposing a story lorebook to external agents.

Tools:
  - list_entries(type)        list entries, optionally of one type
  - get_entry(entry_id)       full entry
  - create_entry(...)         propose a new entry
  - update_entry(...)         propose edits to an entry
  - delete_entry(entry_id)    propose deleting an entry

Mutations follow the same pending-change protocol as in-process agents:
nothing is saved; each proposal lands in the review queue (get_changes()).
The lorebook is an in-memory working set replaced via set_lorebook() for
tests, or loaded from storage when run as __main__.

Usage:
    python -m story_engine.mcp_server <story_id> [branch_id]
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from mcp.server.fastmcp import FastMCP

from story_engine.agents.lorebook_tools import story_lorebook_tools
from story_engine.agents.pending import ChangeLog, PendingChangeSink, WorkingSet
from story_engine.agents.tools import ToolRegistry
from story_engine.llm import ToolCall
from story_engine.models import LorebookEntry, PendingChange

mcp = FastMCP("story-lorebook")

_changes: list[PendingChange] = []
_registry: ToolRegistry = ToolRegistry()


def set_lorebook(
    entries: list[LorebookEntry], sink: PendingChangeSink | None = None, branch_id: str | None = None,
) -> None:
    """Replace the active lorebook and clear recorded changes."""
    global _registry

    def record(change: PendingChange) -> None:
        _changes.append(change)
        if sink is not None:
            sink(change)

    _changes.clear()
    _registry = ToolRegistry.of(story_lorebook_tools(WorkingSet(entries), ChangeLog(record), branch_id))


def get_changes() -> list[PendingChange]:
    """Pending changes proposed since the last set_lorebook()."""
    return list(_changes)


async def _call(name: str, /, **arguments: Any) -> dict:
    args = {k: v for k, v in arguments.items() if v is not None}
    call = ToolCall(id=f"mcp-{uuid.uuid4()}", name=name, arguments=json.dumps(args))
    return await _registry.execute(call)


@mcp.tool()
async def list_entries(type: str | None = None) -> dict:
    """List lorebook entries, optionally filtered by type."""
    return await _call("list_entries", type=type)


@mcp.tool()
async def get_entry(entry_id: str) -> dict:
    """Return one lorebook entry by id."""
    return await _call("get_entry", entry_id=entry_id)


@mcp.tool()
async def create_entry(
    name: str,
    type: str,
    description: str,
    keywords: list[str] | None = None,
    aliases: list[str] | None = None,
    injection_mode: str | None = None,
) -> dict:
    """Propose a new lorebook entry. Returns the pending change."""
    return await _call(
        "create_entry", name=name, type=type, description=description,
        keywords=keywords, aliases=aliases, injection_mode=injection_mode,
    )


@mcp.tool()
async def update_entry(
    entry_id: str,
    name: str | None = None,
    description: str | None = None,
    keywords: list[str] | None = None,
    add_keywords: list[str] | None = None,
    remove_keywords: list[str] | None = None,
    aliases: list[str] | None = None,
) -> dict:
    """Propose edits to a lorebook entry. Returns the pending change."""
    return await _call(
        "update_entry", entry_id=entry_id, name=name, description=description,
        keywords=keywords, add_keywords=add_keywords, remove_keywords=remove_keywords,
        aliases=aliases,
    )


@mcp.tool()
async def delete_entry(entry_id: str) -> dict:
    """Propose deleting a lorebook entry. Returns the pending change."""
    return await _call("delete_entry", entry_id=entry_id)


if __name__ == "__main__":
    import sys

    from story_engine.config import load_config
    from story_engine.storage import Storage

    config = load_config()
    storage = Storage(config.data_dir)
    branch = sys.argv[2] if len(sys.argv) > 2 else None
    set_lorebook(storage.get_lorebook_entries(sys.argv[1], branch), branch_id=branch)
    mcp.run()

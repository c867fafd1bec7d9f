"""Pending-change plumbing shared by every mutation tool.

Mutation tools never write to persistence. Each successful call proposes
exactly one PendingChange through a ChangeLog, which records it and hands it
to the injected approval sink. Tools that need later calls to see their
effect also apply it to the run's WorkingSet, an in-memory copy owned by the
agent run and discarded with it.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Callable, Iterable
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from story_engine.models import ChangeAction, EntityType, PendingChange

PendingChangeSink = Callable[[PendingChange], None]

M = TypeVar("M", bound=BaseModel)


class ChangeLog:
    def __init__(self, sink: PendingChangeSink | None = None) -> None:
        self._sink = sink
        self.changes: list[PendingChange] = []

    def propose(
        self,
        *,
        tool_call_id: str,
        entity_type: EntityType,
        action: ChangeAction,
        entity_id: str | None = None,
        data: dict[str, Any] | None = None,
        previous: dict[str, Any] | list[dict[str, Any]] | None = None,
        lorebook_id: str | None = None,
        indices: list[int] | None = None,
    ) -> PendingChange:
        change = PendingChange(
            id=str(uuid.uuid4()),
            tool_call_id=tool_call_id,
            entity_type=entity_type,
            action=action,
            entity_id=entity_id,
            data=data,
            previous=previous,
            lorebook_id=lorebook_id,
            indices=indices,
        )
        self.changes.append(change)
        if self._sink is not None:
            self._sink(change)
        return change


class WorkingSet(Generic[M]):
    """Ordered, id-keyed copy of entities that tools read and optimistically edit."""

    def __init__(self, items: Iterable[M] = ()) -> None:
        self._items: list[M] = [copy.deepcopy(i) for i in items]

    def __len__(self) -> int:
        return len(self._items)

    def all(self) -> list[M]:
        return list(self._items)

    def get(self, item_id: str) -> M | None:
        return next((i for i in self._items if i.id == item_id), None)

    def add(self, item: M) -> None:
        self._items.append(item)

    def replace(self, item: M) -> None:
        for n, existing in enumerate(self._items):
            if existing.id == item.id:
                self._items[n] = item
                return
        self._items.append(item)

    def remove(self, item_id: str) -> M | None:
        item = self.get(item_id)
        if item is not None:
            self._items = [i for i in self._items if i.id != item_id]
        return item


def merge_list(
    current: list[str],
    replace: list[str] | None = None,
    add: list[str] | None = None,
    remove: list[str] | None = None,
) -> list[str]:
    """Resolve a list update. A full replacement wins over add/remove."""
    if replace is not None:
        return list(dict.fromkeys(replace))
    drop = {r.lower() for r in remove or []}
    result = [v for v in current if v.lower() not in drop]
    for v in add or []:
        if v not in result:
            result.append(v)
    return result


def accepted(change: PendingChange, message: str) -> dict[str, Any]:
    """Standard success payload for a mutation tool."""
    return {
        "success": True,
        "pending_change": change.model_dump(),
        "message": f"{message} Awaiting approval.",
    }


def failed(error: str) -> dict[str, Any]:
    return {"success": False, "error": error}

"""Review queue: the approval sink that turns pending changes into writes.

Agents only ever propose. A ReviewQueue collects their proposals (it is a
PendingChangeSink) and applies one to persistence only when approve() is
called for it. A change leaves the pending state once, to approved or
rejected; anything else is an ApprovalError.
"""

from __future__ import annotations

import logging

from story_engine.models import (
    LorebookEntry,
    PendingChange,
    VaultCharacter,
    VaultLorebook,
    VaultScenario,
)
from story_engine.storage import Persistence

logger = logging.getLogger(__name__)


class ApprovalError(Exception):
    """A change could not be approved, rejected, or applied."""


class ReviewQueue:
    def __init__(self, persistence: Persistence, story_id: str | None = None) -> None:
        self._persistence = persistence
        self.story_id = story_id
        self.changes: list[PendingChange] = []

    def __call__(self, change: PendingChange) -> None:
        self.changes.append(change)

    @property
    def pending(self) -> list[PendingChange]:
        return [c for c in self.changes if c.status == "pending"]

    def get(self, change_id: str) -> PendingChange:
        for change in self.changes:
            if change.id == change_id:
                return change
        raise ApprovalError(f"Unknown change {change_id}")

    def _take(self, change_id: str) -> PendingChange:
        change = self.get(change_id)
        if change.status != "pending":
            raise ApprovalError(f"Change {change_id} is already {change.status}")
        return change

    def approve(self, change_id: str) -> PendingChange:
        change = self._take(change_id)
        self._apply(change)
        change.status = "approved"
        logger.info("Approved %s %s %s", change.action, change.entity_type, change.entity_id)
        return change

    def reject(self, change_id: str) -> PendingChange:
        change = self._take(change_id)
        change.status = "rejected"
        logger.info("Rejected %s %s %s", change.action, change.entity_type, change.entity_id)
        return change

    # ── Applying ──────────────────────────────────────────────

    def _apply(self, change: PendingChange) -> None:
        p = self._persistence
        if change.entity_type == "character":
            if change.action == "delete":
                p.delete_vault_character(change.entity_id)
            else:
                p.save_vault_character(VaultCharacter(**change.data))
        elif change.entity_type == "scenario":
            if change.action == "delete":
                p.delete_vault_scenario(change.entity_id)
            else:
                p.save_vault_scenario(VaultScenario(**change.data))
        elif change.entity_type == "lorebook":
            p.save_vault_lorebook(VaultLorebook(**change.data))
        elif change.lorebook_id is not None:
            self._apply_vault_entry(change)
        else:
            self._apply_story_entry(change)

    def _apply_story_entry(self, change: PendingChange) -> None:
        if self.story_id is None:
            raise ApprovalError("Story lorebook changes need a story_id")
        p, sid = self._persistence, self.story_id
        if change.action == "delete":
            p.delete_lorebook_entry(sid, change.entity_id)
            return
        if change.action == "merge":
            for source in change.previous or []:
                p.delete_lorebook_entry(sid, source["id"])
        p.save_lorebook_entry(sid, LorebookEntry(**change.data))

    def _apply_vault_entry(self, change: PendingChange) -> None:
        book = next(
            (b for b in self._persistence.get_vault_lorebooks() if b.id == change.lorebook_id), None,
        )
        if book is None:
            raise ApprovalError(f"Lorebook {change.lorebook_id} not found")

        if change.action == "create":
            book.entries.append(LorebookEntry(**change.data))
        elif change.action == "update":
            book.entries[_locate(book, change.entity_id, change.indices)] = LorebookEntry(**change.data)
        elif change.action == "delete":
            del book.entries[_locate(book, change.entity_id, change.indices)]
        else:
            sources = change.previous or []
            positions = sorted(
                (_locate(book, s["id"], [i]) for s, i in zip(sources, change.indices or [])),
                reverse=True,
            )
            for pos in positions:
                del book.entries[pos]
            book.entries.append(LorebookEntry(**change.data))
        self._persistence.save_vault_lorebook(book)


def _locate(book: VaultLorebook, entry_id: str | None, indices: list[int] | None) -> int:
    """Position of an entry, trusting the proposed index only if it still matches."""
    if indices:
        i = indices[0]
        if 0 <= i < len(book.entries) and book.entries[i].id == entry_id:
            return i
    for i, e in enumerate(book.entries):
        if e.id == entry_id:
            return i
    raise ApprovalError(f"Entry {entry_id} not found in lorebook {book.id}")

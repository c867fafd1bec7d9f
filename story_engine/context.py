"""Context tiering: decide which world entities are worth the token budget.

Three tiers, evaluated in order, each entity landing in at most one:

  Tier 1  always injected: the current location, active non-protagonist
          characters, inventory items, active/pending story beats and
          lorebook entries whose injection mode is "always".
  Tier 2  name match: any other entity whose name (or, for lorebook entries,
          alias or keyword) appears in the player input plus the last few
          story entries.
  Tier 3  model selection: only when more than `llm_threshold` entities are
          still unselected. A failure here leaves Tier 3 empty.

build_context() renders the selection into a deterministic text block that
the narrative prompt embeds verbatim.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, Field

from story_engine.cancel import AbortError, AbortSignal
from story_engine.config import ContextConfig
from story_engine.llm import LLM
from story_engine.models import StoryEntry, WorldState
from story_engine.prompts import TIER3_PROMPT, TIER3_SYSTEM, render_prompt

logger = logging.getLogger(__name__)

RelevantType = Literal["character", "location", "item", "beat", "lore"]

# Fixed per-category priorities keep ordering deterministic.
TIER1_PRIORITY: dict[str, int] = {
    "location": 100,
    "character": 90,
    "beat": 80,
    "lore": 75,
    "item": 70,
}
TIER2_PRIORITY: dict[str, int] = {
    "character": 60,
    "lore": 55,
    "location": 50,
    "beat": 45,
    "item": 40,
}
TIER3_PRIORITY = 30


class RelevantEntry(BaseModel):
    """A tier-tagged view of one world entity. Never persisted."""

    type: RelevantType
    id: str
    name: str
    description: str = ""
    tier: Literal[1, 2, 3]
    priority: int
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.id)


class ContextResult(BaseModel):
    tier1: list[RelevantEntry] = Field(default_factory=list)
    tier2: list[RelevantEntry] = Field(default_factory=list)
    tier3: list[RelevantEntry] = Field(default_factory=list)
    all: list[RelevantEntry] = Field(default_factory=list)
    context_block: str = ""


class EntitySelection(BaseModel):
    selected_ids: list[str] = Field(default_factory=list)
    reasoning: str | None = None


# ---------------------------------------------------------------------------
# Name matching
# ---------------------------------------------------------------------------

def name_matches(name: str, text: str) -> bool:
    """True when *name* occurs in *text*.

    Strategies, first hit wins: case-insensitive substring, word-boundary
    match, then (for names of 3+ characters) a word that starts with the name.
    """
    name = name.strip().lower()
    text = text.lower()
    if not name:
        return False
    if name in text:
        return True
    if re.search(rf"\b{re.escape(name)}\b", text):
        return True
    if len(name) >= 3:
        return any(word.startswith(name) for word in text.split())
    return False


# ---------------------------------------------------------------------------
# Candidate extraction
# ---------------------------------------------------------------------------

def _candidates(world: WorldState) -> list[RelevantEntry]:
    """Every tierable entity, in category order, with tier/priority unset (Tier 2 defaults)."""
    out: list[RelevantEntry] = []
    for c in world.characters:
        if c.is_protagonist:
            continue
        out.append(RelevantEntry(
            type="character", id=c.id, name=c.name, description=c.description or "",
            tier=2, priority=TIER2_PRIORITY["character"],
            metadata={
                "relationship": c.relationship,
                "traits": list(c.traits),
                "visual_descriptors": list(c.visual_descriptors),
                "status": c.status,
            },
        ))
    for loc in world.locations:
        out.append(RelevantEntry(
            type="location", id=loc.id, name=loc.name, description=loc.description or "",
            tier=2, priority=TIER2_PRIORITY["location"],
            metadata={"current": loc.current, "visited": loc.visited},
        ))
    for item in world.items:
        out.append(RelevantEntry(
            type="item", id=item.id, name=item.name, description=item.description or "",
            tier=2, priority=TIER2_PRIORITY["item"],
            metadata={
                "quantity": item.quantity,
                "equipped": item.equipped,
                "inventory": item.location == "inventory",
            },
        ))
    for beat in world.story_beats:
        out.append(RelevantEntry(
            type="beat", id=beat.id, name=beat.title, description=beat.description or "",
            tier=2, priority=TIER2_PRIORITY["beat"],
            metadata={"status": beat.status, "beat_type": beat.type},
        ))
    for entry in world.lorebook_entries:
        if entry.injection.mode == "never":
            continue
        out.append(RelevantEntry(
            type="lore", id=entry.id, name=entry.name, description=entry.description,
            tier=2, priority=TIER2_PRIORITY["lore"],
            metadata={
                "lore_type": entry.type,
                "aliases": list(entry.aliases),
                "keywords": list(entry.injection.keywords),
                "mode": entry.injection.mode,
            },
        ))
    return out


def _is_tier1(e: RelevantEntry) -> bool:
    if e.type == "location":
        return bool(e.metadata.get("current"))
    if e.type == "character":
        return e.metadata.get("status") == "active"
    if e.type == "item":
        return bool(e.metadata.get("inventory"))
    if e.type == "beat":
        return e.metadata.get("status") in ("active", "pending")
    return e.metadata.get("mode") == "always"


def _match_terms(e: RelevantEntry) -> list[str]:
    terms = [e.name]
    if e.type == "lore":
        # "keyword" and "relevant" injection modes match the same way
        terms += e.metadata.get("aliases", []) + e.metadata.get("keywords", [])
    return terms


# ---------------------------------------------------------------------------
# ContextBuilder
# ---------------------------------------------------------------------------

class ContextBuilder:
    """Builds tiered context from a WorldState snapshot.

    Args:
        llm:    Model used for Tier 3. Tier 3 is skipped when None.
        config: Tier thresholds and caps.
    """

    def __init__(self, llm: LLM | None = None, config: ContextConfig | None = None) -> None:
        self._llm = llm
        self.config = config or ContextConfig()

    def tier1(self, world: WorldState) -> list[RelevantEntry]:
        cap = self.config.max_entries_per_tier
        by_type: dict[str, list[RelevantEntry]] = {}
        for e in _candidates(world):
            if _is_tier1(e):
                by_type.setdefault(e.type, []).append(
                    e.model_copy(update={"tier": 1, "priority": TIER1_PRIORITY[e.type]})
                )
        # Only one current location is ever injected
        selected = by_type.get("location", [])[:1]
        for kind in ("character", "item", "beat", "lore"):
            selected += by_type.get(kind, [])[:cap]
        return selected

    def tier2(
        self, world: WorldState, search_text: str, exclude: set[tuple[str, str]],
    ) -> list[RelevantEntry]:
        matched = [
            e for e in _candidates(world)
            if e.key not in exclude
            and any(name_matches(term, search_text) for term in _match_terms(e))
        ]
        matched.sort(key=lambda e: e.priority, reverse=True)
        return matched[: self.config.max_entries_per_tier]

    def remaining(self, world: WorldState, exclude: set[tuple[str, str]]) -> list[RelevantEntry]:
        return [e for e in _candidates(world) if e.key not in exclude]

    async def tier3(
        self,
        candidates: list[RelevantEntry],
        user_input: str,
        recent: list[StoryEntry],
        signal: AbortSignal | None = None,
    ) -> list[RelevantEntry]:
        """Ask the model to pick from *candidates*. Never raises except on abort."""
        if self._llm is None or not candidates:
            return []

        lines = [
            f"{i}. [{e.type}] {e.name}: {e.description[:100]}"
            for i, e in enumerate(candidates)
        ]
        prompt = render_prompt(TIER3_PROMPT, {
            "user_input": user_input,
            "recent": [e.content for e in recent],
            "candidates": lines,
            "max": self.config.max_entries_per_tier,
        })
        try:
            selection = await self._llm.generate_structured(
                "tier3_selection", EntitySelection, TIER3_SYSTEM, prompt, signal=signal,
            )
        except AbortError:
            raise
        except Exception as e:
            logger.warning("Tier 3 selection failed, continuing without it: %s", e)
            return []

        by_id = {c.id: c for c in candidates}
        picked: list[RelevantEntry] = []
        seen: set[tuple[str, str]] = set()
        for ref in selection.selected_ids:
            ref = str(ref).strip()
            entity = by_id.get(ref)
            if entity is None and ref.isdigit() and int(ref) < len(candidates):
                entity = candidates[int(ref)]
            if entity is None or entity.key in seen:
                continue
            seen.add(entity.key)
            picked.append(entity.model_copy(update={"tier": 3, "priority": TIER3_PRIORITY}))
        logger.debug("Tier 3 picked %d of %d candidates", len(picked), len(candidates))
        return picked[: self.config.max_entries_per_tier]

    async def build_context(
        self,
        world: WorldState,
        user_input: str,
        recent_entries: list[StoryEntry],
        *,
        retrieved_context: str | None = None,
        signal: AbortSignal | None = None,
    ) -> ContextResult:
        recent = recent_entries[-self.config.recent_entries_count:] if self.config.recent_entries_count else []
        search_text = " ".join([user_input] + [e.content for e in recent]).lower()

        tier1 = self.tier1(world)
        selected = {e.key for e in tier1}
        tier2 = self.tier2(world, search_text, selected)
        selected |= {e.key for e in tier2}

        tier3: list[RelevantEntry] = []
        remaining = self.remaining(world, selected)
        if self.config.enable_llm_selection and len(remaining) > self.config.llm_threshold:
            logger.info(
                "Tier 3 triggered: %d unselected entities exceed threshold %d",
                len(remaining), self.config.llm_threshold,
            )
            tier3 = await self.tier3(remaining, user_input, recent, signal)

        all_entries = tier1 + tier2 + tier3
        return ContextResult(
            tier1=tier1,
            tier2=tier2,
            tier3=tier3,
            all=all_entries,
            context_block=render_context_block(all_entries, retrieved_context),
        )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _character_line(e: RelevantEntry) -> str:
    line = f"• {e.name}"
    if e.metadata.get("relationship"):
        line += f" ({e.metadata['relationship']})"
    if e.description:
        line += f" - {e.description}"
    if e.metadata.get("traits"):
        line += f" [{', '.join(e.metadata['traits'])}]"
    if e.metadata.get("visual_descriptors"):
        line += f" {{Appearance: {', '.join(e.metadata['visual_descriptors'])}}}"
    return line


def _item_label(e: RelevantEntry) -> str:
    label = e.name
    if e.metadata.get("quantity", 1) > 1:
        label += f" (×{e.metadata['quantity']})"
    if e.metadata.get("equipped"):
        label += " [equipped]"
    return label


def _bullets(entries: list[RelevantEntry]) -> str:
    return "\n".join(
        f"• {e.name}: {e.description}" if e.description else f"• {e.name}" for e in entries
    )


def render_context_block(entries: list[RelevantEntry], retrieved_context: str | None = None) -> str:
    """Render selected entities in fixed section order, each entity once."""
    seen: set[tuple[str, str]] = set()
    unique: list[RelevantEntry] = []
    for e in entries:
        if e.key not in seen:
            seen.add(e.key)
            unique.append(e)

    sections: list[str] = []

    current = next(
        (e for e in unique if e.type == "location" and e.tier == 1 and e.metadata.get("current")),
        None,
    )
    if current:
        sections.append("\n".join(filter(None, ["[CURRENT LOCATION]", current.name, current.description])))

    characters = [e for e in unique if e.type == "character"]
    if characters:
        sections.append("[KNOWN CHARACTERS]\n" + "\n".join(_character_line(e) for e in characters))

    inventory = [e for e in unique if e.type == "item" and e.tier == 1]
    if inventory:
        sections.append("[INVENTORY]\n" + ", ".join(_item_label(e) for e in inventory))

    threads = [e for e in unique if e.type == "beat" and e.tier == 1]
    if threads:
        sections.append("[ACTIVE THREADS]\n" + _bullets(threads))

    locations = [e for e in unique if e.type == "location" and e is not current]
    if locations:
        sections.append("[RELEVANT LOCATIONS]\n" + _bullets(locations))

    items = [e for e in unique if e.type == "item" and e.tier != 1]
    if items:
        sections.append("[RELEVANT ITEMS]\n" + _bullets(items))

    related = [e for e in unique if e.type == "beat" and e.tier != 1]
    if related:
        sections.append("[RELATED STORY THREADS]\n" + _bullets(related))

    lore = [e for e in unique if e.type == "lore"]
    if lore:
        sections.append("[RELEVANT LORE]\n" + "\n".join(
            f"• {e.name} ({e.metadata.get('lore_type', 'concept')}): {e.description}" for e in lore
        ))

    if retrieved_context:
        sections.append(retrieved_context.strip())

    return "\n\n".join(sections)

"""Vault assistant: a conversational agent over the author's library.

Unlike lore management there is no terminal tool; each user message runs
the loop until the model answers in plain text or `max_steps` is reached.
The conversation history, and the working copies the tools edit, persist
across messages of one assistant session.
"""

from __future__ import annotations

import logging
from typing import Any

from story_engine.agents.character_tools import character_tools
from story_engine.agents.loop import AgentLoop, AgentRunResult
from story_engine.agents.lorebook_tools import vault_lorebook_tools
from story_engine.agents.pending import ChangeLog, PendingChangeSink, WorkingSet
from story_engine.agents.scenario_tools import scenario_tools
from story_engine.agents.stop import stop_when_done
from story_engine.agents.tools import ToolRegistry
from story_engine.cancel import AbortSignal
from story_engine.llm import LLM
from story_engine.models import PendingChange, VaultCharacter, VaultLorebook, VaultScenario
from story_engine.prompts import VAULT_SYSTEM

logger = logging.getLogger(__name__)


class VaultAssistant:
    def __init__(
        self,
        llm: LLM,
        *,
        characters: list[VaultCharacter],
        scenarios: list[VaultScenario],
        lorebooks: list[VaultLorebook],
        on_pending_change: PendingChangeSink | None = None,
        max_steps: int = 50,
    ) -> None:
        self.changes = ChangeLog(on_pending_change)
        self._characters = WorkingSet(characters)
        self._scenarios = WorkingSet(scenarios)
        self._lorebooks = WorkingSet(lorebooks)
        registry = ToolRegistry.of(
            character_tools(self._characters, self.changes),
            scenario_tools(self._scenarios, self.changes),
            vault_lorebook_tools(self._lorebooks, self.changes),
        )
        self._loop = AgentLoop(
            llm, registry, stop_when_done(max_steps), max_iterations=max_steps, stage="vault_assistant",
        )
        self._history: list[dict[str, Any]] = [{"role": "system", "content": VAULT_SYSTEM}]

    @property
    def pending_changes(self) -> list[PendingChange]:
        return self.changes.changes

    @property
    def history(self) -> list[dict[str, Any]]:
        return list(self._history)

    async def send_message(self, text: str, *, signal: AbortSignal | None = None) -> AgentRunResult:
        before = len(self.changes.changes)
        result = await self._loop.run(VAULT_SYSTEM, text, signal=signal, history=self._history)
        self._history = result.messages
        logger.info(
            "Vault assistant turn proposed %d changes (%s)",
            len(self.changes.changes) - before, result.stop_reason,
        )
        return result

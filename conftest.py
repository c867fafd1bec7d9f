import inspect
import json
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from story_engine.cancel import guarded
from story_engine.llm import LLMError, ToolCall, ToolResponse
from story_engine.models import Story
from story_engine.storage import Storage


@dataclass
class Call:
    kind: str  # "text" | "structured" | "tools"
    stage: str
    payload: Any  # prompt string, or the message list for tool calls


class StubLLM:
    """Scripted stand-in for HttpLLM.

    Responses are queued per stage. A queued item may be a value, an
    exception (raised), or a callable taking the call payload (its return
    value, awaited if needed, is used). When a stage's queue is empty:
    text returns `default_text`, structured raises LLMError, and tool calls
    return a plain "done" message with no tool calls.

    Every call is recorded in `calls` and honours the signal it is given.
    """

    def __init__(self) -> None:
        self._text: dict[str, list] = defaultdict(list)
        self._structured: dict[str, list] = defaultdict(list)
        self._tools: dict[str, list] = defaultdict(list)
        self.calls: list[Call] = []
        self.default_text = "ok"

    # ── Scripting ─────────────────────────────────────────────

    def script_text(self, stage: str, *responses: Any) -> None:
        self._text[stage].extend(responses)

    def script_structured(self, stage: str, *responses: Any) -> None:
        self._structured[stage].extend(responses)

    def script_tools(self, stage: str, *responses: Any) -> None:
        self._tools[stage].extend(responses)

    def script_tool_calls(self, stage: str, *steps: list[tuple[str, dict]]) -> None:
        """Queue one tool-calling response per step, each a list of (name, args)."""
        for n, step in enumerate(steps):
            self._tools[stage].append(ToolResponse(tool_calls=[
                ToolCall(id=f"call-{stage}-{n}-{i}", name=name, arguments=json.dumps(args))
                for i, (name, args) in enumerate(step)
            ]))

    def stages(self, kind: str | None = None) -> list[str]:
        return [c.stage for c in self.calls if kind is None or c.kind == kind]

    # ── LLM protocol ──────────────────────────────────────────

    async def _next(self, queue: list, payload: Any, default: Any) -> Any:
        if not queue:
            if isinstance(default, Exception):
                raise default
            return default
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item) and not isinstance(item, type):
            item = item(payload)
            if inspect.isawaitable(item):
                item = await item
        return item

    async def generate_text(self, stage, system, prompt, *, signal=None) -> str:
        self.calls.append(Call("text", stage, prompt))
        return await guarded(signal, self._next(self._text[stage], prompt, self.default_text))

    async def generate_structured(self, stage, schema, system, prompt, *, signal=None):
        self.calls.append(Call("structured", stage, prompt))
        result = await guarded(signal, self._next(
            self._structured[stage], prompt, LLMError(f"No scripted response for {stage}"),
        ))
        return result if isinstance(result, schema) else schema.model_validate(result)

    async def generate_with_tools(self, stage, messages, tools, *, signal=None) -> ToolResponse:
        self.calls.append(Call("tools", stage, list(messages)))
        return await guarded(signal, self._next(
            self._tools[stage], messages, ToolResponse(content="done", finish_reason="stop"),
        ))


@pytest.fixture
def llm() -> StubLLM:
    return StubLLM()


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    return Storage(tmp_path / "data")


@pytest.fixture
def story(storage: Storage) -> Story:
    return storage.create_story(Story(id="story-1", title="The Broken Compass", genre="fantasy"))

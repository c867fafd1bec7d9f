"""Tool definitions and the registry that executes model tool calls.

A tool is a name, a description, a pydantic argument model and a handler.
The registry turns a raw ToolCall into a result dict and never raises for
bad input: unknown tools, malformed JSON, schema violations and handler
exceptions all come back as {"error": ...} so the agent loop can continue
and the model can correct itself. Only AbortError escapes.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from story_engine.cancel import AbortError, AbortSignal
from story_engine.llm import ToolCall

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Per-call information handed to every handler."""

    tool_call_id: str
    signal: AbortSignal | None = None


class NoArgs(BaseModel):
    pass


@dataclass
class Tool:
    name: str
    description: str
    handler: Callable[[Any, ToolContext], Any]
    args: type[BaseModel] = NoArgs

    def schema(self) -> dict[str, Any]:
        """OpenAI-style function definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args.model_json_schema(),
            },
        }


@dataclass
class ToolRegistry:
    tools: dict[str, Tool] = field(default_factory=dict)

    @classmethod
    def of(cls, *groups: Iterable[Tool]) -> ToolRegistry:
        registry = cls()
        for group in groups:
            for tool in group:
                registry.add(tool)
        return registry

    def add(self, tool: Tool) -> None:
        if tool.name in self.tools:
            raise ValueError(f"Duplicate tool name: {tool.name}")
        self.tools[tool.name] = tool

    @property
    def names(self) -> list[str]:
        return list(self.tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [t.schema() for t in self.tools.values()]

    async def execute(self, call: ToolCall, signal: AbortSignal | None = None) -> dict[str, Any]:
        tool = self.tools.get(call.name)
        if tool is None:
            logger.warning("Model called unknown tool %r", call.name)
            return {"error": f"Unknown tool: {call.name}"}

        try:
            raw = json.loads(call.arguments or "{}")
        except json.JSONDecodeError as e:
            return {"error": f"Invalid JSON arguments for {call.name}: {e}"}
        if not isinstance(raw, dict):
            return {"error": f"Arguments for {call.name} must be a JSON object"}

        try:
            args = tool.args.model_validate(raw)
        except ValidationError as e:
            return {"error": f"Invalid arguments for {call.name}: {_summarize(e)}"}

        ctx = ToolContext(tool_call_id=call.id, signal=signal)
        try:
            result = tool.handler(args, ctx)
            if inspect.isawaitable(result):
                result = await result
        except AbortError:
            raise
        except Exception as e:
            logger.warning("Tool %s failed: %s", call.name, e)
            return {"error": f"{call.name} failed: {e}"}
        return result


def _summarize(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "(root)"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)

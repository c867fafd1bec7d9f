"""Tests for story_engine.agents: the tool registry, stop conditions and the loop."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from pydantic import BaseModel

from story_engine.agents.loop import AgentLoop, AgentStep
from story_engine.agents.stop import (
    step_count_is,
    stop_on_any,
    stop_on_any_tool_call,
    stop_on_cost_exceeded,
    stop_on_terminal_tool,
    stop_when_done,
)
from story_engine.agents.tools import Tool, ToolContext, ToolRegistry
from story_engine.cancel import AbortError, AbortSignal
from story_engine.llm import HttpLLM, LLMError, ToolCall, ToolResponse, Usage


class EchoArgs(BaseModel):
    text: str
    times: int = 1


def _echo(args: EchoArgs, ctx: ToolContext) -> dict:
    return {"echo": args.text * args.times, "call": ctx.tool_call_id}


def _boom(args, ctx) -> dict:
    raise RuntimeError("kaput")


def _abort(args, ctx) -> dict:
    raise AbortError("stop")


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry.of([
        Tool("echo", "Repeat text.", _echo, EchoArgs),
        Tool("boom", "Always fails.", _boom),
        Tool("abort", "Aborts.", _abort),
        Tool("finish", "Terminal.", lambda args, ctx: {"completed": True}),
    ])


def _call(name: str, args: dict | str = "{}", call_id: str = "c1") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=args if isinstance(args, str) else json.dumps(args))


def _step(*names: str, input_tokens: int = 0, output_tokens: int = 0) -> AgentStep:
    return AgentStep(
        index=0,
        tool_calls=[_call(n) for n in names],
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------

class TestToolRegistry:
    async def test_executes_handler_with_validated_args(self, registry) -> None:
        result = await registry.execute(_call("echo", {"text": "ab", "times": 2}, "call-9"))
        assert result == {"echo": "abab", "call": "call-9"}

    async def test_unknown_tool(self, registry) -> None:
        assert await registry.execute(_call("nope")) == {"error": "Unknown tool: nope"}

    async def test_invalid_json(self, registry) -> None:
        result = await registry.execute(_call("echo", "{not json"))
        assert result["error"].startswith("Invalid JSON arguments for echo")

    async def test_non_object_arguments(self, registry) -> None:
        result = await registry.execute(_call("echo", "[1, 2]"))
        assert result == {"error": "Arguments for echo must be a JSON object"}

    async def test_schema_violation(self, registry) -> None:
        result = await registry.execute(_call("echo", {"times": "many"}))
        assert result["error"].startswith("Invalid arguments for echo:")
        assert "text" in result["error"]

    async def test_handler_exception_becomes_error(self, registry) -> None:
        assert await registry.execute(_call("boom")) == {"error": "boom failed: kaput"}

    async def test_abort_propagates(self, registry) -> None:
        with pytest.raises(AbortError):
            await registry.execute(_call("abort"))

    def test_duplicate_names_rejected(self) -> None:
        tool = Tool("x", "x", _echo, EchoArgs)
        with pytest.raises(ValueError, match="Duplicate tool name: x"):
            ToolRegistry.of([tool], [tool])

    def test_schemas_are_openai_functions(self, registry) -> None:
        schema = registry.schemas()[0]
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "echo"
        assert schema["function"]["parameters"]["required"] == ["text"]


# ---------------------------------------------------------------------------
# Stop conditions
# ---------------------------------------------------------------------------

class TestStopConditions:
    def test_step_count(self) -> None:
        assert not step_count_is(2)([_step("echo")])
        assert step_count_is(2)([_step("echo"), _step("echo")])

    def test_terminal_tool_checks_last_step(self) -> None:
        cond = stop_on_terminal_tool("finish", max_steps=10)
        assert not cond([_step("finish"), _step("echo")])
        assert cond([_step("echo"), _step("echo", "finish")])

    def test_terminal_tool_max_steps(self) -> None:
        assert stop_on_terminal_tool("finish", max_steps=2)([_step("echo"), _step("echo")])

    def test_any_tool_call(self) -> None:
        cond = stop_on_any_tool_call(["a", "b"])
        assert cond([_step("b")])
        assert not cond([_step("c")])

    def test_when_done(self) -> None:
        assert stop_when_done()([_step()])
        assert not stop_when_done()([_step("echo")])

    def test_cost(self) -> None:
        cond = stop_on_cost_exceeded(0.045, input_per_1k=0.01, output_per_1k=0.03)
        assert not cond([_step(input_tokens=1000, output_tokens=1000)])
        assert cond([_step(input_tokens=2000, output_tokens=1000)])

    def test_any(self) -> None:
        cond = stop_on_any(step_count_is(5), stop_on_any_tool_call(["finish"]))
        assert cond([_step("finish")])
        assert not cond([_step("echo")])


# ---------------------------------------------------------------------------
# AgentLoop
# ---------------------------------------------------------------------------

class TestAgentLoop:
    async def test_stops_without_tool_calls(self, llm, registry) -> None:
        llm.script_tools("agent", ToolResponse(content="All done."))
        result = await AgentLoop(llm, registry).run("sys", "go")
        assert result.stop_reason == "no_tool_calls"
        assert result.final_text == "All done."
        assert len(result.steps) == 1

    async def test_bounded_by_max_iterations(self, llm, registry) -> None:
        llm.script_tool_calls("agent", *[[("echo", {"text": "x"})]] * 10)
        loop = AgentLoop(llm, registry, step_count_is(100), max_iterations=3)

        result = await loop.run("sys", "go")

        assert result.stop_reason == "max_iterations"
        assert len(result.steps) == 3
        assert len(llm.calls) == 3

    async def test_terminal_tool_stops_loop(self, llm, registry) -> None:
        llm.script_tool_calls("agent", [("echo", {"text": "x"})], [("finish", {})], [("echo", {"text": "y"})])
        result = await AgentLoop(llm, registry, stop_on_terminal_tool("finish", 20), max_iterations=20).run("s", "p")
        assert result.stop_reason == "stop_condition"
        assert [r.name for r in result.tool_call_log] == ["echo", "finish"]

    async def test_message_history_shape(self, llm, registry) -> None:
        llm.script_tools("agent", ToolResponse(
            content="thinking", reasoning="hmm",
            tool_calls=[_call("echo", {"text": "hi"}, "t1")],
        ))
        result = await AgentLoop(llm, registry).run("sys", "go")

        roles = [m["role"] for m in result.messages]
        assert roles == ["system", "user", "assistant", "tool", "assistant"]
        assistant = result.messages[2]
        assert assistant["reasoning"] == "hmm"
        assert assistant["tool_calls"][0]["id"] == "t1"
        assert result.messages[3] == {
            "role": "tool", "tool_call_id": "t1", "content": json.dumps({"echo": "hi", "call": "t1"}),
        }
        # the second model call saw the tool result
        assert llm.calls[1].payload[3]["tool_call_id"] == "t1"

    async def test_tool_errors_do_not_stop_loop(self, llm, registry) -> None:
        llm.script_tool_calls("agent", [("boom", {}), ("nope", {})])
        result = await AgentLoop(llm, registry).run("s", "p")
        assert [r.result for r in result.tool_call_log] == [
            {"error": "boom failed: kaput"},
            {"error": "Unknown tool: nope"},
        ]
        assert result.stop_reason == "no_tool_calls"

    async def test_model_error_ends_run(self, llm, registry) -> None:
        llm.script_tool_calls("agent", [("echo", {"text": "x"})])
        llm.script_tools("agent", LLMError("503"))
        result = await AgentLoop(llm, registry).run("s", "p")
        assert result.stop_reason == "error"
        assert result.error == "503"
        assert len(result.steps) == 1

    async def test_dropped_connection_ends_run(self, registry) -> None:
        llm = HttpLLM(provider_url="http://localhost:8080")
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("reset"))):
            result = await AgentLoop(llm, registry).run("s", "p")
        assert result.stop_reason == "error"
        assert "reset" in result.error
        assert result.steps == []

    async def test_abort_before_start(self, llm, registry) -> None:
        signal = AbortSignal()
        signal.abort()
        result = await AgentLoop(llm, registry).run("s", "p", signal=signal)
        assert result.stop_reason == "aborted"
        assert llm.calls == []

    async def test_abort_during_tool(self, llm, registry) -> None:
        llm.script_tool_calls("agent", [("abort", {})])
        result = await AgentLoop(llm, registry).run("s", "p", signal=AbortSignal())
        assert result.stop_reason == "aborted"

    async def test_usage_accumulates(self, llm, registry) -> None:
        llm.script_tools(
            "agent",
            ToolResponse(tool_calls=[_call("echo", {"text": "x"})], usage=Usage(input_tokens=10, output_tokens=2)),
            ToolResponse(content="ok", usage=Usage(input_tokens=15, output_tokens=3)),
        )
        result = await AgentLoop(llm, registry).run("s", "p")
        assert (result.usage.input_tokens, result.usage.output_tokens) == (25, 5)

    async def test_history_continues_conversation(self, llm, registry) -> None:
        history = [{"role": "system", "content": "earlier"}, {"role": "user", "content": "hi"}]
        result = await AgentLoop(llm, registry).run("ignored", "again", history=history)
        assert [m["content"] for m in result.messages[:3]] == ["earlier", "hi", "again"]
        assert len(history) == 2

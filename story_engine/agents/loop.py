"""Bounded tool-calling loop.

One iteration:
  1. Send the whole message history to the model with the tool schemas.
  2. No tool calls in the reply: record the step and stop.
  3. Otherwise append the assistant message (content, tool calls, reasoning),
     execute each call in order, and append one tool message per call.
  4. Evaluate the stop condition over all steps.

The loop never runs more than `max_iterations` model calls. Hitting that
bound is a soft stop: the result carries whatever the agent did so far.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from story_engine.agents.stop import StopCondition, stop_when_done
from story_engine.agents.tools import ToolRegistry
from story_engine.cancel import AbortError, AbortSignal
from story_engine.llm import LLM, LLMError, ToolCall, Usage

logger = logging.getLogger(__name__)

StopReason = Literal["no_tool_calls", "stop_condition", "max_iterations", "error", "aborted"]


class ToolCallRecord(BaseModel):
    call_id: str
    name: str
    arguments: str
    result: dict[str, Any]


class AgentStep(BaseModel):
    index: int
    content: str | None = None
    reasoning: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    results: list[ToolCallRecord] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str | None = None


class AgentRunResult(BaseModel):
    steps: list[AgentStep] = Field(default_factory=list)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    stop_reason: StopReason
    error: str | None = None

    @property
    def tool_call_log(self) -> list[ToolCallRecord]:
        return [r for step in self.steps for r in step.results]

    @property
    def usage(self) -> Usage:
        return Usage(
            input_tokens=sum(s.usage.input_tokens for s in self.steps),
            output_tokens=sum(s.usage.output_tokens for s in self.steps),
        )

    @property
    def final_text(self) -> str | None:
        for step in reversed(self.steps):
            if step.content:
                return step.content
        return None

    def results_for(self, tool_name: str) -> list[dict[str, Any]]:
        return [r.result for r in self.tool_call_log if r.name == tool_name]


class AgentLoop:
    """Drives one agent run.

    Args:
        llm:            Model client used for generate_with_tools.
        tools:          Registry of tools offered to the model.
        stop_condition: Evaluated after every step that executed tools.
        max_iterations: Hard cap on model calls.
        stage:          Stage name passed to the model client.
    """

    def __init__(
        self,
        llm: LLM,
        tools: ToolRegistry,
        stop_condition: StopCondition | None = None,
        *,
        max_iterations: int = 20,
        stage: str = "agent",
    ) -> None:
        self._llm = llm
        self._tools = tools
        self._stop = stop_condition or stop_when_done(max_iterations)
        self.max_iterations = max_iterations
        self.stage = stage

    async def run(
        self,
        system: str,
        prompt: str,
        *,
        signal: AbortSignal | None = None,
        history: list[dict[str, Any]] | None = None,
    ) -> AgentRunResult:
        """Run until a stop condition, the iteration bound, an error or an abort.

        *history* continues an earlier conversation; it must already start
        with the system message, so *system* is ignored when it is given.
        """
        messages: list[dict[str, Any]] = list(history) if history else [
            {"role": "system", "content": system},
        ]
        messages.append({"role": "user", "content": prompt})
        steps: list[AgentStep] = []
        schemas = self._tools.schemas()
        stop_reason: StopReason | None = None
        error: str | None = None

        while len(steps) < self.max_iterations:
            if signal is not None and signal.aborted:
                stop_reason = "aborted"
                break
            try:
                response = await self._llm.generate_with_tools(
                    self.stage, messages, schemas, signal=signal,
                )
            except AbortError:
                stop_reason = "aborted"
                break
            except LLMError as e:
                logger.warning("%s: model call failed at step %d: %s", self.stage, len(steps), e)
                stop_reason, error = "error", str(e)
                break

            step = AgentStep(
                index=len(steps),
                content=response.content,
                reasoning=response.reasoning,
                tool_calls=response.tool_calls,
                usage=response.usage,
                finish_reason=response.finish_reason,
            )
            assistant: dict[str, Any] = {"role": "assistant", "content": response.content}
            if response.reasoning:
                assistant["reasoning"] = response.reasoning

            if not response.tool_calls:
                messages.append(assistant)
                steps.append(step)
                stop_reason = "no_tool_calls"
                break

            assistant["tool_calls"] = [c.model_dump() for c in response.tool_calls]
            messages.append(assistant)
            try:
                for call in response.tool_calls:
                    result = await self._tools.execute(call, signal)
                    logger.debug("%s: tool %s -> %s", self.stage, call.name, result)
                    step.results.append(ToolCallRecord(
                        call_id=call.id, name=call.name, arguments=call.arguments, result=result,
                    ))
                    messages.append({
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result),
                    })
            except AbortError:
                steps.append(step)
                stop_reason = "aborted"
                break

            steps.append(step)
            if self._stop(steps):
                stop_reason = "stop_condition"
                break

        if stop_reason is None:
            logger.info(
                "%s: reached %d iterations without finishing", self.stage, self.max_iterations,
            )
            stop_reason = "max_iterations"

        logger.info("%s: finished after %d steps (%s)", self.stage, len(steps), stop_reason)
        return AgentRunResult(steps=steps, messages=messages, stop_reason=stop_reason, error=error)

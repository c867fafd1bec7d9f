"""Composable stop conditions for the agent loop.

A stop condition looks at every step taken so far and says whether the run
is over. It is evaluated after each step that executed tools; a step with no
tool calls always ends the run regardless of the condition.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from story_engine.agents.loop import AgentStep

StopCondition = Callable[[list["AgentStep"]], bool]


def step_count_is(n: int) -> StopCondition:
    def condition(steps: list[AgentStep]) -> bool:
        return len(steps) >= n
    return condition


def stop_on_terminal_tool(name: str, max_steps: int = 10) -> StopCondition:
    """Stop once *name* is called, or after *max_steps* steps."""
    def condition(steps: list[AgentStep]) -> bool:
        if len(steps) >= max_steps:
            return True
        return bool(steps) and any(c.name == name for c in steps[-1].tool_calls)
    return condition


def stop_on_any_tool_call(names: Iterable[str], max_steps: int = 10) -> StopCondition:
    names = frozenset(names)

    def condition(steps: list[AgentStep]) -> bool:
        if len(steps) >= max_steps:
            return True
        return bool(steps) and any(c.name in names for c in steps[-1].tool_calls)
    return condition


def stop_when_done(max_steps: int = 50) -> StopCondition:
    """Stop when the model issues no tool calls, or after *max_steps* steps."""
    def condition(steps: list[AgentStep]) -> bool:
        if len(steps) >= max_steps:
            return True
        return bool(steps) and not steps[-1].tool_calls
    return condition


def stop_on_cost_exceeded(
    max_usd: float, input_per_1k: float = 0.01, output_per_1k: float = 0.03,
) -> StopCondition:
    def condition(steps: list[AgentStep]) -> bool:
        cost = 0.0
        for step in steps:
            cost += step.usage.input_tokens / 1000 * input_per_1k
            cost += step.usage.output_tokens / 1000 * output_per_1k
        return cost >= max_usd
    return condition


def stop_on_any(*conditions: StopCondition) -> StopCondition:
    def condition(steps: list[AgentStep]) -> bool:
        return any(c(steps) for c in conditions)
    return condition

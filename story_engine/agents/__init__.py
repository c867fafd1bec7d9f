"""Agentic mutation loop.

An agent run is a bounded sequence of model calls. Each call may request
tools; tools run in order and their JSON results are fed back. The run ends
when the model stops asking for tools, a stop condition fires, the iteration
bound is reached, the model call fails, or the abort signal fires.

Tool families (each a list of Tool built over a run-owned WorkingSet):
  lorebook_tools   story lorebook by entry id; vault lorebooks by index
  character_tools  vault characters
  scenario_tools   vault scenarios
  story_tools      chapters, recent entries, finish_lore_management

Mutation tools never write to persistence. They propose one PendingChange
per call through a ChangeLog, which forwards it to the approval sink.
"""

from .loop import AgentLoop, AgentRunResult, AgentStep, ToolCallRecord  # noqa: F401
from .pending import ChangeLog, PendingChangeSink, WorkingSet, merge_list  # noqa: F401
from .stop import (  # noqa: F401
    StopCondition,
    step_count_is,
    stop_on_any,
    stop_on_any_tool_call,
    stop_on_cost_exceeded,
    stop_on_terminal_tool,
    stop_when_done,
)
from .tools import Tool, ToolContext, ToolRegistry  # noqa: F401

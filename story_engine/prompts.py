"""Handlebars prompt templates for every model-calling stage.

Templates are plain module constants rendered with pybars. Free text from
the story (entry content, names, descriptions) is always emitted with the
triple-stash form `{{{value}}}` so it is not HTML-escaped.

Stages and their templates:

    tier3_selection    TIER3_SYSTEM / TIER3_PROMPT
    chapter_analysis   CHAPTER_ANALYSIS_SYSTEM / CHAPTER_ANALYSIS_PROMPT
    chapter_summary    CHAPTER_SUMMARY_SYSTEM / CHAPTER_SUMMARY_PROMPT
    chapter_query      CHAPTER_QUERY_SYSTEM / CHAPTER_QUERY_PROMPT
    retrieval_decision RETRIEVAL_DECISION_SYSTEM / RETRIEVAL_DECISION_PROMPT
    timeline_queries   TIMELINE_QUERIES_SYSTEM / TIMELINE_QUERIES_PROMPT
    agentic_retrieval  AGENTIC_RETRIEVAL_SYSTEM / AGENTIC_RETRIEVAL_PROMPT
    lore_management    LORE_MANAGEMENT_SYSTEM / LORE_MANAGEMENT_PROMPT
    vault_assistant    VAULT_SYSTEM
    narrative          NARRATIVE_SYSTEM / NARRATIVE_PROMPT
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

import pybars

logger = logging.getLogger(__name__)

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}}: iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items or [])[-int(count):]:
        result.extend(options["fn"](item))
    return result


def _helper_join(this, items, sep=", "):
    """{{join array ", "}}: join a list of strings."""
    return sep.join(str(i) for i in (items or []))


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
    "join": _helper_join,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS)).strip()
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def parse_json_output(text: str) -> dict | None:
    """Parse a JSON object from model output, stripping markdown fences."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Model output is not valid JSON: %s", e)
        return None
    return data if isinstance(data, dict) else None


# ── Context tiering ──────────────────────────────────────

TIER3_SYSTEM = """You select which world entities matter for the next scene of an interactive story.
Return only the IDs (or list numbers) of entities that the narrator needs to know about right now."""

TIER3_PROMPT = """Player input:
{{{user_input}}}

Recent story:
{{#each recent}}{{{this}}}
{{/each}}
Candidate entities:
{{#each candidates}}{{{this}}}
{{/each}}
Select at most {{max}} entities."""


# ── Chapters ─────────────────────────────────────────────

CHAPTER_ANALYSIS_SYSTEM = """You divide a long interactive story into chapters.
Decide whether the messages below contain a complete narrative arc and, if so,
the message index right after the last message that belongs to the chapter."""

CHAPTER_ANALYSIS_PROMPT = """{{#if previous}}Previous chapters:
{{#each previous}}Chapter {{number}}: {{{summary}}}
{{/each}}
{{/if}}Unsummarized messages:
{{#each messages}}[Message {{index}}] [{{type}}]: {{{content}}}
{{/each}}
The chapter may end at any index between {{min_end}} and {{max_end}}."""

CHAPTER_SUMMARY_SYSTEM = """You write concise chapter summaries for an interactive story.
Summarize in 2-3 sentences and extract searchable keywords, characters, locations and plot threads."""

CHAPTER_SUMMARY_PROMPT = """{{#if previous}}Story so far:
{{#each previous}}Chapter {{number}}: {{{summary}}}
{{/each}}
{{/if}}Chapter content:
{{#each entries}}[{{type}}]: {{{content}}}

{{/each}}"""

CHAPTER_QUERY_SYSTEM = """You answer questions about one chapter of an interactive story.
Answer only from the chapter content. If the chapter does not say, answer that it does not."""

CHAPTER_QUERY_PROMPT = """Chapter {{number}}{{#if title}}: {{{title}}}{{/if}}
Summary: {{{summary}}}

{{#each entries}}[{{type}}]: {{{content}}}

{{/each}}
Question: {{{question}}}"""

RETRIEVAL_DECISION_SYSTEM = """You decide whether earlier chapters of a story are relevant to the current scene."""

RETRIEVAL_DECISION_PROMPT = """Player input:
{{{user_input}}}

Recent story:
{{#each recent}}[{{type}}]: {{{content}}}
{{/each}}
Chapters:
{{#each chapters}}{{id}} | Chapter {{number}}{{#if title}} "{{{title}}}"{{/if}}: {{{summary}}} [Keywords: {{join keywords}}]
{{/each}}
Select at most {{max}} chapters."""


# ── Retrieval ────────────────────────────────────────────

TIMELINE_QUERIES_SYSTEM = """You plan memory lookups for an interactive story.
Ask short, targeted questions about earlier chapters whose answers the narrator needs for the next scene."""

TIMELINE_QUERIES_PROMPT = """Chapter timeline:
{{#each chapters}}Chapter {{number}}{{#if title}} "{{{title}}}"{{/if}}: {{{summary}}}
{{/each}}
Recent story:
{{#each recent}}[{{type}}]: {{{content}}}
{{/each}}
Player input:
{{{user_input}}}

Ask at most {{max_queries}} questions."""

AGENTIC_RETRIEVAL_SYSTEM = """You gather context for the next scene of a long interactive story.
Use list_chapters and query_chapter to learn what happened before, search_entries and
select_entry to pick lorebook entries the narrator needs, then call finish_retrieval."""

AGENTIC_RETRIEVAL_PROMPT = """Player input:
{{{user_input}}}

Recent story:
{{#each recent}}[{{type}}]: {{{content}}}
{{/each}}
There are {{chapter_count}} chapters and {{entry_count}} lorebook entries available."""


# ── Lore management ──────────────────────────────────────

LORE_MANAGEMENT_SYSTEM = """You maintain the lorebook of an interactive story.
Keep entries accurate, merge duplicates, record new characters, places, items, factions and concepts,
and remove entries that no longer apply. Every change you make is reviewed by the author before it is saved.
When you are done, call finish_lore_management with a short summary."""

LORE_MANAGEMENT_PROMPT = """# Current Lorebook Entries
{{#each entries}}- {{id}} [{{type}}] {{{name}}}: {{{description}}}
{{else}}(none)
{{/each}}
# Recent Story
{{#each recent}}[{{type}}]: {{{content}}}
{{/each}}
# Chapter Summaries
{{#each chapters}}Chapter {{number}}{{#if title}} "{{{title}}}"{{/if}}: {{{summary}}}
{{else}}(none)
{{/each}}
# Instructions
Review the story and update the lorebook. Use the entry ids above with the tools."""


# ── Vault assistant ──────────────────────────────────────

VAULT_SYSTEM = """You help an author manage their library of characters, scenarios and lorebooks.
Use the tools to look things up and to propose changes. Changes are only saved after the author approves them.
Reply in plain text when you have nothing more to do."""


# ── Narrative ────────────────────────────────────────────

NARRATIVE_SYSTEM = """{{#if system_prompt}}{{{system_prompt}}}{{else}}You are the narrator of an interactive story{{#if genre}} in the {{{genre}}} genre{{/if}}.
Continue the story in response to the player's action. Write in second person, present tense.{{/if}}
{{#if visual_prose}}
Use vivid, visual prose: describe what the scene looks like in concrete detail.{{/if}}"""

NARRATIVE_PROMPT = """{{#if context}}{{{context}}}

{{/if}}Story so far:
{{#last recent 20}}{{#if is_user}}> {{{content}}}{{else}}{{{content}}}{{/if}}

{{/last}}
Player action:
> {{{user_input}}}"""

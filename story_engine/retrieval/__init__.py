"""Supplementary context sources used by the retrieval phase.

  timeline  targeted questions over recent chapters (default memory source)
  agentic   an agent querying chapters and lorebook entries (many chapters)
  entries   tiered lorebook-entry selection with per-type stickiness
"""

from .agentic import AgenticRetrievalResult, AgenticRetrievalService  # noqa: F401
from .entries import ActivationTracker, LorebookRetrievalResult, LorebookRetriever  # noqa: F401
from .timeline import TimelineFillResult, TimelineFillService, TimelineQuery  # noqa: F401

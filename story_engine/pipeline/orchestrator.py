"""Pipeline orchestrator: runs one generation cycle end-to-end.

Cycle flow:
  1. pre_generation: retry backup, settings, streaming entry id.
  2. retrieval: memory and lorebook context, joined once.
  3. narrative: tiered world context plus retrieved context into the model.

The caller persists the narrative entry and then runs post-generation work
(see story_engine.coordinator). A cancelled cycle returns a result with
aborted=True; a failed narrative call raises GenerationError.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from story_engine.config import AppConfig
from story_engine.context import ContextBuilder
from story_engine.llm import LLM
from story_engine.memory import MemoryService
from story_engine.pipeline.events import ProgressSink
from story_engine.pipeline.phases import (
    GenerationContext,
    NarrativePhase,
    NarrativeResult,
    PreGenerationResult,
    RetrievalPhase,
    RetrievalResult,
    run_pre_generation,
)
from story_engine.retrieval.agentic import AgenticRetrievalService
from story_engine.retrieval.entries import LorebookRetriever
from story_engine.retrieval.timeline import TimelineFillService

logger = logging.getLogger(__name__)


class PipelineResult(BaseModel):
    pre_generation: PreGenerationResult
    retrieval: RetrievalResult
    narrative: NarrativeResult | None = None
    aborted: bool = False


class GenerationPipeline:
    def __init__(
        self,
        llm: LLM,
        *,
        retrieval: RetrievalPhase | None = None,
        context_builder: ContextBuilder | None = None,
    ) -> None:
        self._retrieval = retrieval or RetrievalPhase()
        self._narrative = NarrativePhase(llm, context_builder)

    @classmethod
    def from_config(
        cls, llm: LLM, config: AppConfig, *, lorebook: LorebookRetriever | None = None,
    ) -> GenerationPipeline:
        """Wire every retrieval source from *config*.

        Pass a long-lived *lorebook* retriever to keep entry stickiness across
        cycles; otherwise a fresh one is created.
        """
        memory = MemoryService(llm)
        retrieval = RetrievalPhase(
            timeline=TimelineFillService(llm, memory, config.retrieval.max_timeline_queries),
            agentic=AgenticRetrievalService(llm, memory, config.retrieval.agentic_max_iterations),
            lorebook=lorebook or LorebookRetriever(llm, config.context),
            memory=memory,
            settings=config.retrieval,
        )
        return cls(llm, retrieval=retrieval, context_builder=ContextBuilder(llm, config.context))

    async def run(self, ctx: GenerationContext, sink: ProgressSink | None = None) -> PipelineResult:
        pre = run_pre_generation(ctx, sink)
        retrieval = await self._retrieval.run(ctx, sink)
        if ctx.signal.aborted:
            logger.info("Generation for %s aborted during retrieval", ctx.user_action.entry_id)
            return PipelineResult(pre_generation=pre, retrieval=retrieval, aborted=True)

        # The narrative phase reports the abort itself if the signal fired
        # after retrieval completed.
        narrative = await self._narrative.run(ctx, pre, retrieval, sink)

        aborted = narrative is None
        if aborted:
            logger.info("Generation for %s aborted", ctx.user_action.entry_id)
        return PipelineResult(
            pre_generation=pre, retrieval=retrieval, narrative=narrative, aborted=aborted,
        )

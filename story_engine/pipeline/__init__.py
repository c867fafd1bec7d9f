"""Generation pipeline: pre_generation, retrieval, narrative."""

from .events import (  # noqa: F401
    Aborted,
    EventCollector,
    GenerationFailed,
    NdjsonSink,
    PhaseComplete,
    PhaseStart,
    PipelineEvent,
    ProgressSink,
)
from .orchestrator import GenerationPipeline, PipelineResult  # noqa: F401
from .phases import (  # noqa: F401
    GenerationContext,
    GenerationError,
    NarrativePhase,
    NarrativeResult,
    PreGenerationResult,
    RetrievalPhase,
    RetrievalResult,
    UserAction,
    run_pre_generation,
)
from .retry import RetryBackupData, restore_from_backup  # noqa: F401

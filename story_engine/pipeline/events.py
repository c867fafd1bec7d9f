"""Progress events emitted by the generation pipeline.

Every phase emits exactly one phase_start before doing any work and exactly
one terminal event afterwards: phase_complete, aborted, or (generation only)
error. Sinks are plain callables invoked synchronously; consuming events is
optional because the pipeline's return value is self-sufficient.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, TextIO

from pydantic import BaseModel

Phase = Literal["pre_generation", "retrieval", "narrative"]


class PhaseStart(BaseModel):
    type: Literal["phase_start"] = "phase_start"
    phase: Phase


class PhaseComplete(BaseModel):
    type: Literal["phase_complete"] = "phase_complete"
    phase: Phase
    result: Any = None


class Aborted(BaseModel):
    type: Literal["aborted"] = "aborted"
    phase: Phase


class GenerationFailed(BaseModel):
    type: Literal["error"] = "error"
    phase: Phase
    error: str
    entry_id: str | None = None


PipelineEvent = PhaseStart | PhaseComplete | Aborted | GenerationFailed
ProgressSink = Callable[[PipelineEvent], None]


def emit(sink: ProgressSink | None, event: PipelineEvent) -> None:
    if sink is not None:
        sink(event)


class EventCollector:
    """Sink that keeps every event in order."""

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]

    def of_phase(self, phase: Phase) -> list[PipelineEvent]:
        return [e for e in self.events if e.phase == phase]


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class NdjsonSink:
    """Writes each event as one JSON line, for machine-readable progress."""

    stream: TextIO = field(default_factory=lambda: sys.stderr)

    def __call__(self, event: PipelineEvent) -> None:
        payload = {"event": event.type, "phase": event.phase, "timestamp": _iso_now()}
        if isinstance(event, GenerationFailed):
            payload["error"] = event.error
        self.stream.write(json.dumps(payload, ensure_ascii=False) + "\n")
        self.stream.flush()

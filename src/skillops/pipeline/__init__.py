"""Staged pipeline primitives."""

from skillops.pipeline.run import (
    PipelineRun,
    RunStatus,
    StageOutcome,
    StageResult,
    StateMachine,
)

__all__ = [
    "PipelineRun",
    "RunStatus",
    "StageOutcome",
    "StageResult",
    "StateMachine",
]

"""Pipeline runs: persistence, locking, retries and the engine."""

from shipline.runs.engine import (
    EngineClosedError,
    PipelineEngine,
    StageCollaborators,
    UnknownEnvironmentError,
)
from shipline.runs.models import PipelineRun, StageAttempt
from shipline.runs.service import RunNotFoundError

__all__ = [
    "EngineClosedError",
    "PipelineEngine",
    "PipelineRun",
    "RunNotFoundError",
    "StageAttempt",
    "StageCollaborators",
    "UnknownEnvironmentError",
]

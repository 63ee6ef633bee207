"""Durable review pipeline: orchestrator, checkpointed stage runner, store gateway and engine."""

from app.pipeline.engine import PipelineEngine
from app.pipeline.gateway import ReviewNotFoundError, StoreGateway
from app.pipeline.runner import StageFailedError, StagePolicy

__all__ = [
    "PipelineEngine",
    "ReviewNotFoundError",
    "StageFailedError",
    "StagePolicy",
    "StoreGateway",
]

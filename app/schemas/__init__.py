"""Pydantic request/response schemas."""

from app.schemas.findings import (
    DataFlowMap,
    DataFlowNode,
    Finding,
    Location,
    RawFinding,
    ReachabilityVerdict,
    Sanitizer,
    TriageResult,
)
from app.schemas.health import HealthResponse
from app.schemas.pipeline import (
    ApprovalDecision,
    ApprovalEvent,
    DiffHunk,
    PipelineOutcome,
    PipelineParams,
    PipelineStage,
    Remediation,
    ReviewStatus,
    StatusUpdate,
    SynthesisResult,
)
from app.schemas.review import (
    ApprovalRequest,
    ApprovalResponse,
    FindingsResponse,
    ReviewRead,
    ReviewStatusResponse,
    SubmitReviewRequest,
    SubmitReviewResponse,
)

__all__ = [
    "ApprovalDecision",
    "ApprovalEvent",
    "ApprovalRequest",
    "ApprovalResponse",
    "DataFlowMap",
    "DataFlowNode",
    "DiffHunk",
    "Finding",
    "FindingsResponse",
    "HealthResponse",
    "Location",
    "PipelineOutcome",
    "PipelineParams",
    "PipelineStage",
    "RawFinding",
    "ReachabilityVerdict",
    "Remediation",
    "ReviewRead",
    "ReviewStatus",
    "ReviewStatusResponse",
    "Sanitizer",
    "StatusUpdate",
    "SubmitReviewRequest",
    "SubmitReviewResponse",
    "SynthesisResult",
    "TriageResult",
]

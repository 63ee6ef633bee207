"""Pydantic schemas for pipeline state: statuses, stages, synthesis, remediations, approval events."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReviewStatus(str, Enum):
    """Points on the orchestrator state machine."""

    PENDING = "pending"
    TRIAGING = "triaging"
    ANALYZING = "analyzing"
    FILTERING = "filtering"
    AWAITING_APPROVAL = "awaiting_approval"
    REMEDIATING = "remediating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[ReviewStatus] = frozenset(
    {ReviewStatus.COMPLETED, ReviewStatus.FAILED}
)


class PipelineStage(str, Enum):
    """Stage names recorded in reviews.current_stage."""

    TRIAGE = "triage"
    ANALYSIS = "analysis"
    REACHABILITY = "reachability"
    APPROVAL = "approval"
    REMEDIATION = "remediation"


ApprovalOutcome = Literal["approved", "rejected", "timed_out"]


class PipelineParams(BaseModel):
    """Everything a run needs; rebuilt from the review row when resuming."""

    review_id: str
    user_id: str
    code: str
    language: str = "auto"
    run_handle: str


class SynthesisResult(BaseModel):
    """Deterministic statistics over the filtered findings of one review."""

    total_raw: int = Field(..., ge=0)
    reachable_count: int = Field(..., ge=0)
    filtered_out_count: int = Field(..., ge=0)
    noise_reduction_percent: float = Field(..., ge=0, le=100)
    severity_breakdown: dict[str, int] = Field(default_factory=dict)
    summary: str = ""


class DiffHunk(BaseModel):
    """One unified-diff hunk between original and fixed code."""

    model_config = ConfigDict(extra="ignore")

    old_start: int = Field(default=1, ge=0)
    old_lines: int = Field(default=0, ge=0)
    new_start: int = Field(default=1, ge=0)
    new_lines: int = Field(default=0, ge=0)
    content: str = ""


class Remediation(BaseModel):
    """Generated fix for one approved, reachable finding."""

    id: str
    finding_id: str
    review_id: str
    original_code: str
    fixed_code: str
    explanation: str = ""
    diff_hunks: list[DiffHunk] = Field(default_factory=list)
    created_at: datetime


class ApprovalEvent(BaseModel):
    """Human decision delivered to a suspended run."""

    approved: bool
    finding_ids: list[str] = Field(default_factory=list)

    @field_validator("finding_ids")
    @classmethod
    def strip_and_dedupe(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for finding_id in v:
            cleaned = finding_id.strip()
            if cleaned and cleaned not in seen:
                seen.append(cleaned)
        return seen


class ApprovalDecision(BaseModel):
    """Resolved approval wait: an event, or the synthetic no-decision payload on timeout."""

    approved: bool
    finding_ids: list[str] = Field(default_factory=list)
    outcome: ApprovalOutcome


class StatusUpdate(BaseModel):
    """Status transition pushed to observers."""

    type: Literal["status_update"] = "status_update"
    review_id: str
    status: ReviewStatus
    current_stage: str | None = None
    error: str | None = None
    timestamp: datetime


class PipelineOutcome(BaseModel):
    """Return value of one orchestrator run."""

    review_id: str
    status: ReviewStatus
    synthesis: SynthesisResult | None = None
    remediations: list[Remediation] = Field(default_factory=list)
    approval_outcome: ApprovalOutcome | None = None
    error: str | None = None

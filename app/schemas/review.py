"""Request/response schemas for the reviews API, plus the read model returned by the store gateway."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.findings import Finding
from app.schemas.pipeline import Remediation, ReviewStatus

MAX_CODE_BYTES = 512 * 1024


class ReviewRead(BaseModel):
    """Snapshot of a review row, detached from the session that loaded it."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    code: str
    language: str
    status: ReviewStatus
    current_stage: str | None = None
    created_at: datetime
    updated_at: datetime
    run_handle: str | None = None
    total_findings_raw: int = 0
    total_findings_filtered: int = 0
    noise_reduction_percent: float = 0.0
    error: str | None = None
    approval_outcome: str | None = None


class SubmitReviewRequest(BaseModel):
    """Body for POST /reviews."""

    code: str = Field(..., min_length=1, description="Source code to analyze for security vulnerabilities.")
    language: str | None = Field(
        default=None,
        max_length=64,
        description="Programming language (auto-detected if not provided).",
    )

    @field_validator("code")
    @classmethod
    def validate_code_size(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("code must not be blank")
        if len(v.encode("utf-8")) > MAX_CODE_BYTES:
            raise ValueError(f"code must not exceed {MAX_CODE_BYTES // 1024} KB")
        return v


class SubmitReviewResponse(BaseModel):
    review_id: str
    status: ReviewStatus
    message: str


class ReviewStats(BaseModel):
    raw_findings: int = Field(..., ge=0)
    exploitable_findings: int = Field(..., ge=0)
    noise_reduction_percent: float = Field(..., ge=0, le=100)


class ReviewStatusResponse(BaseModel):
    """Response for GET /reviews/{review_id} and entries of GET /reviews."""

    review_id: str
    status: ReviewStatus
    current_stage: str | None = None
    stats: ReviewStats
    approval_outcome: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class ReviewListResponse(BaseModel):
    user_id: str
    reviews: list[ReviewStatusResponse]


class FindingsResponse(BaseModel):
    review_id: str
    stats: ReviewStats
    findings: list[Finding]


class ApprovalRequest(BaseModel):
    """Body for POST /reviews/{review_id}/approval."""

    approved: bool = Field(default=True, description="False declines remediation for the whole review.")
    finding_ids: list[str] = Field(
        default_factory=list,
        max_length=1000,
        description="IDs of findings to approve for remediation.",
    )


class ApprovalResponse(BaseModel):
    review_id: str
    accepted: bool
    approved: bool
    approved_finding_ids: list[str]
    message: str


class RemediationsResponse(BaseModel):
    review_id: str
    remediations: list[Remediation]


class ComparedReview(BaseModel):
    id: str
    findings_count: int


class CompareReviewsResponse(BaseModel):
    """Reachable findings present only in the newer review, and those no longer present."""

    review_1: ComparedReview
    review_2: ComparedReview
    delta: int
    new_vulnerabilities: list[Finding]
    fixed_vulnerabilities: list[Finding]

"""Reviews endpoints: submit code, follow pipeline status, read findings, approve remediation."""

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi import status as http_status

from app.core.config import get_settings
from app.pipeline.engine import PipelineEngine
from app.pipeline.gateway import ReviewNotFoundError
from app.schemas.findings import Finding
from app.schemas.pipeline import TERMINAL_STATUSES, ApprovalEvent, StatusUpdate
from app.schemas.review import (
    ApprovalRequest,
    ApprovalResponse,
    CompareReviewsResponse,
    ComparedReview,
    FindingsResponse,
    RemediationsResponse,
    ReviewListResponse,
    ReviewRead,
    ReviewStats,
    ReviewStatusResponse,
    SubmitReviewRequest,
    SubmitReviewResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ANONYMOUS_USER = "anonymous"


def get_engine(request: Request) -> PipelineEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Review pipeline is not running.")
    return engine


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Caller identity as asserted by the fronting gateway; authentication happens upstream."""
    user_id = (x_user_id or "").strip()
    return user_id or ANONYMOUS_USER


def _owned_review(engine: PipelineEngine, review_id: str, user_id: str) -> ReviewRead:
    review = engine.gateway.get_review(review_id)
    if review is None or review.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"Review {review_id!r} not found.")
    return review


def _stats(review: ReviewRead) -> ReviewStats:
    return ReviewStats(
        raw_findings=review.total_findings_raw,
        exploitable_findings=review.total_findings_filtered,
        noise_reduction_percent=review.noise_reduction_percent,
    )


def _status_response(review: ReviewRead) -> ReviewStatusResponse:
    return ReviewStatusResponse(
        review_id=review.id,
        status=review.status,
        current_stage=review.current_stage,
        stats=_stats(review),
        approval_outcome=review.approval_outcome,
        error=review.error,
        created_at=review.created_at,
        updated_at=review.updated_at,
    )


@router.post("", response_model=SubmitReviewResponse, status_code=http_status.HTTP_202_ACCEPTED)
async def submit_review(
    body: SubmitReviewRequest,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> SubmitReviewResponse:
    """
    Submit code for a security review.

    The pipeline runs in the background; poll GET /reviews/{review_id} or subscribe to
    /reviews/{review_id}/events for progress.
    """
    review = await engine.submit(user_id, body.code, body.language)
    return SubmitReviewResponse(
        review_id=review.id,
        status=review.status,
        message="Review started. Findings will be ready for approval once analysis completes.",
    )


@router.get("", response_model=ReviewListResponse)
def list_reviews(
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    user_id: Annotated[str, Depends(get_user_id)],
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> ReviewListResponse:
    """Reviews of the calling user, newest first."""
    reviews = engine.gateway.list_reviews(user_id, limit=limit or get_settings().REVIEW_LIST_LIMIT)
    return ReviewListResponse(user_id=user_id, reviews=[_status_response(r) for r in reviews])


@router.get("/compare", response_model=CompareReviewsResponse)
def compare_reviews(
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    user_id: Annotated[str, Depends(get_user_id)],
    review_1: Annotated[str, Query(min_length=1)],
    review_2: Annotated[str, Query(min_length=1)],
) -> CompareReviewsResponse:
    """Reachable findings introduced by review_2 and those fixed since review_1."""
    _owned_review(engine, review_1, user_id)
    _owned_review(engine, review_2, user_id)
    before = engine.gateway.list_findings(review_1)
    after = engine.gateway.list_findings(review_2)

    def key(f: Finding) -> tuple[str, int]:
        return (f.title.strip().lower(), f.location.start_line)

    before_keys = {key(f) for f in before}
    after_keys = {key(f) for f in after}
    return CompareReviewsResponse(
        review_1=ComparedReview(id=review_1, findings_count=len(before)),
        review_2=ComparedReview(id=review_2, findings_count=len(after)),
        delta=len(after) - len(before),
        new_vulnerabilities=[f for f in after if key(f) not in before_keys],
        fixed_vulnerabilities=[f for f in before if key(f) not in after_keys],
    )


@router.get("/{review_id}", response_model=ReviewStatusResponse)
def get_review_status(
    review_id: str,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> ReviewStatusResponse:
    return _status_response(_owned_review(engine, review_id, user_id))


@router.get("/{review_id}/findings", response_model=FindingsResponse)
def get_findings(
    review_id: str,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    user_id: Annotated[str, Depends(get_user_id)],
    include_filtered: bool = False,
) -> FindingsResponse:
    """
    Findings ordered by severity. Only reachable findings unless include_filtered=true.

    A failed review returns no findings.
    """
    review = _owned_review(engine, review_id, user_id)
    try:
        findings = engine.gateway.list_findings(review_id, include_filtered=include_filtered)
    except ReviewNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    return FindingsResponse(review_id=review_id, stats=_stats(review), findings=findings)


@router.post("/{review_id}/approval", response_model=ApprovalResponse)
async def approve_findings(
    review_id: str,
    body: ApprovalRequest,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> ApprovalResponse:
    """
    Approve findings for remediation, or reject with approved=false.

    Accepted once, while the review is awaiting approval; later calls get 409.
    """
    review = await asyncio.to_thread(_owned_review, engine, review_id, user_id)
    event = ApprovalEvent(approved=body.approved, finding_ids=body.finding_ids if body.approved else [])
    if not review.run_handle or not await engine.approval_open(review.run_handle):
        raise HTTPException(
            status_code=409,
            detail=f"Review {review_id!r} is not awaiting approval (status: {review.status.value}).",
        )

    if event.finding_ids:
        stored = await asyncio.to_thread(engine.gateway.list_findings, review_id, include_filtered=True)
        known = {f.id for f in stored}
        unknown = [fid for fid in event.finding_ids if fid not in known]
        if unknown:
            raise HTTPException(
                status_code=422,
                detail=f"Unknown finding ids for review {review_id!r}: {', '.join(unknown[:10])}",
            )

    accepted = await engine.send_approval_event(review.run_handle, event)
    if not accepted:
        raise HTTPException(status_code=409, detail="An approval decision was already recorded for this review.")

    if event.approved and event.finding_ids:
        message = f"Approved {len(event.finding_ids)} finding(s) for remediation."
    elif event.approved:
        message = "No findings selected; review will complete without remediation."
    else:
        message = "Remediation rejected; review will complete without remediation."
    return ApprovalResponse(
        review_id=review_id,
        accepted=True,
        approved=event.approved,
        approved_finding_ids=event.finding_ids,
        message=message,
    )


@router.get("/{review_id}/remediations", response_model=RemediationsResponse)
def get_remediations(
    review_id: str,
    engine: Annotated[PipelineEngine, Depends(get_engine)],
    user_id: Annotated[str, Depends(get_user_id)],
    finding_id: str | None = None,
) -> RemediationsResponse:
    _owned_review(engine, review_id, user_id)
    return RemediationsResponse(
        review_id=review_id,
        remediations=engine.gateway.list_remediations(review_id, finding_id=finding_id),
    )


@router.websocket("/{review_id}/events")
async def review_events(websocket: WebSocket, review_id: str) -> None:
    """Stream status updates for one of the caller's reviews until it reaches a terminal status."""
    engine: PipelineEngine | None = getattr(websocket.app.state, "engine", None)
    user_id = get_user_id(websocket.headers.get("x-user-id"))
    review = await asyncio.to_thread(engine.gateway.get_review, review_id) if engine is not None else None
    if review is None or review.user_id != user_id:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    queue = engine.notifier.subscribe(review_id)
    try:
        # Re-read after subscribing so a transition between the two reads is not lost.
        review = await asyncio.to_thread(engine.gateway.get_review, review_id) or review
        snapshot = StatusUpdate(
            review_id=review.id,
            status=review.status,
            current_stage=review.current_stage,
            error=review.error,
            timestamp=review.updated_at,
        )
        await websocket.send_json(snapshot.model_dump(mode="json"))
        status = review.status
        while status not in TERMINAL_STATUSES:
            update = await queue.get()
            await websocket.send_json(update.model_dump(mode="json"))
            status = update.status
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug("Status subscriber disconnected", extra={"review_id": review_id})
    finally:
        engine.notifier.unsubscribe(queue, review_id)

"""State store gateway: the only path through which pipeline state reaches durable storage.

Every write is idempotent under redelivery. Review statistics are recomputed from the
persisted finding set on each store instead of being incremented.
"""

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.models import ApprovalEventRecord, StepCheckpoint
from app.models import Finding as FindingRow
from app.models import Remediation as RemediationRow
from app.models import Review
from app.schemas.findings import SEVERITY_RANK, UNKNOWN_SEVERITY_RANK, Finding, Location
from app.schemas.pipeline import (
    ApprovalEvent,
    ApprovalOutcome,
    DiffHunk,
    Remediation,
    ReviewStatus,
    StatusUpdate,
    SynthesisResult,
    TERMINAL_STATUSES,
)
from app.schemas.review import ReviewRead
from app.services.stages.synthesis import noise_reduction_percent

logger = logging.getLogger(__name__)


class ReviewNotFoundError(Exception):
    """Raised when a review id does not exist."""

    def __init__(self, review_id: str) -> None:
        self.review_id = review_id
        self.message = f"Review {review_id!r} not found."
        super().__init__(self.message)


def new_review_id() -> str:
    return f"rev-{uuid.uuid4().hex[:16]}"


def new_run_handle() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


def _severity_order():
    return case(SEVERITY_RANK, value=FindingRow.severity, else_=UNKNOWN_SEVERITY_RANK)


def _apply_finding(row: FindingRow, finding: Finding) -> None:
    """Copy analysis fields onto a row; approval fields are owned by the approval step."""
    row.category = finding.category
    row.severity = finding.severity
    row.title = finding.title
    row.description = finding.description
    row.location_start_line = finding.location.start_line
    row.location_end_line = finding.location.end_line
    row.location_snippet = finding.location.snippet
    row.cwe_id = finding.cwe_id
    row.owasp_category = finding.owasp_category
    row.is_reachable = finding.is_reachable
    row.has_user_input_path = finding.has_user_input_path
    row.data_flow_path = [node.model_dump() for node in finding.data_flow_path]
    row.sanitizers_in_path = [s.model_dump() for s in finding.sanitizers_in_path]
    row.false_positive_reason = None if finding.is_reachable else finding.false_positive_reason


def row_to_finding(row: FindingRow) -> Finding:
    return Finding(
        id=row.id,
        category=row.category,
        severity=row.severity,
        title=row.title,
        description=row.description,
        location=Location(
            start_line=row.location_start_line,
            end_line=row.location_end_line,
            snippet=row.location_snippet or "",
        ),
        cwe_id=row.cwe_id,
        owasp_category=row.owasp_category,
        is_reachable=row.is_reachable,
        has_user_input_path=row.has_user_input_path,
        data_flow_path=row.data_flow_path or [],
        sanitizers_in_path=row.sanitizers_in_path or [],
        false_positive_reason=row.false_positive_reason,
        approved=row.approved,
        approved_at=row.approved_at,
    )


def row_to_remediation(row: RemediationRow) -> Remediation:
    return Remediation(
        id=row.id,
        finding_id=row.finding_id,
        review_id=row.review_id,
        original_code=row.original_code,
        fixed_code=row.fixed_code,
        explanation=row.explanation,
        diff_hunks=[DiffHunk.model_validate(h) for h in (row.diff_hunks or [])],
        created_at=row.created_at,
    )


class StoreGateway:
    """Synchronous gateway over a SQLAlchemy session factory; one short transaction per operation."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    # Reviews

    def create_review(self, user_id: str, code: str, language: str | None) -> ReviewRead:
        now = _now()
        with self._session_factory() as db:
            review = Review(
                id=new_review_id(),
                user_id=user_id,
                code=code,
                language=(language or "auto").strip() or "auto",
                status=ReviewStatus.PENDING.value,
                current_stage=None,
                created_at=now,
                updated_at=now,
                run_handle=new_run_handle(),
                total_findings_raw=0,
                total_findings_filtered=0,
                noise_reduction_percent=0.0,
            )
            db.add(review)
            db.commit()
            db.refresh(review)
            return ReviewRead.model_validate(review)

    def get_review(self, review_id: str) -> ReviewRead | None:
        with self._session_factory() as db:
            review = db.get(Review, review_id)
            return ReviewRead.model_validate(review) if review is not None else None

    def require_review(self, review_id: str) -> ReviewRead:
        review = self.get_review(review_id)
        if review is None:
            raise ReviewNotFoundError(review_id)
        return review

    def get_review_by_run_handle(self, run_handle: str) -> ReviewRead | None:
        with self._session_factory() as db:
            review = db.query(Review).filter(Review.run_handle == run_handle).first()
            return ReviewRead.model_validate(review) if review is not None else None

    def list_reviews(self, user_id: str, limit: int = 50) -> list[ReviewRead]:
        with self._session_factory() as db:
            rows = (
                db.query(Review)
                .filter(Review.user_id == user_id)
                .order_by(Review.created_at.desc(), Review.id)
                .limit(limit)
                .all()
            )
            return [ReviewRead.model_validate(r) for r in rows]

    def list_unfinished_reviews(self) -> list[ReviewRead]:
        terminal = [s.value for s in TERMINAL_STATUSES]
        with self._session_factory() as db:
            rows = (
                db.query(Review)
                .filter(Review.status.notin_(terminal))
                .order_by(Review.created_at)
                .all()
            )
            return [ReviewRead.model_validate(r) for r in rows]

    def update_status(
        self,
        review_id: str,
        status: ReviewStatus,
        stage: str | None,
        error: str | None = None,
    ) -> StatusUpdate:
        """
        Write status/stage and return the update for observers.

        Publishing is left to the caller, which may be running this in a worker thread while
        subscriber queues belong to the event loop. Idempotent: repeating the call rewrites the
        same values.
        """
        now = _now()
        with self._session_factory() as db:
            review = db.get(Review, review_id)
            if review is None:
                raise ReviewNotFoundError(review_id)
            review.status = status.value
            review.current_stage = stage
            review.updated_at = now
            if error is not None:
                review.error = error
            db.commit()

        logger.info(
            "Review status updated",
            extra={"review_id": review_id, "status": status.value, "stage": stage},
        )
        return StatusUpdate(
            review_id=review_id,
            status=status,
            current_stage=stage,
            error=error,
            timestamp=now,
        )

    def record_approval_outcome(self, review_id: str, outcome: ApprovalOutcome) -> None:
        with self._session_factory() as db:
            review = db.get(Review, review_id)
            if review is None:
                raise ReviewNotFoundError(review_id)
            review.approval_outcome = outcome
            review.updated_at = _now()
            db.commit()

    # Findings

    def store_findings(self, review_id: str, findings: list[Finding], synthesis: SynthesisResult) -> None:
        """
        Upsert findings by id and overwrite review statistics from the persisted set.

        Calling twice with the same arguments leaves the same rows and the same statistics.
        """
        with self._session_factory() as db:
            review = db.get(Review, review_id)
            if review is None:
                raise ReviewNotFoundError(review_id)

            ids = [f.id for f in findings]
            existing = {
                row.id: row
                for row in db.query(FindingRow).filter(FindingRow.id.in_(ids)).all()
            } if ids else {}
            for finding in findings:
                row = existing.get(finding.id)
                if row is None:
                    row = FindingRow(id=finding.id, review_id=review_id, approved=False)
                    db.add(row)
                    existing[finding.id] = row
                elif row.review_id != review_id:
                    logger.warning(
                        "Finding id belongs to another review; skipping",
                        extra={"review_id": review_id, "finding_id": finding.id},
                    )
                    continue
                _apply_finding(row, finding)
            db.flush()

            reachable = (
                db.query(func.count(FindingRow.id))
                .filter(FindingRow.review_id == review_id, FindingRow.is_reachable.is_(True))
                .scalar()
            ) or 0
            review.total_findings_raw = synthesis.total_raw
            review.total_findings_filtered = reachable
            review.noise_reduction_percent = noise_reduction_percent(synthesis.total_raw, reachable)
            review.updated_at = _now()
            db.commit()

        logger.info(
            "Findings stored",
            extra={"review_id": review_id, "findings": len(findings), "reachable": reachable},
        )

    def list_findings(
        self,
        review_id: str,
        include_filtered: bool = False,
        finding_ids: list[str] | None = None,
    ) -> list[Finding]:
        """Findings ordered by severity rank, then id. A failed review exposes none."""
        with self._session_factory() as db:
            review = db.get(Review, review_id)
            if review is None:
                raise ReviewNotFoundError(review_id)
            if review.status == ReviewStatus.FAILED.value:
                return []
            query = db.query(FindingRow).filter(FindingRow.review_id == review_id)
            if not include_filtered:
                query = query.filter(FindingRow.is_reachable.is_(True))
            if finding_ids is not None:
                query = query.filter(FindingRow.id.in_(finding_ids))
            rows = query.order_by(_severity_order(), FindingRow.id).all()
            return [row_to_finding(r) for r in rows]

    def mark_findings_approved(self, review_id: str, finding_ids: list[str], approved_at: datetime | None = None) -> list[str]:
        """Set approved/approved_at on the named findings of a review; returns the ids updated."""
        if not finding_ids:
            return []
        approved_at = approved_at or _now()
        with self._session_factory() as db:
            rows = (
                db.query(FindingRow)
                .filter(FindingRow.review_id == review_id, FindingRow.id.in_(finding_ids))
                .all()
            )
            for row in rows:
                if not row.approved:
                    row.approved = True
                    row.approved_at = approved_at
            db.commit()
            return sorted(row.id for row in rows)

    # Remediations

    def store_remediations(self, review_id: str, remediations: list[Remediation]) -> int:
        """Append remediations; ids already present are left untouched. Returns rows inserted."""
        inserted = 0
        with self._session_factory() as db:
            if db.get(Review, review_id) is None:
                raise ReviewNotFoundError(review_id)
            ids = [r.id for r in remediations]
            present = {
                rid for (rid,) in db.query(RemediationRow.id).filter(RemediationRow.id.in_(ids)).all()
            } if ids else set()
            for rem in remediations:
                if rem.id in present:
                    continue
                db.add(
                    RemediationRow(
                        id=rem.id,
                        finding_id=rem.finding_id,
                        review_id=review_id,
                        original_code=rem.original_code,
                        fixed_code=rem.fixed_code,
                        explanation=rem.explanation,
                        diff_hunks=[h.model_dump() for h in rem.diff_hunks],
                        created_at=rem.created_at,
                    )
                )
                present.add(rem.id)
                inserted += 1
            db.commit()
        logger.info("Remediations stored", extra={"review_id": review_id, "inserted": inserted})
        return inserted

    def list_remediations(self, review_id: str, finding_id: str | None = None) -> list[Remediation]:
        with self._session_factory() as db:
            if db.get(Review, review_id) is None:
                raise ReviewNotFoundError(review_id)
            query = db.query(RemediationRow).filter(RemediationRow.review_id == review_id)
            if finding_id:
                query = query.filter(RemediationRow.finding_id == finding_id)
            return [row_to_remediation(r) for r in query.order_by(RemediationRow.id).all()]

    # Checkpoints and approval events

    def load_checkpoint(self, run_handle: str, step_name: str) -> tuple[bool, Any]:
        """Return (found, output) for a step of a run."""
        with self._session_factory() as db:
            row = db.get(StepCheckpoint, (run_handle, step_name))
            if row is None:
                return False, None
            return True, row.output

    def save_checkpoint(self, run_handle: str, step_name: str, output: Any) -> Any:
        """
        Record a step output once. If another writer got there first, its output is kept and returned.
        """
        with self._session_factory() as db:
            existing = db.get(StepCheckpoint, (run_handle, step_name))
            if existing is not None:
                return existing.output
            db.add(StepCheckpoint(run_handle=run_handle, step_name=step_name, output=output, created_at=_now()))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = db.get(StepCheckpoint, (run_handle, step_name))
                return existing.output if existing is not None else output
        return output

    def record_approval_event(self, run_handle: str, event: ApprovalEvent) -> bool:
        """Persist the first event for a run handle. Returns False if one was already recorded."""
        with self._session_factory() as db:
            if db.get(ApprovalEventRecord, run_handle) is not None:
                return False
            db.add(
                ApprovalEventRecord(
                    run_handle=run_handle,
                    approved=event.approved,
                    finding_ids=list(event.finding_ids),
                    received_at=_now(),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def load_approval_event(self, run_handle: str) -> ApprovalEvent | None:
        with self._session_factory() as db:
            row = db.get(ApprovalEventRecord, run_handle)
            if row is None:
                return None
            return ApprovalEvent(approved=row.approved, finding_ids=list(row.finding_ids or []))

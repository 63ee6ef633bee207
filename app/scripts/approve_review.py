"""
Record an approval decision for a review awaiting approval. Run from project root:
  python -m app.scripts.approve_review REVIEW_ID [FINDING_ID ...]
  python -m app.scripts.approve_review REVIEW_ID --reject
The server process picks the decision up on its next approval re-check.
"""
import argparse
import asyncio
import sys

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.pipeline.engine import PipelineEngine
from app.schemas.pipeline import ApprovalEvent
from app.services.analysis import OllamaAnalysisService


def main(argv: list[str] | None = None, session_factory=None) -> int:
    parser = argparse.ArgumentParser(description="Approve or reject remediation for a review.")
    parser.add_argument("review_id", help="Review id (rev-...)")
    parser.add_argument("finding_ids", nargs="*", help="Finding ids to remediate")
    parser.add_argument("--reject", action="store_true", help="Decline remediation for the whole review")
    args = parser.parse_args(argv)

    if args.reject and args.finding_ids:
        print("--reject takes no finding ids.", file=sys.stderr)
        return 1

    settings = get_settings()
    engine = PipelineEngine(session_factory or SessionLocal, OllamaAnalysisService(settings), settings)
    review = engine.gateway.get_review(args.review_id.strip())
    if review is None or not review.run_handle:
        print(f"Review '{args.review_id}' not found.", file=sys.stderr)
        return 1

    known = {f.id for f in engine.gateway.list_findings(review.id, include_filtered=True)}
    unknown = [fid for fid in args.finding_ids if fid not in known]
    if unknown:
        print(f"Unknown finding ids: {', '.join(unknown)}", file=sys.stderr)
        return 1

    event = ApprovalEvent(approved=not args.reject, finding_ids=args.finding_ids)
    if not asyncio.run(engine.send_approval_event(review.run_handle, event)):
        print(
            f"Review '{review.id}' is not awaiting approval (status: {review.status.value}).",
            file=sys.stderr,
        )
        return 1

    if event.approved:
        print(f"Approved {len(event.finding_ids)} finding(s) for review '{review.id}'.")
    else:
        print(f"Rejected remediation for review '{review.id}'.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

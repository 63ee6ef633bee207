"""Pipeline engine: owns the store gateway, notifier and approval registry, and one task per review."""

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session, sessionmaker

from app.pipeline.gateway import StoreGateway
from app.pipeline.notifier import StatusNotifier
from app.pipeline.orchestrator import APPROVAL_DEADLINE_STEP, APPROVAL_STEP, ReviewPipeline
from app.pipeline.runner import StageRunner, decode_output
from app.pipeline.suspension import ApprovalRegistry
from app.schemas.pipeline import ApprovalEvent, PipelineOutcome, PipelineParams, ReviewStatus
from app.schemas.review import ReviewRead

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.services.analysis import AnalysisService

logger = logging.getLogger(__name__)


class PipelineEngine:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        analysis: "AnalysisService",
        settings: "Settings",
    ) -> None:
        self.settings = settings
        self.notifier = StatusNotifier(queue_size=settings.NOTIFIER_QUEUE_SIZE)
        self.gateway = StoreGateway(session_factory)
        self.registry = ApprovalRegistry()
        self.pipeline = ReviewPipeline(self.gateway, analysis, self.registry, settings, self.notifier)
        self._tasks: dict[str, asyncio.Task[PipelineOutcome]] = {}

    async def submit(self, user_id: str, code: str, language: str | None = None) -> ReviewRead:
        """Persist a pending review and start its run."""
        review = await asyncio.to_thread(self.gateway.create_review, user_id, code, language)
        logger.info(
            "Review submitted",
            extra={"review_id": review.id, "user_id": user_id, "language": review.language, "code_chars": len(code)},
        )
        self.launch(review)
        return review

    def launch(self, review: ReviewRead) -> bool:
        """Start (or restart) the run for a review; no-op while a run for it is in flight."""
        running = self._tasks.get(review.id)
        if running is not None and not running.done():
            return False
        if not review.run_handle:
            logger.warning("Review has no run handle; not launched", extra={"review_id": review.id})
            return False
        params = PipelineParams(
            review_id=review.id,
            user_id=review.user_id,
            code=review.code,
            language=review.language,
            run_handle=review.run_handle,
        )
        task = asyncio.get_running_loop().create_task(self.pipeline.run(params), name=f"review-{review.id}")
        self._tasks[review.id] = task
        task.add_done_callback(_forget_when_done(self._tasks, review.id))
        return True

    def task_for(self, review_id: str) -> asyncio.Task[PipelineOutcome] | None:
        return self._tasks.get(review_id)

    async def resume_unfinished(self) -> list[str]:
        """Relaunch every non-terminal review; completed steps replay from their checkpoints."""
        unfinished = await asyncio.to_thread(self.gateway.list_unfinished_reviews)
        resumed = [r.id for r in unfinished if self.launch(r)]
        if resumed:
            logger.info("Resumed unfinished reviews", extra={"count": len(resumed), "review_ids": resumed})
        return resumed

    async def approval_open(self, run_handle: str) -> bool:
        """True while the run for run_handle is suspended at (or headed for) the approval gate."""
        return await asyncio.to_thread(self._approval_open, run_handle)

    def _approval_open(self, run_handle: str) -> bool:
        review = self.gateway.get_review_by_run_handle(run_handle)
        if review is None or review.status != ReviewStatus.AWAITING_APPROVAL:
            return False
        runner = StageRunner(self.gateway, run_handle)
        if runner.has_completed(APPROVAL_STEP):
            return False
        found, stored = self.gateway.load_checkpoint(run_handle, APPROVAL_DEADLINE_STEP)
        if found and decode_output(stored, datetime) <= datetime.now(UTC):
            return False
        return True

    async def send_approval_event(self, run_handle: str, event: ApprovalEvent) -> bool:
        """
        Deliver an approval decision to a suspended run.

        Returns False, changing nothing, when the run is not waiting: unknown handle, already
        resumed, expired, or an event was already recorded.
        """
        if not await self.approval_open(run_handle):
            logger.info("Approval event not accepted", extra={"run_handle": run_handle})
            return False
        if not await asyncio.to_thread(self.gateway.record_approval_event, run_handle, event):
            return False
        woken = self.registry.notify(run_handle, event)
        logger.info(
            "Approval event recorded",
            extra={
                "run_handle": run_handle,
                "approved": event.approved,
                "finding_ids": len(event.finding_ids),
                "woken": woken,
            },
        )
        return True

    async def shutdown(self) -> None:
        """Cancel in-flight runs; they resume from their last checkpoint on next startup."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


def _forget_when_done(tasks: dict[str, asyncio.Task], review_id: str):
    def _forget(task: asyncio.Task) -> None:
        if tasks.get(review_id) is task:
            del tasks[review_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Review task crashed",
                extra={"review_id": review_id, "error": repr(task.exception())},
            )

    return _forget

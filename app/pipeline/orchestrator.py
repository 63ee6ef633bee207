"""Review pipeline: the durable state machine driving one review from submission to completion.

Every external effect (analysis stage, status write, store write, approval wait) is a named
checkpointed step, so the whole run can be replayed after a restart and only unfinished
steps execute.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING

from app.pipeline.notifier import StatusNotifier
from app.pipeline.runner import StageFailedError, StagePolicy, StageRunner
from app.pipeline.suspension import ApprovalRegistry, wait_for_approval
from app.schemas.findings import RawFinding, ReachabilityVerdict, TriageResult
from app.schemas.pipeline import (
    ApprovalDecision,
    ApprovalOutcome,
    PipelineOutcome,
    PipelineParams,
    PipelineStage,
    Remediation,
    ReviewStatus,
    SynthesisResult,
)
from app.services.stages import reconcile_findings, synthesize

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.pipeline.gateway import StoreGateway
    from app.services.analysis import AnalysisService

logger = logging.getLogger(__name__)

# Specialist tasks fanned out during the analysis stage, in merge order.
ANALYSIS_TASKS = ("dependency", "auth", "injection", "secrets")

APPROVAL_STEP = "approval"
APPROVAL_DEADLINE_STEP = "approval-deadline"


def merge_raw_findings(review_id: str, per_task: list[list[RawFinding]]) -> list[RawFinding]:
    """Concatenate task results and rewrite ids to be unique across the review."""
    merged: list[RawFinding] = []
    seen: set[str] = set()
    for findings in per_task:
        for raw in findings:
            base = f"{review_id}:{raw.id or raw.category}"
            global_id = base
            suffix = 2
            while global_id in seen:
                global_id = f"{base}-{suffix}"
                suffix += 1
            seen.add(global_id)
            merged.append(raw.model_copy(update={"id": global_id}))
    return merged


class ReviewPipeline:
    def __init__(
        self,
        gateway: "StoreGateway",
        analysis: "AnalysisService",
        registry: ApprovalRegistry,
        settings: "Settings",
        notifier: StatusNotifier | None = None,
    ) -> None:
        self._gateway = gateway
        self._notifier = notifier
        self._analysis = analysis
        self._registry = registry
        self._settings = settings
        self._policy = StagePolicy.from_settings(settings)
        self._long_policy = StagePolicy.from_settings(settings, long_running=True)

    async def _write_status(
        self, review_id: str, status: ReviewStatus, stage: str | None, error: str | None = None
    ) -> None:
        update = await asyncio.to_thread(self._gateway.update_status, review_id, status, stage, error)
        if self._notifier is not None:
            self._notifier.publish(update)

    async def _set_status(self, runner: StageRunner, review_id: str, status: ReviewStatus, stage: str | None) -> None:
        await runner.step(f"status-{status.value}", partial(self._write_status, review_id, status, stage))

    async def run(self, params: PipelineParams) -> PipelineOutcome:
        """
        Drive a review to a terminal status.

        Stage failures end in status failed with the error recorded. Cancellation propagates
        untouched so the run can be resumed from its checkpoints later.
        """
        runner = StageRunner(self._gateway, params.run_handle)
        review_id = params.review_id
        stage = PipelineStage.TRIAGE.value
        try:
            await self._set_status(runner, review_id, ReviewStatus.TRIAGING, stage)
            triage: TriageResult = await runner.run_stage(
                "triage",
                partial(self._analysis.triage, params.code, params.language),
                TriageResult,
                self._policy,
            )

            stage = PipelineStage.ANALYSIS.value
            await self._set_status(runner, review_id, ReviewStatus.ANALYZING, stage)
            raw_findings = await self._run_analysis(runner, params, triage)

            stage = PipelineStage.REACHABILITY.value
            await self._set_status(runner, review_id, ReviewStatus.FILTERING, stage)
            verdicts: list[ReachabilityVerdict] = await runner.run_stage(
                "reachability",
                partial(
                    self._analysis.reachability,
                    params.code,
                    raw_findings,
                    triage.data_flow_map,
                    review_id,
                ),
                list[ReachabilityVerdict],
                self._long_policy,
            )
            findings = reconcile_findings(raw_findings, verdicts)
            synthesis, findings = synthesize(len(raw_findings), findings)
            await runner.step(
                "store-findings",
                partial(self._gateway.store_findings, review_id, findings, synthesis),
            )

            stage = PipelineStage.APPROVAL.value
            await self._set_status(runner, review_id, ReviewStatus.AWAITING_APPROVAL, stage)
            decision = await self._await_approval(runner, params)
            if not decision.approved or not decision.finding_ids:
                return await self._complete(runner, params, synthesis, decision.outcome)

            await runner.step(
                "approve-findings",
                partial(self._gateway.mark_findings_approved, review_id, decision.finding_ids),
            )
            selected = await asyncio.to_thread(
                self._gateway.list_findings, review_id, finding_ids=decision.finding_ids
            )
            if not selected:
                logger.info(
                    "Approval named no reachable findings; skipping remediation",
                    extra={"review_id": review_id, "requested": len(decision.finding_ids)},
                )
                return await self._complete(runner, params, synthesis, decision.outcome)

            stage = PipelineStage.REMEDIATION.value
            await self._set_status(runner, review_id, ReviewStatus.REMEDIATING, stage)
            remediations: list[Remediation] = await runner.run_stage(
                "remediation",
                partial(self._analysis.remediate, params.code, selected, review_id),
                list[Remediation],
                self._long_policy,
            )
            await runner.step(
                "store-remediations",
                partial(self._gateway.store_remediations, review_id, remediations),
            )
            return await self._complete(runner, params, synthesis, decision.outcome, remediations)

        except asyncio.CancelledError:
            logger.info("Review run cancelled; resumable from checkpoints", extra={"review_id": review_id})
            raise
        except StageFailedError as e:
            return await self._fail(review_id, stage, str(e))
        except Exception as e:
            logger.exception("Review run failed unexpectedly", extra={"review_id": review_id, "stage": stage})
            return await self._fail(review_id, stage, f"{type(e).__name__}: {e}")

    async def _run_analysis(self, runner: StageRunner, params: PipelineParams, triage: TriageResult) -> list[RawFinding]:
        """Fan out the specialist tasks; join on all of them; any failure fails the stage."""
        results = await asyncio.gather(
            *(
                runner.run_stage(
                    name,
                    partial(getattr(self._analysis, name), params.code, triage),
                    list[RawFinding],
                    self._policy,
                )
                for name in ANALYSIS_TASKS
            ),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            if isinstance(error, asyncio.CancelledError):
                raise error
        if errors:
            failed = [e for e in errors if isinstance(e, StageFailedError)]
            raise failed[0] if failed else errors[0]

        merged = merge_raw_findings(params.review_id, list(results))
        logger.info(
            "Analysis fan-in complete",
            extra={
                "review_id": params.review_id,
                "raw_findings": len(merged),
                "per_task": {name: len(r) for name, r in zip(ANALYSIS_TASKS, results)},
            },
        )
        return merged

    async def _await_approval(self, runner: StageRunner, params: PipelineParams) -> ApprovalDecision:
        deadline: datetime = await runner.step(
            APPROVAL_DEADLINE_STEP,
            lambda: datetime.now(UTC) + timedelta(hours=self._settings.APPROVAL_TIMEOUT_HOURS),
            datetime,
        )
        return await runner.step(
            APPROVAL_STEP,
            partial(
                wait_for_approval,
                self._gateway,
                self._registry,
                params.run_handle,
                deadline,
                self._settings.APPROVAL_POLL_INTERVAL_SEC,
            ),
            ApprovalDecision,
        )

    async def _complete(
        self,
        runner: StageRunner,
        params: PipelineParams,
        synthesis: SynthesisResult,
        outcome: ApprovalOutcome,
        remediations: list[Remediation] | None = None,
    ) -> PipelineOutcome:
        await runner.step(
            "approval-outcome",
            partial(self._gateway.record_approval_outcome, params.review_id, outcome),
        )
        await self._set_status(runner, params.review_id, ReviewStatus.COMPLETED, None)
        logger.info(
            "Review completed",
            extra={
                "review_id": params.review_id,
                "approval_outcome": outcome,
                "remediations": len(remediations or []),
            },
        )
        return PipelineOutcome(
            review_id=params.review_id,
            status=ReviewStatus.COMPLETED,
            synthesis=synthesis,
            remediations=remediations or [],
            approval_outcome=outcome,
        )

    async def _fail(self, review_id: str, stage: str, error: str) -> PipelineOutcome:
        logger.error("Review failed", extra={"review_id": review_id, "stage": stage, "error": error})
        await self._write_status(review_id, ReviewStatus.FAILED, stage, error)
        return PipelineOutcome(review_id=review_id, status=ReviewStatus.FAILED, error=error)

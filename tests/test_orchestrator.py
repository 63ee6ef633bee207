"""Review pipeline end to end against a stub analysis service and a throwaway SQLite store."""

import asyncio
import unittest

from app.pipeline.engine import PipelineEngine
from app.pipeline.orchestrator import merge_raw_findings
from app.pipeline.runner import StageRunner
from app.schemas.pipeline import ApprovalEvent, ReviewStatus
from tests.support import StubAnalysis, make_session_factory, make_settings, raw

VULNERABLE_CODE = '''from flask import request
import sqlite3

def get_user():
    user_id = request.args.get("id")
    conn = sqlite3.connect("app.db")
    return conn.execute(f"SELECT * FROM users WHERE id = {user_id}").fetchall()
'''


async def wait_for_status(engine: PipelineEngine, review_id: str, *statuses: ReviewStatus, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        review = engine.gateway.get_review(review_id)
        if review.status in statuses:
            return review
        await asyncio.sleep(0.01)
    raise AssertionError(f"review {review_id} never reached {statuses}")


def three_injection_findings() -> dict:
    return {"injection": [raw("f1", line=1), raw("f2", line=2), raw("f3", line=3)]}


class TestMergeRawFindings(unittest.TestCase):
    def test_ids_are_prefixed_and_unique(self) -> None:
        merged = merge_raw_findings(
            "rev-1",
            [[raw("x", category="dependency")], [raw("x", category="auth")], [raw("", category="secrets")]],
        )
        self.assertEqual([f.id for f in merged], ["rev-1:x", "rev-1:x-2", "rev-1:secrets"])


class TestApprovalPaths(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()

    def test_approving_two_of_three_yields_two_remediations(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings())

        async def scenario():
            engine = PipelineEngine(self.session_factory, analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            approved = [f"{review.id}:f1", f"{review.id}:f3"]
            accepted = await engine.send_approval_event(review.run_handle, ApprovalEvent(approved=True, finding_ids=approved))
            outcome = await task
            return engine, review, accepted, outcome

        engine, review, accepted, outcome = asyncio.run(scenario())
        self.assertTrue(accepted)
        self.assertEqual(outcome.status, ReviewStatus.COMPLETED)
        self.assertEqual(outcome.approval_outcome, "approved")
        remediations = engine.gateway.list_remediations(review.id)
        self.assertEqual(sorted(r.finding_id for r in remediations), [f"{review.id}:f1", f"{review.id}:f3"])
        self.assertEqual(analysis.calls["remediation"], 1)

        stored = engine.gateway.get_review(review.id)
        self.assertEqual(stored.status, ReviewStatus.COMPLETED)
        self.assertIsNone(stored.current_stage)
        approved_ids = {f.id for f in engine.gateway.list_findings(review.id) if f.approved}
        self.assertEqual(approved_ids, {f"{review.id}:f1", f"{review.id}:f3"})

    def test_rejection_completes_without_remediation(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings())

        async def scenario():
            engine = PipelineEngine(self.session_factory, analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            await engine.send_approval_event(review.run_handle, ApprovalEvent(approved=False))
            await task
            return engine, review

        engine, review = asyncio.run(scenario())
        stored = engine.gateway.get_review(review.id)
        self.assertEqual(stored.status, ReviewStatus.COMPLETED)
        self.assertEqual(stored.approval_outcome, "rejected")
        self.assertNotIn("remediation", analysis.calls)
        self.assertEqual(engine.gateway.list_remediations(review.id), [])

    def test_timeout_completes_without_remediation_and_rejects_late_event(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings())
        settings = make_settings(APPROVAL_TIMEOUT_HOURS=0.0001, APPROVAL_POLL_INTERVAL_SEC=0.05)

        async def scenario():
            engine = PipelineEngine(self.session_factory, analysis, settings)
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            await engine.task_for(review.id)
            late = await engine.send_approval_event(
                review.run_handle, ApprovalEvent(approved=True, finding_ids=[f"{review.id}:f1"])
            )
            return engine, review, late

        engine, review, late = asyncio.run(scenario())
        stored = engine.gateway.get_review(review.id)
        self.assertEqual(stored.status, ReviewStatus.COMPLETED)
        self.assertEqual(stored.approval_outcome, "timed_out")
        self.assertFalse(late)
        self.assertNotIn("remediation", analysis.calls)
        self.assertIsNone(engine.gateway.load_approval_event(review.run_handle))

    def test_second_event_is_not_accepted(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings())

        async def scenario():
            engine = PipelineEngine(self.session_factory, analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            first = await engine.send_approval_event(review.run_handle, ApprovalEvent(approved=False))
            second = await engine.send_approval_event(
                review.run_handle, ApprovalEvent(approved=True, finding_ids=[f"{review.id}:f1"])
            )
            await task
            return first, second

        first, second = asyncio.run(scenario())
        self.assertTrue(first)
        self.assertFalse(second)
        self.assertNotIn("remediation", analysis.calls)

    def test_approving_only_unreachable_findings_skips_remediation(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings(), unreachable={"f2"})

        async def scenario():
            engine = PipelineEngine(self.session_factory, analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            await engine.send_approval_event(
                review.run_handle, ApprovalEvent(approved=True, finding_ids=[f"{review.id}:f2"])
            )
            return engine, review, await task

        engine, review, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, ReviewStatus.COMPLETED)
        self.assertEqual(outcome.remediations, [])
        self.assertNotIn("remediation", analysis.calls)

    def test_event_recorded_by_another_process_is_picked_up(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings())

        async def scenario():
            engine = PipelineEngine(self.session_factory, analysis, make_settings(APPROVAL_POLL_INTERVAL_SEC=0.05))
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            # Written straight to the store, bypassing this engine's in-memory registry.
            engine.gateway.record_approval_event(
                review.run_handle, ApprovalEvent(approved=True, finding_ids=[f"{review.id}:f2"])
            )
            return engine, review, await asyncio.wait_for(task, timeout=5)

        engine, review, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, ReviewStatus.COMPLETED)
        self.assertEqual([r.finding_id for r in outcome.remediations], [f"{review.id}:f2"])


class TestFailures(unittest.TestCase):
    def test_fan_out_failure_fails_review_before_reachability(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings(), failures={"auth": 99})

        async def scenario():
            engine = PipelineEngine(make_session_factory(), analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            return engine, review, await engine.task_for(review.id)

        engine, review, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, ReviewStatus.FAILED)
        self.assertEqual(analysis.calls["auth"], 3)
        self.assertEqual(analysis.calls["injection"], 1)
        self.assertNotIn("reachability", analysis.calls)
        stored = engine.gateway.get_review(review.id)
        self.assertEqual(stored.status, ReviewStatus.FAILED)
        self.assertEqual(stored.current_stage, "analysis")
        self.assertIn("auth", stored.error)
        self.assertEqual(engine.gateway.list_findings(review.id, include_filtered=True), [])
        self.assertEqual(stored.total_findings_raw, 0)

    def test_transient_failure_is_retried(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings(), failures={"triage": 1, "injection": 2})

        async def scenario():
            engine = PipelineEngine(make_session_factory(), analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            await engine.send_approval_event(review.run_handle, ApprovalEvent(approved=False))
            return await task

        outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, ReviewStatus.COMPLETED)
        self.assertEqual(analysis.calls["triage"], 2)
        self.assertEqual(analysis.calls["injection"], 3)
        self.assertEqual(outcome.synthesis.total_raw, 3)

    def test_remediation_failure_fails_review(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings(), failures={"remediation": 99})

        async def scenario():
            engine = PipelineEngine(make_session_factory(), analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            await engine.send_approval_event(
                review.run_handle, ApprovalEvent(approved=True, finding_ids=[f"{review.id}:f1"])
            )
            return engine, review, await task

        engine, review, outcome = asyncio.run(scenario())
        self.assertEqual(outcome.status, ReviewStatus.FAILED)
        stored = engine.gateway.get_review(review.id)
        self.assertEqual(stored.current_stage, "remediation")
        self.assertEqual(engine.gateway.list_findings(review.id), [])


class TestFanIn(unittest.TestCase):
    def test_reachability_waits_for_the_slowest_task(self) -> None:
        analysis = StubAnalysis(per_task=three_injection_findings())

        async def scenario():
            gate = asyncio.Event()
            analysis.gates["secrets"] = gate
            engine = PipelineEngine(make_session_factory(), analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)

            runner = StageRunner(engine.gateway, review.run_handle)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 5
            while not all(runner.has_completed(name) for name in ("dependency", "auth", "injection")):
                if loop.time() > deadline:
                    raise AssertionError("fast analysis tasks never settled")
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.1)
            calls_while_pending = dict(analysis.calls)
            status_while_pending = engine.gateway.get_review(review.id).status

            gate.set()
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            await engine.send_approval_event(review.run_handle, ApprovalEvent(approved=False))
            return calls_while_pending, status_while_pending, await task

        pending_calls, pending_status, outcome = asyncio.run(scenario())
        self.assertEqual(pending_calls.get("secrets"), 1)
        self.assertNotIn("reachability", pending_calls)
        self.assertEqual(pending_status, ReviewStatus.ANALYZING)
        self.assertEqual(analysis.calls["reachability"], 1)
        self.assertEqual(outcome.status, ReviewStatus.COMPLETED)


class TestResume(unittest.TestCase):
    def test_resumed_run_replays_completed_stages(self) -> None:
        session_factory = make_session_factory()
        first = StubAnalysis(per_task=three_injection_findings())
        second = StubAnalysis(per_task=three_injection_findings())

        async def scenario():
            engine = PipelineEngine(session_factory, first, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            await engine.shutdown()

            restarted = PipelineEngine(session_factory, second, make_settings())
            resumed = await restarted.resume_unfinished()
            task = restarted.task_for(review.id)
            accepted = await restarted.send_approval_event(
                review.run_handle, ApprovalEvent(approved=True, finding_ids=[f"{review.id}:f1"])
            )
            return restarted, review, resumed, accepted, await task

        engine, review, resumed, accepted, outcome = asyncio.run(scenario())
        self.assertEqual(resumed, [review.id])
        self.assertTrue(accepted)
        self.assertEqual(outcome.status, ReviewStatus.COMPLETED)
        self.assertEqual(set(second.calls), {"remediation"})
        self.assertEqual(len(engine.gateway.list_findings(review.id)), 3)
        self.assertEqual(len(engine.gateway.list_remediations(review.id)), 1)

    def test_completed_review_is_not_resumed(self) -> None:
        session_factory = make_session_factory()
        analysis = StubAnalysis()

        async def scenario():
            engine = PipelineEngine(session_factory, analysis, make_settings())
            review = await engine.submit("alice", "x = 1", "python")
            await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            await engine.send_approval_event(review.run_handle, ApprovalEvent(approved=False))
            await engine.task_for(review.id)
            return await PipelineEngine(session_factory, StubAnalysis(), make_settings()).resume_unfinished()

        self.assertEqual(asyncio.run(scenario()), [])


class TestEndToEnd(unittest.TestCase):
    def test_single_reachable_injection_finding(self) -> None:
        injection = raw("inj-1", severity="critical", title="SQL injection via f-string", line=7)
        analysis = StubAnalysis(per_task={"injection": [injection]})
        session_factory = make_session_factory()

        async def scenario():
            engine = PipelineEngine(session_factory, analysis, make_settings())
            review = await engine.submit("alice", VULNERABLE_CODE, "python")
            task = engine.task_for(review.id)
            waiting = await wait_for_status(engine, review.id, ReviewStatus.AWAITING_APPROVAL)
            findings = engine.gateway.list_findings(review.id)
            await engine.send_approval_event(
                review.run_handle, ApprovalEvent(approved=True, finding_ids=[f.id for f in findings])
            )
            return engine, waiting, findings, await task

        engine, waiting, findings, outcome = asyncio.run(scenario())
        self.assertEqual(waiting.total_findings_raw, 1)
        self.assertEqual(waiting.total_findings_filtered, 1)
        self.assertEqual(waiting.noise_reduction_percent, 0.0)
        self.assertEqual(waiting.current_stage, "approval")
        self.assertEqual(len(findings), 1)
        self.assertTrue(findings[0].is_reachable)
        self.assertTrue(findings[0].data_flow_path)
        self.assertEqual(findings[0].category, "injection")
        self.assertEqual(outcome.status, ReviewStatus.COMPLETED)
        self.assertEqual(len(outcome.remediations), 1)
        self.assertEqual(outcome.remediations[0].finding_id, findings[0].id)


if __name__ == "__main__":
    unittest.main()

"""Reviews API over TestClient with a stub-backed pipeline engine."""

import time
import unittest

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.core.database import get_db
from app.main import create_app
from app.pipeline.engine import PipelineEngine
from tests.support import StubAnalysis, make_session_factory, make_settings, raw

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}
CODE = "def handler(req):\n    return db.execute('SELECT * FROM t WHERE id=' + req.args['id'])\n"


class TestReviewsApi(unittest.TestCase):
    def setUp(self) -> None:
        session_factory = make_session_factory()
        self.analysis = StubAnalysis(
            per_task={"injection": [raw("f1", line=1), raw("f2", line=2), raw("f3", line=3)]},
            unreachable={"f2"},
        )
        self.engine = PipelineEngine(session_factory, self.analysis, make_settings())
        app = create_app(self.engine)

        def override_get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)

    def _submit(self, headers: dict = ALICE) -> str:
        resp = self.client.post("/api/v1/reviews", json={"code": CODE, "language": "python"}, headers=headers)
        self.assertEqual(resp.status_code, 202, resp.text)
        return resp.json()["review_id"]

    def _wait_for(self, review_id: str, status: str, headers: dict = ALICE, timeout: float = 5.0) -> dict:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            body = self.client.get(f"/api/v1/reviews/{review_id}", headers=headers).json()
            if body["status"] == status:
                return body
            time.sleep(0.02)
        self.fail(f"review {review_id} never reached {status}")

    def test_health_reports_pipeline_running(self) -> None:
        body = self.client.get("/api/v1/health/").json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["pipeline"], "running")
        self.assertEqual(body["database"], "connected")

    def test_submit_rejects_blank_code(self) -> None:
        resp = self.client.post("/api/v1/reviews", json={"code": "   "}, headers=ALICE)
        self.assertEqual(resp.status_code, 422)

    def test_full_approval_flow(self) -> None:
        review_id = self._submit()
        waiting = self._wait_for(review_id, "awaiting_approval")
        self.assertEqual(waiting["current_stage"], "approval")
        self.assertEqual(waiting["stats"]["raw_findings"], 3)
        self.assertEqual(waiting["stats"]["exploitable_findings"], 2)
        self.assertEqual(waiting["stats"]["noise_reduction_percent"], 33.33)

        findings = self.client.get(f"/api/v1/reviews/{review_id}/findings", headers=ALICE).json()["findings"]
        self.assertEqual(len(findings), 2)
        self.assertTrue(all(f["is_reachable"] for f in findings))
        everything = self.client.get(
            f"/api/v1/reviews/{review_id}/findings", params={"include_filtered": True}, headers=ALICE
        ).json()["findings"]
        self.assertEqual(len(everything), 3)

        unknown = self.client.post(
            f"/api/v1/reviews/{review_id}/approval", json={"finding_ids": ["nope"]}, headers=ALICE
        )
        self.assertEqual(unknown.status_code, 422)

        ids = [f["id"] for f in findings]
        resp = self.client.post(f"/api/v1/reviews/{review_id}/approval", json={"finding_ids": ids}, headers=ALICE)
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertTrue(resp.json()["accepted"])

        self._wait_for(review_id, "completed")
        again = self.client.post(f"/api/v1/reviews/{review_id}/approval", json={"finding_ids": ids}, headers=ALICE)
        self.assertEqual(again.status_code, 409)

        remediations = self.client.get(f"/api/v1/reviews/{review_id}/remediations", headers=ALICE).json()
        self.assertEqual(len(remediations["remediations"]), 2)
        one = self.client.get(
            f"/api/v1/reviews/{review_id}/remediations", params={"finding_id": ids[0]}, headers=ALICE
        ).json()
        self.assertEqual([r["finding_id"] for r in one["remediations"]], [ids[0]])

        status = self.client.get(f"/api/v1/reviews/{review_id}", headers=ALICE).json()
        self.assertEqual(status["approval_outcome"], "approved")
        self.assertIsNone(status["current_stage"])

    def test_reviews_are_scoped_to_caller(self) -> None:
        review_id = self._submit(ALICE)
        self.assertEqual(self.client.get(f"/api/v1/reviews/{review_id}", headers=BOB).status_code, 404)
        self.assertEqual(self.client.get(f"/api/v1/reviews/{review_id}/findings", headers=BOB).status_code, 404)
        listed = self.client.get("/api/v1/reviews", headers=ALICE).json()
        self.assertEqual([r["review_id"] for r in listed["reviews"]], [review_id])
        self.assertEqual(self.client.get("/api/v1/reviews", headers=BOB).json()["reviews"], [])

    def test_unknown_review_and_rejection(self) -> None:
        self.assertEqual(
            self.client.post("/api/v1/reviews/rev-missing/approval", json={}, headers=ALICE).status_code,
            404,
        )
        review_id = self._submit()
        self._wait_for(review_id, "awaiting_approval")
        resp = self.client.post(f"/api/v1/reviews/{review_id}/approval", json={"approved": False}, headers=ALICE)
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["approved"])
        done = self._wait_for(review_id, "completed")
        self.assertEqual(done["approval_outcome"], "rejected")
        self.assertNotIn("remediation", self.analysis.calls)

    def test_compare_reviews(self) -> None:
        first = self._submit()
        self._wait_for(first, "awaiting_approval")
        self.analysis.per_task = {"injection": [raw("f1", line=1), raw("f9", title="Command injection", line=9)]}
        second = self._submit()
        self._wait_for(second, "awaiting_approval")

        body = self.client.get(
            "/api/v1/reviews/compare", params={"review_1": first, "review_2": second}, headers=ALICE
        ).json()
        self.assertEqual(body["review_1"]["findings_count"], 2)
        self.assertEqual(body["review_2"]["findings_count"], 2)
        self.assertEqual(body["delta"], 0)
        self.assertEqual([f["title"] for f in body["new_vulnerabilities"]], ["Command injection"])
        self.assertEqual([f["title"] for f in body["fixed_vulnerabilities"]], ["injection issue f3"])

    def test_status_events_stream_until_terminal(self) -> None:
        review_id = self._submit()
        self._wait_for(review_id, "awaiting_approval")
        findings = self.client.get(f"/api/v1/reviews/{review_id}/findings", headers=ALICE).json()["findings"]

        with self.client.websocket_connect(f"/api/v1/reviews/{review_id}/events", headers=ALICE) as ws:
            snapshot = ws.receive_json()
            self.assertEqual(snapshot["status"], "awaiting_approval")
            self.client.post(
                f"/api/v1/reviews/{review_id}/approval",
                json={"finding_ids": [findings[0]["id"]]},
                headers=ALICE,
            )
            statuses = [ws.receive_json()["status"], ws.receive_json()["status"]]
        self.assertEqual(statuses, ["remediating", "completed"])

    def test_events_for_unknown_review_are_refused(self) -> None:
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/api/v1/reviews/rev-missing/events", headers=ALICE) as ws:
                ws.receive_json()
        self.assertEqual(ctx.exception.code, 4404)

    def test_events_are_scoped_to_caller(self) -> None:
        review_id = self._submit(ALICE)
        for headers in (BOB, {}):
            with self.assertRaises(WebSocketDisconnect) as ctx:
                with self.client.websocket_connect(f"/api/v1/reviews/{review_id}/events", headers=headers) as ws:
                    ws.receive_json()
            self.assertEqual(ctx.exception.code, 4404)


if __name__ == "__main__":
    unittest.main()

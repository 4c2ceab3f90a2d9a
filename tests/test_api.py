"""Tests for the HTTP API.

Tests cover:
1. Health endpoint and request id propagation
2. Error envelope shape and engine error -> HTTP status mapping
3. End-to-end flows through the /v1 routes
"""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from tests.fixtures.evaluation import EVALUATION_ID, setup_evaluation
from vendoreval.api.main import create_app
from vendoreval.engine import EvaluationEngine

SCORES_URL = f"/v1/evaluations/{EVALUATION_ID}/scores"


def _score_body(evaluator_id: str = "e1", value: float = 4, **overrides: object) -> dict:
    body: dict = {
        "vendor_id": "v1",
        "criterion_id": "A",
        "evaluator_id": evaluator_id,
        "value": value,
        "rationale": f"{evaluator_id} assessment",
    }
    body.update(overrides)
    return body


@pytest.fixture
def client(scoring_engine: EvaluationEngine) -> TestClient:
    return TestClient(create_app(scoring_engine))


@pytest.fixture
def setup_client(engine: EvaluationEngine) -> TestClient:
    setup_evaluation(engine, ready=False)
    return TestClient(create_app(engine))


def _assert_envelope(response: httpx.Response, status: int, code: str) -> dict:
    assert response.status_code == status
    body = response.json()
    assert set(body) == {"code", "message", "details", "request_id"}
    assert body["code"] == code
    assert body["request_id"] == response.headers["X-Request-Id"]
    return body


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"]
        assert response.headers["X-Request-Id"]

    def test_request_id_is_echoed(self, client: TestClient) -> None:
        response = client.get("/health", headers={"X-Request-Id": "req-123"})

        assert response.headers["X-Request-Id"] == "req-123"

    def test_error_envelope_keeps_caller_request_id(self, client: TestClient) -> None:
        response = client.post(
            SCORES_URL, json=_score_body(value=9), headers={"X-Request-Id": "req-456"}
        )

        body = _assert_envelope(response, 422, "VALIDATION_ERROR")
        assert body["request_id"] == "req-456"


class TestErrorMapping:
    def test_out_of_scale_value(self, client: TestClient) -> None:
        response = client.post(SCORES_URL, json=_score_body(value=5.5))

        _assert_envelope(response, 422, "VALIDATION_ERROR")

    def test_missing_rationale_on_submit(self, client: TestClient) -> None:
        response = client.post(SCORES_URL, json=_score_body(rationale=""))

        body = _assert_envelope(response, 422, "VALIDATION_ERROR")
        assert body["details"] == {"field": "rationale"}

    def test_locked_scope(self, client: TestClient) -> None:
        lock = client.post(
            f"/v1/evaluations/{EVALUATION_ID}/locks",
            json={"actor": "lead", "scope_type": "vendor", "scope_id": "v1"},
        )
        assert lock.status_code == 201

        response = client.post(SCORES_URL, json=_score_body())

        body = _assert_envelope(response, 423, "LOCKED")
        assert body["details"] == {"scope_type": "vendor", "scope_id": "v1"}

    def test_unlock_requires_reason(self, client: TestClient) -> None:
        lock_body = {"actor": "lead", "scope_type": "evaluation", "scope_id": EVALUATION_ID}
        client.post(f"/v1/evaluations/{EVALUATION_ID}/locks", json=lock_body)

        response = client.post(f"/v1/evaluations/{EVALUATION_ID}/locks/unlock", json=lock_body)

        body = _assert_envelope(response, 422, "VALIDATION_ERROR")
        assert body["message"] == "reason required"

    def test_stale_version(self, client: TestClient) -> None:
        client.post(SCORES_URL, json=_score_body())
        client.post(SCORES_URL, json=_score_body(value=3, expected_version=1))

        response = client.post(SCORES_URL, json=_score_body(value=2, expected_version=1))

        body = _assert_envelope(response, 409, "CONCURRENCY_CONFLICT")
        assert body["details"] == {"expected_version": 1, "actual_version": 2}

    def test_unknown_evaluation(self, client: TestClient) -> None:
        _assert_envelope(client.get("/v1/evaluations/missing"), 404, "NOT_FOUND")

    def test_permission_denied(self, client: TestClient) -> None:
        response = client.post(
            f"/v1/evaluations/{EVALUATION_ID}/phase", json={"actor": "e1", "phase": "submitted"}
        )

        _assert_envelope(response, 403, "PERMISSION_DENIED")

    def test_request_validation_names_the_field(self, client: TestClient) -> None:
        body = _score_body()
        del body["vendor_id"]

        response = client.post(SCORES_URL, json=body)

        envelope = _assert_envelope(response, 422, "REQUEST_VALIDATION_FAILED")
        assert [e["field"] for e in envelope["details"]["errors"]] == ["vendor_id"]


class TestWeights:
    def test_mismatch_is_reported_then_blocks_scoring(self, setup_client: TestClient) -> None:
        response = setup_client.post(
            f"/v1/evaluations/{EVALUATION_ID}/weights",
            json={
                "actor": "lead",
                "scope": "category",
                "changed_id": "functional",
                "new_weight": 70,
            },
        )

        assert response.status_code == 200
        result = response.json()
        assert result["ok"] is False
        assert result["total"] == pytest.approx(110)
        assert result["message"] == "Category weights total 110% — must equal 100%"

        ready = setup_client.post(
            f"/v1/evaluations/{EVALUATION_ID}/ready", json={"actor": "admin"}
        )

        body = _assert_envelope(ready, 409, "WEIGHT_MISMATCH")
        assert body["details"]["total"] == pytest.approx(110)


class TestFlows:
    def test_scores_are_filtered_for_the_viewer(self, client: TestClient) -> None:
        client.post(SCORES_URL, json=_score_body("e1"))

        hidden = client.get(SCORES_URL, params={"viewer_id": "e2"})
        lead = client.get(SCORES_URL, params={"viewer_id": "lead"})

        assert hidden.json() == []
        assert [s["evaluator_id"] for s in lead.json()] == ["e1"]

    def test_reconciliation_to_ranking(self, client: TestClient) -> None:
        client.post(SCORES_URL, json=_score_body("e1", 4))
        client.post(SCORES_URL, json=_score_body("e2", 2))
        for evaluator_id in ("e1", "e2"):
            client.post(SCORES_URL, json=_score_body(evaluator_id, 3, criterion_id="B"))
            client.post(SCORES_URL, json=_score_body(evaluator_id, 5, criterion_id="C"))

        (item,) = client.get(f"/v1/evaluations/{EVALUATION_ID}/reconciliation").json()
        assert item["variance"] == 2.0
        item_url = f"/v1/reconciliation/{item['item_id']}"
        proposed = client.post(
            f"{item_url}/proposal",
            json={"proposer_id": "e1", "value": 3, "rationale": "Agreed after demo"},
        )
        assert proposed.json()["status"] == "consensus_proposed"
        accepted = client.post(f"{item_url}/accept", json={"evaluator_id": "e2"})
        assert accepted.json()["status"] == "consensus_locked"

        ranking = client.get(f"/v1/evaluations/{EVALUATION_ID}/ranking").json()
        assert ranking["vendors"][0]["display_total"] == 3.8
        breakdown = client.get("/v1/vendors/v1/breakdown").json()
        assert breakdown["total"] == pytest.approx(3.8)

    def test_progress(self, client: TestClient) -> None:
        client.post(SCORES_URL, json=_score_body("e1"))

        response = client.get(
            f"/v1/evaluations/{EVALUATION_ID}/vendors/v1/progress", params={"evaluator_id": "e1"}
        )

        assert response.json()["submitted"] == 1
        assert response.json()["total_criteria"] == 3

    def test_anomaly_detection_and_review(self, engine: EvaluationEngine) -> None:
        setup_evaluation(engine, vendors=("v1", "v2", "v3", "v4"))
        client = TestClient(create_app(engine))
        points = [
            {"vendor_id": vendor_id, "dimension": "price", "value": value}
            for vendor_id, value in (
                ("v1", 100_000),
                ("v2", 105_000),
                ("v3", 98_000),
                ("v4", 40_000),
            )
        ]

        recorded = client.post(
            f"/v1/evaluations/{EVALUATION_ID}/vendor-data", json={"points": points}
        )
        report = client.post(
            f"/v1/evaluations/{EVALUATION_ID}/anomalies/detect", json={"include_scores": False}
        ).json()

        assert recorded.json() == {"recorded": 4}
        (anomaly,) = report["anomalies"]
        assert anomaly["vendor_id"] == "v4"
        assert anomaly["severity"] == "critical"

        reviewed = client.post(
            f"/v1/anomalies/{anomaly['anomaly_id']}/status",
            json={"actor": "lead", "status": "under_review"},
        )
        assert reviewed.json()["status"] == "under_review"
        stats = client.get(f"/v1/evaluations/{EVALUATION_ID}/anomalies/stats").json()
        assert stats["total"] == 1

    def test_traceability_routes(self, client: TestClient) -> None:
        client.post(
            f"/v1/evaluations/{EVALUATION_ID}/requirements",
            json={"requirement_id": "R1", "category_id": "functional", "criterion_ids": ["A"]},
        )
        client.post(SCORES_URL, json=_score_body("e1", 4.5))

        matrix = client.get(f"/v1/evaluations/{EVALUATION_ID}/traceability").json()
        coverage = client.get(f"/v1/evaluations/{EVALUATION_ID}/coverage").json()
        drilldown = client.get(
            f"/v1/evaluations/{EVALUATION_ID}/traceability/R1/vendors/v1",
            params={"viewer_id": "e2"},
        ).json()

        (row,) = matrix["rows"]
        assert row["cells"][0]["rag"] == "green"
        assert coverage["covered_requirements"] == 1
        assert drilldown["scores"] == []
        assert drilldown["cell"]["value"] == 4.5

    def test_submit_all_drafts(self, client: TestClient) -> None:
        for criterion_id in ("A", "B"):
            client.post(
                SCORES_URL, json=_score_body(criterion_id=criterion_id, status="draft")
            )

        response = client.post(
            f"/v1/evaluations/{EVALUATION_ID}/vendors/v1/submit-all", json={"evaluator_id": "e1"}
        )

        assert response.status_code == 200
        assert [(s["criterion_id"], s["status"]) for s in response.json()] == [
            ("A", "submitted"),
            ("B", "submitted"),
        ]

    def test_link_evidence_to_unknown_score(self, client: TestClient) -> None:
        response = client.post(
            f"{SCORES_URL}/evidence",
            json={
                "vendor_id": "v1",
                "criterion_id": "A",
                "evaluator_id": "e1",
                "evidence_ids": ["ev-1"],
            },
        )

        _assert_envelope(response, 422, "VALIDATION_ERROR")

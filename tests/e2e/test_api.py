"""
PropelAI E2E Tests: HTTP API
============================

Drives complete jobs through the FastAPI surface. The runtime runs on the
TestClient's event loop, so background stages keep going between
requests and the tests poll the job resource like a real client would.

Tests:
- Submit, review every volume, completed proposal
- Iterate on a volume and read its iteration history
- Data-approval gate over HTTP
- Cancel and retry endpoints
- Error mapping: 404 / 409 / 422
"""

import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from fastapi.testclient import TestClient

from api.main import create_app
from pipeline.runtime import create_runtime
from tests.conftest import GOLDEN_PARSED_RFP, GOLDEN_RFP_TEXT, make_blocked_company_data, make_company_data


def job_body(company_data=None):
    return {
        "company_id": "acme",
        "rfp_text": GOLDEN_RFP_TEXT,
        "company_data": company_data or make_company_data(),
        "rfp_parsed_data": GOLDEN_PARSED_RFP,
    }


def poll(client, path, predicate, timeout=10.0):
    """GET ``path`` until ``predicate(json)`` holds"""
    deadline = time.time() + timeout
    while True:
        response = client.get(path)
        assert response.status_code == 200, response.text
        data = response.json()
        if predicate(data):
            return data
        if time.time() > deadline:
            raise AssertionError(f"{path} never reached the expected state: {data.get('status')}")
        time.sleep(0.02)


def wait_for_job(client, job_id, *statuses):
    return poll(client, f"/api/jobs/{job_id}", lambda d: d["status"] in statuses)


def decide(client, job_id, number, decision="approved", feedback="", iteration=0):
    """Answer a volume once it awaits a decision at ``iteration``"""
    poll(
        client,
        f"/api/jobs/{job_id}/volumes/{number}",
        lambda d: d["status"] == "awaiting_approval" and d["iteration"] == iteration,
    )
    response = client.post(
        f"/api/jobs/{job_id}/volumes/{number}/decision",
        json={"decision": decision, "feedback": feedback},
    )
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def client(settings, store, agents):
    runtime = create_runtime(settings, store=store, agents=agents)
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


@pytest.fixture
def submitted(client):
    response = client.post("/api/jobs", json=job_body())
    assert response.status_code == 202
    return response.json()["job_id"]


# =============================================================================
# Full Workflow
# =============================================================================

@pytest.mark.e2e
class TestProposalWorkflow:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers
        assert response.json()["database"] == "not configured"
        assert response.json()["store"] == "InMemoryJobStore"

    def test_health_checks_database(self, client):
        runtime = client.app.state.runtime
        outage = {"status": "unhealthy", "database": "connection refused"}
        runtime.engine = MagicMock()
        try:
            with patch("api.main.database_health_check", AsyncMock(return_value=outage)) as check:
                response = client.get("/api/health")
        finally:
            runtime.engine = None

        check.assert_awaited_once()
        assert response.status_code == 200
        assert response.json()["status"] == "unhealthy"
        assert response.json()["database"] == "connection refused"

    def test_submit_review_complete(self, client):
        response = client.post("/api/jobs", json=job_body())
        assert response.status_code == 202
        created = response.json()
        assert created["status"] == "queued"
        job_id = created["job_id"]

        for n in (1, 2, 3, 4):
            decide(client, job_id, n)

        job = wait_for_job(client, job_id, "completed")
        assert job["progress_percent"] == 100
        assert job["final_report"]["recommendation"] == "Proposal ready for submission"
        assert job["estimated_minutes"] == {"min": 4, "max": 8}
        assert "final_html" not in job
        assert "inputs" not in job
        assert [v["status"] for v in job["volumes"]] == ["approved"] * 4
        assert all("content" not in v for v in job["volumes"])

        volume = client.get(f"/api/jobs/{job_id}/volumes/1").json()
        assert volume["content"].startswith("<h1>Volume 1")
        assert volume["iterations"] == []

    def test_iterate_records_history(self, client, agents, submitted):
        agents.scorer.scores = {1: [65, 88]}

        decide(client, submitted, 1, "iterate", "Quantify the uptime record")
        decide(client, submitted, 1, iteration=1)
        for n in (2, 3, 4):
            decide(client, submitted, n)

        wait_for_job(client, submitted, "completed")
        volume = client.get(f"/api/jobs/{submitted}/volumes/1").json()
        assert volume["score"] == 88
        assert volume["iteration"] == 1
        assert len(volume["iterations"]) == 1
        assert volume["iterations"][0]["user_feedback"] == "Quantify the uptime record"
        assert volume["insights"]["compliance_gaps"][0]["requirement_id"] == "REQ-001"

    def test_data_approval_gate(self, client):
        response = client.post("/api/jobs", json=job_body(make_blocked_company_data()))
        job_id = response.json()["job_id"]

        job = wait_for_job(client, job_id, "blocked")
        assert job["validation_report"]["status"] == "blocked"
        assert job["validation_report"]["blockers"]

        response = client.post(
            f"/api/jobs/{job_id}/data-approval",
            json={"approved": True, "company_data": make_company_data()},
        )
        assert response.status_code == 200

        for n in (1, 2, 3, 4):
            decide(client, job_id, n)
        wait_for_job(client, job_id, "completed")

    def test_cancel_then_retry_refused(self, client, submitted):
        poll(client, f"/api/jobs/{submitted}/volumes/1", lambda d: d["status"] == "awaiting_approval")

        response = client.post(f"/api/jobs/{submitted}/cancel")
        assert response.status_code == 200
        assert response.json() == {"job_id": submitted, "accepted": True, "attempt": None}

        job = wait_for_job(client, submitted, "cancelled")
        assert job["completed_at"]

        response = client.post(f"/api/jobs/{submitted}/retry")
        assert response.status_code == 409

    def test_retry_after_generation_failure(self, client, agents):
        agents.writer.fail_volumes = {4}
        job_id = client.post("/api/jobs", json=job_body()).json()["job_id"]

        job = wait_for_job(client, job_id, "failed")
        assert job["error_message"] == "Volume generation failed for volume(s) 4"

        agents.writer.fail_volumes = set()
        response = client.post(f"/api/jobs/{job_id}/retry")
        assert response.status_code == 200
        assert response.json()["attempt"] == 2

        for n in (1, 2, 3, 4):
            decide(client, job_id, n)
        wait_for_job(client, job_id, "completed")
        assert agents.writer.calls.count(4) == 2


# =============================================================================
# Error Mapping
# =============================================================================

@pytest.mark.e2e
class TestErrorResponses:

    def test_unknown_job(self, client):
        assert client.get("/api/jobs/nope").status_code == 404
        assert client.get("/api/jobs/nope/volumes/1").status_code == 404
        assert client.post("/api/jobs/nope/cancel").status_code == 404
        assert client.post("/api/jobs/nope/retry").status_code == 404
        assert client.post("/api/jobs/nope/data-approval", json={}).status_code == 404
        response = client.post("/api/jobs/nope/volumes/1/decision", json={"decision": "approved"})
        assert response.status_code == 404

    def test_unknown_volume(self, client, submitted):
        assert client.get(f"/api/jobs/{submitted}/volumes/7").status_code == 404

    def test_invalid_submission(self, client):
        response = client.post("/api/jobs", json={"company_id": "acme"})
        assert response.status_code == 422

    def test_invalid_decision(self, client, submitted):
        response = client.post(f"/api/jobs/{submitted}/volumes/1/decision", json={"decision": "maybe"})
        assert response.status_code == 422

    def test_iterate_requires_feedback(self, client, submitted):
        response = client.post(
            f"/api/jobs/{submitted}/volumes/1/decision",
            json={"decision": "iterate", "feedback": "  "},
        )
        assert response.status_code == 422
        assert "Feedback is required" in response.json()["detail"]

    def test_decision_outside_review(self, client, submitted):
        for n in (1, 2, 3, 4):
            decide(client, submitted, n)
        wait_for_job(client, submitted, "completed")

        response = client.post(f"/api/jobs/{submitted}/volumes/2/decision", json={"decision": "approved"})
        assert response.status_code == 409

    def test_data_approval_when_not_blocked(self, client, submitted):
        response = client.post(f"/api/jobs/{submitted}/data-approval", json={"approved": True})
        assert response.status_code == 409

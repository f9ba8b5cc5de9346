"""
Tests for the automation ops routes.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app.db.helpers import DatabaseError
from app.features.automation.domain import Employee
from app.main import app


@pytest.fixture
def client(engine, apply_auth_override):
    apply_auth_override(app)
    app.state.automation_engine = engine
    yield TestClient(app)
    app.state.automation_engine = None
    app.dependency_overrides.clear()


def _transition_body(**overrides) -> dict:
    body = {
        "candidate_id": "cand-1",
        "from_stage": "INTERVIEW",
        "to_stage": "OFFER_SENT",
        "job_id": "job-1",
        "recruiter": {"id": "rec-1", "email": "grace@example.com", "name": "Grace Hopper"},
    }
    body.update(overrides)
    return body


def test_stage_transition_schedules_email(client, actions):
    response = client.post("/automation/stage-transitions", json=_transition_body())

    assert response.status_code == 202
    data = response.json()
    assert data["stage_email"]["duplicate"] is False
    assert data["stage_email"]["job_id"] == "job-1"
    assert data["hire_flow_job_id"] is None
    assert data["stage_email"]["action_id"] in actions.rows


def test_repeated_stage_transition_reports_duplicate(client):
    client.post("/automation/stage-transitions", json=_transition_body())
    response = client.post("/automation/stage-transitions", json=_transition_body())

    assert response.json()["stage_email"]["duplicate"] is True


def test_stage_transition_validates_body(client):
    response = client.post("/automation/stage-transitions", json={"candidate_id": "cand-1"})

    assert response.status_code == 422


def test_stage_transition_database_failure_is_503(client, engine):
    with patch.object(engine, "on_stage_change", AsyncMock(side_effect=DatabaseError("pool exhausted"))):
        response = client.post("/automation/stage-transitions", json=_transition_body())

    assert response.status_code == 503


def test_pending_cancel_and_skip(client):
    action_id = client.post("/automation/stage-transitions", json=_transition_body()).json()["stage_email"]["action_id"]

    pending = client.get("/automation/subjects/cand-1/pending").json()
    assert [action["id"] for action in pending["actions"]] == [action_id]
    assert pending["actions"][0]["status"] == "PENDING"

    assert client.post(f"/automation/actions/{action_id}/skip").status_code == 200
    assert client.post(f"/automation/actions/{action_id}/cancel").status_code == 200
    assert client.post(f"/automation/actions/{action_id}/cancel").status_code == 409
    assert client.post(f"/automation/actions/{action_id}/skip").status_code == 409


def test_trigger_sweep(client, queue):
    response = client.post("/automation/sweeps/reminder-processor")

    assert response.status_code == 202
    assert response.json()["job_id"] == queue.jobs[-1]["id"]
    assert queue.jobs[-1]["data"] == {"triggered_by": "manual"}


def test_trigger_unknown_sweep_is_404(client):
    response = client.post("/automation/sweeps/stage-email-send")

    assert response.status_code == 404
    assert "reminder-processor" in response.json()["detail"]


def test_stats(client):
    client.post("/automation/stage-transitions", json=_transition_body())

    data = client.get("/automation/stats").json()

    assert data["actions"]["STAGE_EMAIL"]["PENDING"] == 1
    assert "reminders" in data


def test_identity_preview(client, hires, identity):
    hires.employees["emp-1"] = Employee(
        id="emp-1", full_name="Ada Lovelace", personal_email="ada@example.com", status="ACTIVE"
    )
    identity.emails["emp-1"] = "ada@corp.example.com"

    data = client.get("/automation/identity/preview").json()

    assert data["count"] == 1
    assert data["employees"][0]["workspace_email"] == "ada@corp.example.com"
    assert hires.employees["emp-1"].work_email is None


def test_engine_not_ready_is_503(apply_auth_override):
    apply_auth_override(app)
    app.state.automation_engine = None
    try:
        response = TestClient(app).get("/automation/stats")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503


def test_routes_require_service_token(engine):
    app.state.automation_engine = engine
    client = TestClient(app)
    try:
        with patch("app.auth.verify.settings.AUTOMATION_API_TOKEN", "s3cret"):
            assert client.get("/automation/stats").status_code == 401
            bad = client.get("/automation/stats", headers={"Authorization": "Bearer wrong"})
            assert bad.status_code == 401
            good = client.get("/automation/stats", headers={"Authorization": "Bearer s3cret"})
            assert good.status_code == 200

        with patch("app.auth.verify.settings.AUTOMATION_API_TOKEN", None):
            assert client.get("/automation/stats").status_code == 503
    finally:
        app.state.automation_engine = None

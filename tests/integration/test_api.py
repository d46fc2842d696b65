"""
Operations API through FastAPI's TestClient.

The app module initialises the database at import time, so it is imported
inside the fixture once the per-test database is in place.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from conftest import VALID_SUMMARY, FakeTransport, ScriptedSummarizer, StaticPreferences, make_input
from fastapi.testclient import TestClient

from digestq.api.dependencies import set_service
from digestq.delivery.dispatcher import DeliveryDispatcher
from digestq.delivery.models import UserPreferences
from digestq.service import DigestService
from digestq.summarization.engine import SummarizationEngine

# Far enough in the past that the window is due whatever the clock says
OCCURRED = datetime(2020, 1, 6, 9, 1, tzinfo=UTC)


@pytest.fixture
def service(db):
    prefs = StaticPreferences([UserPreferences(recipient_id="alice", channels=frozenset({"realtime"}))])
    service = DigestService(
        engine=SummarizationEngine(ScriptedSummarizer(VALID_SUMMARY, VALID_SUMMARY), prefs),
        dispatcher=DeliveryDispatcher(
            {"realtime": FakeTransport("realtime", requires_ack=True)}, prefs, sleep_fn=lambda _: None
        ),
    )
    set_service(service)
    yield service
    set_service(None)


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.delenv("DIGESTQ_ADMIN_API_KEY", raising=False)
    monkeypatch.setattr("digestq.api.middleware.auth.is_production", lambda: False)
    from digestq.api.app import app

    return TestClient(app)


@pytest.fixture
def delivered(service, client):
    service.ingest(make_input(occurred_at=OCCURRED, title="Build 41 passed"))
    response = client.post("/jobs/run")
    assert response.status_code == 200
    summary = service.summaries.list_ready_micro_for_day("alice", "2020-01-06")[0]
    return summary


def test_root_lists_endpoints(client):
    body = client.get("/").json()
    assert body["status"] == "running"
    assert body["endpoints"]["run_cycle"] == "/jobs/run"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_database_health(client):
    body = client.get("/health/db").json()
    assert body["status"] == "healthy"
    assert body["schema_error"] is None


def test_run_cycle_reports_counts(service, client):
    service.ingest(make_input(occurred_at=OCCURRED, title="Build 41 passed"))

    body = client.post("/jobs/run").json()

    assert body == {
        "windows": {"processed": 1},
        "summaries": {"ready": 1},
        "outbox": {"seen": 1, "completed": 1},
        "deliveries": {"sent": 1},
    }


def test_summary_lookup(client, delivered):
    response = client.get(f"/summaries/{delivered.summary_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ready"
    assert body["granularity"] == "micro"
    assert body["bullets"] == ["Build 41 passed", "PR 7 needs review"]
    assert [(d["channel"], d["state"]) for d in body["deliveries"]] == [("realtime", "sent")]


def test_unknown_summary_is_404(client):
    assert client.get("/summaries/does-not-exist").status_code == 404


def test_ack_flow(client, delivered):
    path = f"/deliveries/{delivered.summary_id}/realtime/ack"

    first = client.post(path)
    second = client.post(path)

    assert first.status_code == 200
    assert first.json()["state"] == "acked"
    assert second.json()["state"] == "acked"
    assert client.post(f"/deliveries/{delivered.summary_id}/email/ack").status_code == 404


def test_ack_before_send_is_conflict(service, client, delivered):
    service.dispatcher.repository.create_pending(delivered.summary_id, "email")

    response = client.post(f"/deliveries/{delivered.summary_id}/email/ack")

    assert response.status_code == 409


def test_failure_report(client, delivered):
    response = client.post(
        f"/deliveries/{delivered.summary_id}/realtime/failure", json={"reason": "device gone"}
    )

    assert response.status_code == 200
    assert response.json()["state"] == "failed"
    assert response.json()["last_error"] == "device gone"


def test_daily_job(client, delivered):
    body = client.post("/jobs/daily", json={"day": "2020-01-06"}).json()

    assert body["day"] == "2020-01-06"
    assert body["summaries"] == {"ready": 1}
    assert body["deliveries"] == {"sent": 1}


def test_daily_job_rejects_bad_day(client):
    response = client.post("/jobs/daily", json={"day": "06/01/2020"})

    assert response.status_code == 422
    assert response.json()["invalid_fields"] == ["day"]


def test_retention_dry_run(client):
    body = client.post("/jobs/retention", json={"dry_run": True}).json()
    assert body["dry_run"] is True
    assert body["archived"] == 0


class TestAdminAuth:
    def test_missing_key_is_401(self, client, monkeypatch):
        monkeypatch.setenv("DIGESTQ_ADMIN_API_KEY", "secret-key")
        assert client.post("/jobs/run").status_code == 401

    def test_wrong_key_is_403(self, client, monkeypatch):
        monkeypatch.setenv("DIGESTQ_ADMIN_API_KEY", "secret-key")
        response = client.post("/jobs/run", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 403

    def test_right_key_passes(self, client, monkeypatch):
        monkeypatch.setenv("DIGESTQ_ADMIN_API_KEY", "secret-key")
        response = client.post("/jobs/run", headers={"Authorization": "Bearer secret-key"})
        assert response.status_code == 200

    def test_health_needs_no_key(self, client, monkeypatch):
        monkeypatch.setenv("DIGESTQ_ADMIN_API_KEY", "secret-key")
        assert client.get("/health").status_code == 200

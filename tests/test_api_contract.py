import time
import uuid

import pytest
from fastapi.testclient import TestClient

from profiler_app.api import app
from profiler_app.orchestrator import Orchestrator
from profiler_app.tasks import ExecutorSaturated


client = TestClient(app)


@pytest.fixture
def fake_orchestrator(monkeypatch, make_agents):
    monkeypatch.setattr("profiler_app.executor.make_orchestrator", lambda: Orchestrator(agents=make_agents()))


def poll(job_id, attempts=50):
    for _ in range(attempts):
        r = client.get(f"/osint/jobs/{job_id}")
        assert r.status_code == 200
        job = r.json()["job"]
        if job["status"] in ("completed", "failed"):
            return job
        time.sleep(0.1)
    return job


def test_healthz():
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json().get("ok") is True


def test_submit_and_poll_inline(fake_orchestrator, target_payload):
    r = client.post("/osint/profile", json=target_payload)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    uuid.UUID(body["job_id"])

    job = poll(body["job_id"])
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert job["current_phase"] == "Completed"
    assert job["result"]["nome"] == "Mario"
    assert job["result"]["completeness"] == 100
    assert job["error"] is None
    assert job["completed_at"] is not None


def test_enqueue_failure_falls_back_in_process(monkeypatch, fake_orchestrator, target_payload):
    class BrokenQueue:
        def enqueue(self, queue_name, payload):
            raise ConnectionError("broker down")

    monkeypatch.setenv("JOB_RUNNER", "queue")
    monkeypatch.setattr("profiler_app.tasks.get_queue", lambda: BrokenQueue())
    r = client.post("/osint/profile", json=target_payload)
    assert r.status_code == 200
    job = poll(r.json()["job_id"])
    assert job["status"] == "completed"


def test_unschedulable_job_is_failed(monkeypatch, target_payload):
    class FullRunner:
        def submit(self, fn, message):
            raise ExecutorSaturated("background executor is at capacity")

    monkeypatch.setattr("profiler_app.api.get_job_runner", lambda: FullRunner())
    r = client.post("/osint/profile", json=target_payload)
    assert r.status_code == 200
    job = client.get(f"/osint/jobs/{r.json()['job_id']}").json()["job"]
    assert job["status"] == "failed"
    assert "at capacity" in job["error"]


def test_failed_job_reports_message(target_payload):
    # default agents with AI disabled cannot pass base research
    r = client.post("/osint/profile", json=target_payload)
    job = poll(r.json()["job_id"])
    assert job["status"] == "failed"
    assert job["error"].startswith("Phase 1 failed")
    assert job["result"] is None


def test_sync_mode_returns_profile(fake_orchestrator, target_payload):
    r = client.post("/osint/profile", json={**target_payload, "sync": True})
    assert r.status_code == 200
    profile = r.json()["profile"]
    assert profile["cognome"] == "Rossi"
    listing = client.get("/osint/profiles").json()
    assert listing["pagination"]["total"] == 1


@pytest.mark.parametrize("change", [
    {"consenso_profilazione": False},
    {"data_consenso": ""},
    {"nome": ""},
])
def test_validation_errors_are_400(target_payload, change):
    r = client.post("/osint/profile", json={**target_payload, **change})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Invalid request"
    assert isinstance(body["details"], list) and body["details"]
    # rejected before a job row exists
    assert client.get("/osint/jobs").json()["jobs"] == []


def test_submit_rate_limited(monkeypatch, fake_orchestrator, target_payload):
    monkeypatch.setenv("RATE_LIMIT_OSINT_PROFILING_MAX", "2")
    for _ in range(2):
        assert client.post("/osint/profile", json=target_payload).status_code == 200
    r = client.post("/osint/profile", json=target_payload)
    assert r.status_code == 429
    assert r.headers["X-RateLimit-Limit"] == "2"
    assert r.headers["X-RateLimit-Remaining"] == "0"
    assert int(r.headers["Retry-After"]) > 0
    assert r.json()["reset_at"] == r.headers["X-RateLimit-Reset"]

    # other clients keep their own budget
    r = client.post("/osint/profile", json=target_payload, headers={"X-Forwarded-For": "203.0.113.9"})
    assert r.status_code == 200


def test_submit_limit_can_be_disabled(monkeypatch, fake_orchestrator, target_payload):
    monkeypatch.setenv("RATE_LIMIT_OSINT_PROFILING_MAX", "1")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    for _ in range(3):
        assert client.post("/osint/profile", json=target_payload).status_code == 200


def test_job_status_errors(monkeypatch):
    assert client.get("/osint/jobs/not-a-uuid").status_code == 400
    assert client.get(f"/osint/jobs/{uuid.uuid4()}").status_code == 404

    monkeypatch.setenv("RATE_LIMIT_JOB_STATUS_MAX", "1")
    client.get(f"/osint/jobs/{uuid.uuid4()}")
    assert client.get(f"/osint/jobs/{uuid.uuid4()}").status_code == 429


def test_plan_endpoint():
    r = client.get("/osint/profile")
    assert r.status_code == 200
    plan = r.json()["plan"]
    assert len(plan["phases"]) == 8
    assert plan["estimated_time_ms"] == 300000


def test_profiles_archive(fake_orchestrator, target_payload):
    client.post("/osint/profile", json=target_payload)
    client.post("/osint/profile", json={**target_payload, "id": "target_2", "nome": "Giulia", "cognome": "Bianchi"})

    listing = client.get("/osint/profiles", params={"search": "bianchi"}).json()
    assert listing["pagination"] == {"total": 1, "limit": 50, "offset": 0, "has_more": False}
    summary = listing["profiles"][0]
    assert summary["full_name"] == "Giulia Bianchi"
    assert summary["citta"] == "Milano"

    pid = summary["id"]
    detail = client.get(f"/osint/profiles/{pid}").json()["profile"]
    assert detail["profile_data"]["nome"] == "Giulia"

    assert client.delete(f"/osint/profiles/{pid}").status_code == 200
    assert client.get(f"/osint/profiles/{pid}").status_code == 404
    assert client.delete(f"/osint/profiles/{pid}").status_code == 404
    assert client.get("/osint/profiles/bad-id").status_code == 400


def test_jobs_listing_omits_results(fake_orchestrator, target_payload):
    client.post("/osint/profile", json=target_payload)
    jobs = client.get("/osint/jobs").json()["jobs"]
    assert len(jobs) == 1
    assert "result" not in jobs[0]

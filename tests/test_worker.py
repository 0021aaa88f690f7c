import importlib

import pytest
from sqlalchemy.exc import OperationalError

from profiler_app.db import get_session_factory
from profiler_app.executor import JobProcessor
from profiler_app.orchestrator import Orchestrator, OrchestrationError
from profiler_app.repo import JobRepo, ProfileRepo
from profiler_app.schemas import ProfilingTarget, build_job_message


@pytest.fixture
def repos():
    sf = get_session_factory()
    return JobRepo(sf), ProfileRepo(sf)


@pytest.fixture
def target(target_payload):
    return ProfilingTarget(**target_payload)


def test_processes_job_to_completion(repos, target, make_agents):
    jobs, profiles = repos
    job_id = jobs.create_job(target)
    proc = JobProcessor(jobs, profiles, lambda: Orchestrator(agents=make_agents()))
    assert proc.process(build_job_message(job_id, target, user_id="u7")) == "completed"

    job = jobs.get_job(job_id)
    assert job.status == "completed"
    assert job.progress == 100
    assert job.result["nome"] == "Mario"
    rows, total = profiles.list_profiles()
    assert total == 1
    assert rows[0].target_id == target.id
    assert rows[0].user_id == "u7"


def test_duplicate_delivery_is_skipped(repos, target, make_agents):
    jobs, profiles = repos
    job_id = jobs.create_job(target)
    agents = make_agents()
    proc = JobProcessor(jobs, profiles, lambda: Orchestrator(agents=agents))
    msg = build_job_message(job_id, target)
    assert proc.process(msg) == "completed"
    assert proc.process(msg) is None
    assert agents["family"].calls == 1
    assert jobs.get_job(job_id).status == "completed"


def test_orchestrator_error_marks_failed(repos, target, make_agents):
    jobs, profiles = repos
    job_id = jobs.create_job(target)
    proc = JobProcessor(jobs, profiles, lambda: Orchestrator(agents=make_agents(fail={"family", "career", "education"})))
    assert proc.process(build_job_message(job_id, target)) == "failed"
    job = jobs.get_job(job_id)
    assert job.status == "failed"
    assert job.error.startswith("Phase 1 failed")
    assert "Traceback" not in job.error


def test_legacy_v1_message(repos, target, make_agents):
    jobs, profiles = repos
    job_id = jobs.create_job(target)
    proc = JobProcessor(jobs, profiles, lambda: Orchestrator(agents=make_agents()))
    payload = {"schema_version": "1", "job_id": job_id, "target": target.model_dump(mode="json")}
    assert proc.process(payload) == "completed"


def test_malformed_message_fails_job(repos, target):
    jobs, profiles = repos
    job_id = jobs.create_job(target)
    proc = JobProcessor(jobs, profiles)
    assert proc.process({"schema_version": "9", "job_id": job_id}) is None
    job = jobs.get_job(job_id)
    assert job.status == "failed"
    assert job.error == "Malformed job message"


def test_batch_isolates_messages(repos, target, make_agents):
    jobs, profiles = repos
    good = jobs.create_job(target)
    bad = jobs.create_job(target)

    class Flaky:
        def __init__(self):
            self.n = 0

        def profile_target(self, target, progress_cb=None):
            self.n += 1
            if self.n == 1:
                raise OrchestrationError("first one breaks")
            return Orchestrator(agents=make_agents()).profile_target(target, progress_cb)

    flaky = Flaky()
    proc = JobProcessor(jobs, profiles, lambda: flaky)
    proc.process_batch([build_job_message(bad, target), {"garbage": True}, build_job_message(good, target)])
    assert jobs.get_job(bad).status == "failed"
    assert jobs.get_job(good).status == "completed"


def test_default_orchestrator_without_ai_fails_job(repos, target):
    from profiler_app.executor import process_job

    jobs, _ = repos
    job_id = jobs.create_job(target)
    assert process_job(build_job_message(job_id, target)) == "failed"
    assert "AI_ENABLED is false" in jobs.get_job(job_id).error


def test_worker_module_registers_handler():
    from profiler_app import celery_app, worker

    worker = importlib.reload(worker)
    queue = celery_app.get_queue()
    assert worker.app is queue.celery
    seen = []
    queue.register_worker(celery_app.QUEUE_OSINT_JOB, 1, seen.extend)
    queue.dispatch(celery_app.QUEUE_OSINT_JOB, [{"job_id": "x"}])
    assert seen == [{"job_id": "x"}]


class FlakyJobRepo(JobRepo):
    """start_job hits a transient database error on the first call."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.start_calls = 0

    def start_job(self, job_id):
        self.start_calls += 1
        if self.start_calls == 1:
            raise OperationalError("UPDATE osint_jobs", {}, Exception("database is locked"))
        return super().start_job(job_id)


def test_store_error_before_start_is_redelivered(target, make_agents):
    from profiler_app.celery_app import QUEUE_OSINT_JOB, DurableQueue

    sf = get_session_factory()
    jobs = FlakyJobRepo(sf)
    job_id = jobs.create_job(target)
    proc = JobProcessor(jobs, ProfileRepo(sf), lambda: Orchestrator(agents=make_agents()))

    queue = DurableQueue()
    queue.register_worker(QUEUE_OSINT_JOB, 1, proc.process_batch)
    result = queue.deliver_task.apply(args=[QUEUE_OSINT_JOB, build_job_message(job_id, target)])

    assert result.state == "SUCCESS"
    assert jobs.start_calls == 2
    assert jobs.get_job(job_id).status == "completed"


def test_batch_reraises_after_processing_siblings(target, make_agents):
    sf = get_session_factory()
    jobs = FlakyJobRepo(sf)
    stuck = jobs.create_job(target)
    ok = jobs.create_job(target)
    proc = JobProcessor(jobs, ProfileRepo(sf), lambda: Orchestrator(agents=make_agents()))

    with pytest.raises(OperationalError):
        proc.process_batch([build_job_message(stuck, target), build_job_message(ok, target)])
    assert jobs.get_job(stuck).status == "pending"
    assert jobs.get_job(ok).status == "completed"

    # redelivery of the whole batch finishes the first job and skips the second
    proc.process_batch([build_job_message(stuck, target), build_job_message(ok, target)])
    assert jobs.get_job(stuck).status == "completed"

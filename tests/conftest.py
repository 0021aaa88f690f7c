import pytest

from profiler_app.agents import Agent, AgentContext
from profiler_app.celery_app import reset_queue
from profiler_app.db import reset_session_factory
from profiler_app.rate_limiter import rate_limiter
from profiler_app.tasks import shutdown_background_executor


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    monkeypatch.setenv("CELERY_BROKER_URL", "memory://")
    monkeypatch.setenv("JOB_RUNNER", "inline")
    monkeypatch.setenv("AI_ENABLED", "false")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    reset_session_factory()
    reset_queue()
    rate_limiter.reset()
    yield
    shutdown_background_executor(wait=True)
    reset_queue()
    reset_session_factory()


class FakeAgent(Agent):
    def __init__(self, agent_id, confidence=80, fail=False, delay=0.0):
        self.agent_id = agent_id
        self.confidence = confidence
        self.fail = fail
        self.delay = delay
        self.calls = 0

    def run(self, context: AgentContext):
        import time

        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise RuntimeError(f"{self.agent_id} unavailable")
        return {"sintesi": f"{self.agent_id} for {context.target.nome}"}, self.confidence, [f"https://example.org/{self.agent_id}"]


AGENT_IDS = (
    "data_gathering", "family", "career", "education", "lifestyle", "wealth", "social",
    "content", "authority_signals", "work_model", "vision_goals", "needs_mapping", "engagement",
)


@pytest.fixture
def make_agents():
    def factory(fail=(), confidence=80, delays=None):
        delays = delays or {}
        return {
            aid: FakeAgent(aid, confidence=confidence, fail=aid in fail, delay=delays.get(aid, 0.0))
            for aid in AGENT_IDS
        }

    return factory


@pytest.fixture
def target_payload():
    return {
        "id": "target_1700000000000",
        "nome": "Mario",
        "cognome": "Rossi",
        "citta": "Milano",
        "email": "mario.rossi@example.org",
        "consenso_profilazione": True,
        "data_consenso": "2024-01-15T10:00:00Z",
    }

from __future__ import annotations
import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip()


def database_url() -> str:
    return env_str("DATABASE_URL", f"sqlite:///{(BASE_DIR / 'profiler.db').as_posix()}")


def job_runner_mode() -> str:
    return env_str("JOB_RUNNER", "queue").lower()


def orchestrator_timeout_s() -> int:
    return env_int("ORCHESTRATOR_TIMEOUT_S", 600)


def cors_origins() -> list[str]:
    cors_env = os.getenv("CORS_ORIGINS")
    if cors_env:
        return [o.strip() for o in cors_env.split(",") if o.strip()]
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

from __future__ import annotations
import datetime as dt
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import executor
from .ai_runner import ai_enabled, default_model
from .celery_app import broker_url
from .db import get_session_factory
from .orchestrator import Orchestrator, OrchestrationError
from .rate_limiter import (
    JOB_STATUS,
    OSINT_PROFILING,
    PROFILE_LIST,
    RATE_LIMITS,
    RateLimitProfile,
    get_client_identifier,
    limits_enabled,
    rate_limiter,
)
from .repo import JobRepo, ProfileRepo
from .schemas import ProfileRequest, build_job_message
from .settings import cors_origins, database_url, job_runner_mode, orchestrator_timeout_s
from .tasks import get_job_runner, shutdown_background_executor

load_dotenv()

# --- logging configuration ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
log = logging.getLogger("api")

origins = cors_origins()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.getLogger("uvicorn.error").info(
        "Startup config: JOB_RUNNER=%s DB=%s BROKER=%s AI_ENABLED=%s CORS_ORIGINS=%s",
        job_runner_mode(),
        _scheme(database_url()),
        _scheme(broker_url()),
        ai_enabled(),
        ",".join(origins),
    )
    get_session_factory()
    yield
    shutdown_background_executor(wait=False)


app = FastAPI(title="OSINT Profiling API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _scheme(url: str) -> str:
    return url.split("://", 1)[0]


def _jobs() -> JobRepo:
    return JobRepo(get_session_factory())


def _profiles() -> ProfileRepo:
    return ProfileRepo(get_session_factory())


# --- errors ---

class RateLimitExceeded(Exception):
    def __init__(self, profile: RateLimitProfile, limit: int, remaining: int, reset_at: int):
        self.profile = profile
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    reset_iso = dt.datetime.fromtimestamp(exc.reset_at / 1000, tz=dt.timezone.utc).isoformat()
    retry_after = max(0, -(-(exc.reset_at - int(time.time() * 1000)) // 1000))
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": f"Limit of {exc.limit} requests reached. Retry after {reset_iso}",
            "reset_at": reset_iso,
        },
        headers={
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": str(exc.remaining),
            "X-RateLimit-Reset": reset_iso,
            "Retry-After": str(retry_after),
        },
    )


@app.exception_handler(RequestValidationError)
async def _validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", ""))}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})


def rate_limited(profile: RateLimitProfile, always: bool = True):
    def dependency(request: Request) -> None:
        if not always and not limits_enabled():
            return
        limit = profile.effective_max()
        res = rate_limiter.check_profile(get_client_identifier(request.headers), profile)
        if not res.allowed:
            raise RateLimitExceeded(profile, limit, res.remaining, res.reset_at)

    return dependency


def _require_uuid(value: str, what: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"malformed {what}")


# --- routes ---

@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/config")
def get_runtime_config():
    """Return non-sensitive runtime configuration for debugging/UI hints."""
    return {
        "job_runner": job_runner_mode(),
        "queue_broker": _scheme(broker_url()),
        "database": _scheme(database_url()),
        "cors_origins": origins,
        "ai_enabled": ai_enabled(),
        "openai_key_present": bool(os.getenv("OPENAI_API_KEY")),
        "default_ai_model": default_model(),
        "orchestrator_timeout_s": orchestrator_timeout_s(),
        "rate_limits": {
            name: {"max_requests": p.effective_max(), "window_ms": p.window_ms}
            for name, p in RATE_LIMITS.items()
        },
        "rate_limit_enabled": limits_enabled(),
    }


@app.post("/osint/profile", dependencies=[Depends(rate_limited(OSINT_PROFILING, always=False))])
def create_profile_job(body: ProfileRequest):
    target = body.to_target()

    if body.sync:
        log.info("sync profiling for target=%s", target.id)
        try:
            profile = executor.make_orchestrator().profile_target(target)
        except OrchestrationError as e:
            log.error("sync profiling failed target=%s: %s", target.id, e)
            return JSONResponse(status_code=500, content={"error": "Profiling failed", "details": str(e)})
        _profiles().upsert(profile)
        return {"success": True, "profile": profile}

    try:
        job_id = _jobs().create_job(target)
    except Exception as e:
        log.exception("could not create job for target=%s", target.id)
        return JSONResponse(status_code=500, content={"error": "Could not create job", "details": str(e)})

    message = build_job_message(job_id, target)
    try:
        how = get_job_runner().submit(executor.process_job, message)
    except Exception as e:
        # fallback could not take it either; job never started
        log.error("job %s could not be dispatched: %s", job_id, e)
        _jobs().fail_job(job_id, f"Job could not be scheduled: {executor.public_error(e)}")
        how = "failed"
    log.info("job %s submitted via %s", job_id, how)
    return {"success": True, "job_id": job_id}


@app.get("/osint/profile")
def get_orchestration_plan():
    plan = Orchestrator(agents={}).generate_orchestration_plan()
    return {"success": True, "plan": plan}


@app.get("/osint/jobs/{job_id}", dependencies=[Depends(rate_limited(JOB_STATUS))])
def get_job_status(job_id: str):
    job_id = _require_uuid(job_id, "job_id")
    job = _jobs().get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return {"success": True, "job": job.to_public()}


@app.get("/osint/jobs", dependencies=[Depends(rate_limited(PROFILE_LIST))])
def list_jobs(limit: int = 50, offset: int = 0):
    jobs = _jobs().list_jobs(limit=min(200, max(1, limit)), offset=max(0, offset))
    return {"success": True, "jobs": [j.to_public(include_result=False) for j in jobs]}


def _profile_summary(p) -> Dict[str, Any]:
    target = (p.profile_data or {}).get("target") or {}
    return {
        "id": p.id,
        "target_id": p.target_id,
        "nome": p.nome,
        "cognome": p.cognome,
        "full_name": f"{p.nome} {p.cognome}",
        "citta": target.get("citta"),
        "overall_score": p.overall_score,
        "completeness": p.completeness,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


@app.get("/osint/profiles", dependencies=[Depends(rate_limited(PROFILE_LIST))])
def list_profiles(limit: int = 50, offset: int = 0, search: str = ""):
    limit = min(200, max(1, limit))
    offset = max(0, offset)
    rows, total = _profiles().list_profiles(limit=limit, offset=offset, search=search.strip())
    return {
        "success": True,
        "profiles": [_profile_summary(p) for p in rows],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": total > offset + limit,
        },
    }


@app.get("/osint/profiles/{profile_id}")
def get_profile(profile_id: str):
    profile_id = _require_uuid(profile_id, "profile_id")
    p = _profiles().get(profile_id)
    if p is None:
        raise HTTPException(status_code=404, detail="profile not found")
    return {"success": True, "profile": {**_profile_summary(p), "profile_data": p.profile_data}}


@app.delete("/osint/profiles/{profile_id}")
def delete_profile(profile_id: str):
    profile_id = _require_uuid(profile_id, "profile_id")
    if not _profiles().delete(profile_id):
        raise HTTPException(status_code=404, detail="profile not found")
    return {"success": True}

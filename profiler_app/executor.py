"""
Job execution shared by the queue worker and the in-process fallback:
start -> orchestrate -> archive -> complete, or fail with the error message.
Store errors raised before a job is started propagate so the queue redelivers
the message; everything after that is recorded on the job row.
"""
from __future__ import annotations
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .db import get_session_factory
from .orchestrator import Orchestrator
from .repo import JobRepo, ProfileRepo
from .schemas import MessageSchemaError, message_user_id, parse_job_message

log = logging.getLogger("executor")


def make_orchestrator() -> Orchestrator:
    return Orchestrator()


def public_error(exc: BaseException) -> str:
    """Message stored on the job row: no traceback, never empty."""
    msg = str(exc).strip()
    return msg or type(exc).__name__


class JobProcessor:
    def __init__(self, jobs: JobRepo, profiles: ProfileRepo, orchestrator_factory: Optional[Callable[[], Orchestrator]] = None):
        self.jobs = jobs
        self.profiles = profiles
        self.orchestrator_factory = orchestrator_factory

    def process(self, payload: Dict[str, Any]) -> Optional[str]:
        """Run one job message. Returns the terminal status reached, or None if skipped."""
        try:
            msg = parse_job_message(payload)
        except MessageSchemaError as e:
            job_id = payload.get("job_id") if isinstance(payload, dict) else None
            log.error("dropping malformed job message job_id=%s: %s", job_id, e)
            if job_id:
                self._fail(str(job_id), "Malformed job message")
            return None

        job_id = msg.job_id
        if not self.jobs.start_job(job_id):
            log.warning("job %s not pending, skipping (duplicate delivery?)", job_id)
            return None

        def on_progress(progress: int, phase: str) -> None:
            self.jobs.update_progress(job_id, progress, phase)

        try:
            factory = self.orchestrator_factory or make_orchestrator
            profile = factory().profile_target(msg.target, progress_cb=on_progress)
        except Exception as e:
            log.exception("job %s failed", job_id)
            self._fail(job_id, public_error(e))
            return "failed"

        try:
            self.profiles.upsert(profile, user_id=message_user_id(msg))
        except Exception:
            # the job result still carries the profile
            log.exception("job %s: archiving profile failed", job_id)

        try:
            self.jobs.complete_job(job_id, profile)
        except Exception:
            log.exception("job %s: could not record completion, row may stay processing", job_id)
            return None
        log.info("job %s completed", job_id)
        return "completed"

    def process_batch(self, messages: Iterable[Dict[str, Any]]) -> None:
        """Process every message, then re-raise the first error so the batch is retried."""
        errors: List[Exception] = []
        for payload in messages:
            try:
                self.process(payload)
            except Exception as e:
                log.exception("job message not processed, will be redelivered")
                errors.append(e)
        if errors:
            raise errors[0]

    def _fail(self, job_id: str, message: str) -> None:
        try:
            self.jobs.fail_job(job_id, message)
        except Exception:
            log.exception("could not record failure for job %s, row may stay processing", job_id)


def default_processor() -> JobProcessor:
    sf = get_session_factory()
    return JobProcessor(JobRepo(sf), ProfileRepo(sf))


def process_job(payload: Dict[str, Any]) -> Optional[str]:
    return default_processor().process(payload)


def process_batch(messages: Iterable[Dict[str, Any]]) -> None:
    default_processor().process_batch(messages)

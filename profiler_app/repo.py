"""
Repository layer over the SQLAlchemy session factory.

JobRepo is the only writer of osint_jobs rows. Every status change is a
guarded UPDATE (compare-and-set on the current status), so redelivered queue
messages cannot move a job out of a terminal state.
"""
from __future__ import annotations
import datetime as dt
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import sessionmaker

from .models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    OsintProfile,
    ProfilingJob,
    utcnow,
)
from .schemas import ProfilingTarget

log = logging.getLogger("job_store")


@dataclass(frozen=True)
class JobView:
    job_id: str
    status: str
    progress: int
    current_phase: Optional[str]
    target_data: Dict[str, Any]
    result: Optional[Dict[str, Any]]
    error: Optional[str]
    created_at: Optional[dt.datetime]
    started_at: Optional[dt.datetime]
    completed_at: Optional[dt.datetime]

    @classmethod
    def from_row(cls, row: ProfilingJob) -> "JobView":
        return cls(
            job_id=row.job_id,
            status=row.status,
            progress=int(row.progress or 0),
            current_phase=row.current_phase,
            target_data=dict(row.target_data or {}),
            result=row.result,
            error=row.error,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
        )

    def to_public(self, include_result: bool = True) -> Dict[str, Any]:
        def iso(d: Optional[dt.datetime]) -> Optional[str]:
            return d.isoformat() if d else None

        out = {
            "job_id": self.job_id,
            "status": self.status,
            "progress": self.progress,
            "current_phase": self.current_phase,
            "error": self.error,
            "created_at": iso(self.created_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
        }
        if include_result:
            out["result"] = self.result
        return out


class JobRepo:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_job(self, target: ProfilingTarget, user_id: Optional[str] = None) -> str:
        job_id = str(uuid.uuid4())
        with self.session_factory() as s:
            s.add(
                ProfilingJob(
                    job_id=job_id,
                    status=JOB_PENDING,
                    progress=0,
                    current_phase="Initializing",
                    target_data=target.model_dump(mode="json"),
                    user_id=user_id,
                )
            )
            s.commit()
        log.info("job created job_id=%s target=%s", job_id, target.id)
        return job_id

    def _transition(self, job_id: str, allowed_from: tuple[str, ...], **values: Any) -> bool:
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(ProfilingJob)
            .where(ProfilingJob.job_id == job_id, ProfilingJob.status.in_(allowed_from))
            .values(**values)
        )
        with self.session_factory() as s:
            res = s.execute(stmt)
            s.commit()
            return res.rowcount == 1

    def start_job(self, job_id: str) -> bool:
        ok = self._transition(
            job_id,
            (JOB_PENDING,),
            status=JOB_PROCESSING,
            started_at=utcnow(),
            progress=10,
            current_phase="Phase 0: Data Gathering",
        )
        if not ok:
            log.warning("start_job skipped job_id=%s (missing or not pending)", job_id)
        return ok

    def update_progress(self, job_id: str, progress: int, phase: str) -> bool:
        progress = max(0, min(99, int(progress)))
        return self._transition(job_id, (JOB_PROCESSING,), progress=progress, current_phase=phase)

    def complete_job(self, job_id: str, result: Dict[str, Any]) -> bool:
        ok = self._transition(
            job_id,
            (JOB_PROCESSING,),
            status=JOB_COMPLETED,
            completed_at=utcnow(),
            result=result,
            progress=100,
            current_phase="Completed",
        )
        if not ok:
            log.warning("complete_job skipped job_id=%s (not processing)", job_id)
        return ok

    def fail_job(self, job_id: str, error_message: str) -> bool:
        # first failure wins; terminal rows are left untouched
        ok = self._transition(
            job_id,
            (JOB_PENDING, JOB_PROCESSING),
            status=JOB_FAILED,
            completed_at=utcnow(),
            error=error_message or "Unknown error",
            current_phase="Error",
        )
        if not ok:
            log.warning("fail_job skipped job_id=%s (missing or already terminal)", job_id)
        return ok

    def get_job(self, job_id: str) -> Optional[JobView]:
        with self.session_factory() as s:
            row = s.get(ProfilingJob, job_id)
            return JobView.from_row(row) if row else None

    def list_jobs(self, limit: int = 50, offset: int = 0) -> List[JobView]:
        stmt = (
            select(ProfilingJob)
            .order_by(ProfilingJob.created_at.desc())
            .offset(max(0, offset))
            .limit(max(1, limit))
        )
        with self.session_factory() as s:
            return [JobView.from_row(r) for r in s.scalars(stmt)]


class ProfileRepo:
    """Permanent profile archive, keyed by target_id."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def upsert(self, profile: Dict[str, Any], user_id: Optional[str] = None) -> str:
        target = profile.get("target") or {}
        target_id = str(target.get("id"))
        values = {
            "nome": target.get("nome", ""),
            "cognome": target.get("cognome", ""),
            "profile_data": profile,
            "overall_score": int(profile.get("overall_score") or 0),
            "completeness": int(profile.get("completeness") or 0),
            "agents_used": list(profile.get("agents_used") or []),
            "consent_given": bool(target.get("consenso_profilazione")),
            "consent_date": target.get("data_consenso"),
            "user_id": user_id,
        }
        with self.session_factory() as s:
            row = s.scalars(select(OsintProfile).where(OsintProfile.target_id == target_id)).first()
            if row is None:
                row = OsintProfile(target_id=target_id, **values)
                s.add(row)
            else:
                for k, v in values.items():
                    setattr(row, k, v)
                row.updated_at = utcnow()
            s.commit()
            log.info("profile archived target_id=%s id=%s", target_id, row.id)
            return row.id

    def get(self, profile_id: str) -> Optional[OsintProfile]:
        with self.session_factory() as s:
            return s.get(OsintProfile, profile_id)

    def list_profiles(self, limit: int = 50, offset: int = 0, search: str = "") -> tuple[List[OsintProfile], int]:
        where = []
        if search:
            pattern = f"%{search.lower()}%"
            where.append(or_(func.lower(OsintProfile.nome).like(pattern), func.lower(OsintProfile.cognome).like(pattern)))
        stmt = select(OsintProfile).where(*where).order_by(OsintProfile.created_at.desc()).offset(max(0, offset)).limit(max(1, limit))
        count_stmt = select(func.count()).select_from(OsintProfile).where(*where)
        with self.session_factory() as s:
            rows = list(s.scalars(stmt))
            total = int(s.scalar(count_stmt) or 0)
        return rows, total

    def delete(self, profile_id: str) -> bool:
        with self.session_factory() as s:
            res = s.execute(delete(OsintProfile).where(OsintProfile.id == profile_id))
            s.commit()
            return res.rowcount == 1

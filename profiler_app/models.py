"""
SQLAlchemy models for the profiling job lifecycle and the profile archive.
"""
from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, declarative_base, mapped_column


def uuid4_str() -> str:
    return str(uuid.uuid4())


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
TERMINAL_STATUSES = (JOB_COMPLETED, JOB_FAILED)


Base = declarative_base()


class ProfilingJob(Base):
    __tablename__ = "osint_jobs"
    job_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid4_str)
    status: Mapped[str] = mapped_column(String(20), default=JOB_PENDING, index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    current_phase: Mapped[str | None] = mapped_column(String(120), nullable=True)
    target_data: Mapped[dict] = mapped_column(JSON, default=dict)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class OsintProfile(Base):
    __tablename__ = "osint_profiles"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid4_str)
    target_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    nome: Mapped[str] = mapped_column(String(255), nullable=False)
    cognome: Mapped[str] = mapped_column(String(255), nullable=False)
    profile_data: Mapped[dict] = mapped_column(JSON, default=dict)
    overall_score: Mapped[int] = mapped_column(Integer, default=0)
    completeness: Mapped[int] = mapped_column(Integer, default=0)
    agents_used: Mapped[list] = mapped_column(JSON, default=list)
    consent_given: Mapped[bool] = mapped_column(Boolean, default=False)
    consent_date: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

"""
DB wiring helpers. One engine/session factory per process, built from
DATABASE_URL on first use.
"""
from __future__ import annotations
import logging
import threading

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .models import Base
from .settings import database_url

log = logging.getLogger("db")

_factory: sessionmaker | None = None
_lock = threading.Lock()


def _build_factory(url: str) -> sessionmaker:
    connect_args = {}
    if url.startswith("sqlite"):
        # worker threads share the engine
        connect_args["check_same_thread"] = False
    engine = create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)
    Base.metadata.create_all(engine)
    log.info("db ready: dialect=%s", engine.dialect.name)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def get_session_factory() -> sessionmaker:
    global _factory
    if _factory is None:
        with _lock:
            if _factory is None:
                _factory = _build_factory(database_url())
    return _factory


def reset_session_factory() -> None:
    """Drop the cached factory so the next access re-reads DATABASE_URL."""
    global _factory
    with _lock:
        if _factory is not None:
            _factory.kw["bind"].dispose()
        _factory = None

"""
Fixed-window request limiter, in memory and per process.

A restart drops every counter; the limiter only guards downstream AI and
scraping spend, it is not a correctness mechanism.
"""
from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from .settings import env_bool, env_int

log = logging.getLogger("rate_limiter")

CLEANUP_INTERVAL_MS = 5 * 60 * 1000


@dataclass
class RateLimitEntry:
    count: int
    reset_at: int


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int


@dataclass(frozen=True)
class RateLimitProfile:
    name: str
    max_requests: int
    window_ms: int

    def effective_max(self) -> int:
        return env_int(f"RATE_LIMIT_{self.name}_MAX", self.max_requests)


OSINT_PROFILING = RateLimitProfile("OSINT_PROFILING", 5, 60 * 60 * 1000)
JOB_STATUS = RateLimitProfile("JOB_STATUS", 100, 60 * 1000)
PROFILE_LIST = RateLimitProfile("PROFILE_LIST", 20, 60 * 1000)
RATE_LIMITS = {p.name: p for p in (OSINT_PROFILING, JOB_STATUS, PROFILE_LIST)}


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._store: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def check(self, identifier: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            if now - self._last_cleanup >= CLEANUP_INTERVAL_MS:
                self._cleanup_locked(now)

            entry = self._store.get(identifier)
            if entry is None or entry.reset_at < now:
                reset_at = now + window_ms
                self._store[identifier] = RateLimitEntry(count=1, reset_at=reset_at)
                return RateLimitResult(True, max(0, max_requests - 1), reset_at)

            entry.count += 1
            if entry.count > max_requests:
                return RateLimitResult(False, 0, entry.reset_at)
            return RateLimitResult(True, max_requests - entry.count, entry.reset_at)

    def check_profile(self, identifier: str, profile: RateLimitProfile) -> RateLimitResult:
        return self.check(f"{profile.name}:{identifier}", profile.effective_max(), profile.window_ms)

    def reset(self, identifier: Optional[str] = None) -> None:
        """Forget one identifier, or every identifier when none is given."""
        with self._lock:
            if identifier is None:
                self._store.clear()
            else:
                keys = {identifier} | {f"{name}:{identifier}" for name in RATE_LIMITS}
                for key in keys:
                    self._store.pop(key, None)

    def cleanup(self) -> int:
        with self._lock:
            return self._cleanup_locked(self._clock())

    def _cleanup_locked(self, now: int) -> int:
        expired = [k for k, e in self._store.items() if e.reset_at < now]
        for k in expired:
            del self._store[k]
        self._last_cleanup = now
        if expired:
            log.debug("rate_limiter cleanup removed=%d", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)


rate_limiter = RateLimiter()


def limits_enabled() -> bool:
    return env_bool("RATE_LIMIT_ENABLED", True)


def get_client_identifier(headers: Mapping[str, str]) -> str:
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return "unknown"

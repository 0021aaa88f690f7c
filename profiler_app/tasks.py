from __future__ import annotations
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from .celery_app import QUEUE_OSINT_JOB, DurableQueue, get_queue
from .settings import env_int, job_runner_mode

log = logging.getLogger("executor")


class ExecutorSaturated(RuntimeError):
    pass


class BackgroundExecutor:
    """
    Bounded pool for fire-and-forget job execution inside the API process.
    At most max_pending submissions are in flight; beyond that submit() raises
    ExecutorSaturated instead of queueing without limit.
    """

    def __init__(self, max_workers: int = 2, max_pending: int = 8):
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="fallback")
        self._slots = threading.BoundedSemaphore(max(1, max_pending))
        self._inflight = 0
        self._lock = threading.Lock()

    @property
    def inflight(self) -> int:
        return self._inflight

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        if not self._slots.acquire(blocking=False):
            raise ExecutorSaturated("background executor is at capacity")
        with self._lock:
            self._inflight += 1
        try:
            fut = self._pool.submit(fn, *args, **kwargs)
        except RuntimeError:
            self._release()
            raise
        fut.add_done_callback(self._on_done)
        return fut

    def _release(self) -> None:
        with self._lock:
            self._inflight -= 1
        self._slots.release()

    def _on_done(self, fut: Future) -> None:
        self._release()
        exc = fut.exception() if not fut.cancelled() else None
        if exc is not None:
            log.error("background task failed: %s", exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


_background: Optional[BackgroundExecutor] = None
_background_lock = threading.Lock()


def get_background_executor() -> BackgroundExecutor:
    global _background
    if _background is None:
        with _background_lock:
            if _background is None:
                _background = BackgroundExecutor(
                    max_workers=env_int("FALLBACK_MAX_WORKERS", 2),
                    max_pending=env_int("FALLBACK_MAX_PENDING", 8),
                )
    return _background


def shutdown_background_executor(wait: bool = True) -> None:
    global _background
    with _background_lock:
        if _background is not None:
            _background.shutdown(wait=wait)
        _background = None


# --- job runners ---

JobFn = Callable[[Dict[str, Any]], Any]


class JobRunner:
    def submit(self, fn: JobFn, message: Dict[str, Any]) -> str:
        """Hand a job message to the runner; returns how it was dispatched."""
        raise NotImplementedError


class InlineRunner(JobRunner):
    """Executes the job inline (synchronously). Useful for debugging."""

    def submit(self, fn: JobFn, message: Dict[str, Any]) -> str:
        fn(message)
        return "inline"


class BackgroundRunner(JobRunner):
    """Runs the job on the bounded in-process pool after the response returns."""

    def __init__(self, executor: Optional[BackgroundExecutor] = None):
        self.executor = executor or get_background_executor()

    def submit(self, fn: JobFn, message: Dict[str, Any]) -> str:
        self.executor.submit(fn, message)
        return "background"


class QueueRunner(JobRunner):
    """
    Publishes to the durable queue. When the enqueue itself fails the same job
    runs on the fallback runner, so the client still gets a pollable job_id.
    """

    def __init__(self, queue: Optional[DurableQueue] = None, fallback: Optional[JobRunner] = None, queue_name: str = QUEUE_OSINT_JOB):
        self.queue = queue
        self.fallback = fallback
        self.queue_name = queue_name

    def submit(self, fn: JobFn, message: Dict[str, Any]) -> str:
        try:
            queue = self.queue or get_queue()
            queue.enqueue(self.queue_name, message)
            return "queue"
        except Exception as e:
            log.warning("enqueue failed for job %s, running in-process: %s", message.get("job_id"), e)
        fallback = self.fallback or BackgroundRunner()
        return fallback.submit(fn, message)


def get_job_runner() -> JobRunner:
    mode = job_runner_mode()
    if mode == "inline":
        return InlineRunner()
    if mode == "background":
        return BackgroundRunner()
    return QueueRunner()

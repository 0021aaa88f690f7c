"""
Durable job queue on Celery, using the application database as the broker
(kombu's SQLAlchemy transport), so queue messages and osint_jobs rows live in
the same database and no separate broker process is needed.

Env vars:
  - DATABASE_URL            broker defaults to "sqla+" + DATABASE_URL
  - CELERY_BROKER_URL       explicit broker override
  - CELERY_RESULT_BACKEND   optional; job state lives in osint_jobs anyway
  - QUEUE_MAX_RETRIES       handler retries before the task is marked failed
"""
from __future__ import annotations
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from celery import Celery

from .settings import database_url, env_int, env_str

log = logging.getLogger("queue")

QUEUE_OSINT_JOB = "osint-profile"
DELIVER_TASK = "profiler.deliver"

Handler = Callable[[List[Dict[str, Any]]], None]


class QueueUnavailable(RuntimeError):
    pass


def broker_url() -> str:
    explicit = env_str("CELERY_BROKER_URL", "")
    if explicit:
        return explicit
    return f"sqla+{database_url()}"


def _create_app() -> Celery:
    app = Celery("profiler", broker=broker_url(), backend=env_str("CELERY_RESULT_BACKEND", "") or None)
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_ignore_result=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
    )
    return app


class DurableQueue:
    def __init__(self, app: Optional[Celery] = None):
        self.celery = app or _create_app()
        self._handlers: Dict[str, Handler] = {}
        self._concurrency: Dict[str, int] = {}
        self._started = False
        self._lock = threading.Lock()
        self._register_tasks()

    def _register_tasks(self) -> None:
        queue = self
        max_retries = env_int("QUEUE_MAX_RETRIES", 3)

        @self.celery.task(name=DELIVER_TASK, bind=True, max_retries=max_retries, acks_late=True, reject_on_worker_lost=True)
        def deliver(task, queue_name: str, payload: Dict[str, Any]) -> None:
            try:
                queue.dispatch(queue_name, [payload])
            except Exception as exc:
                retries = task.request.retries or 0
                log.warning("queue handler failed queue=%s retry=%d/%d: %s", queue_name, retries, max_retries, exc)
                raise task.retry(exc=exc, countdown=min(600, 30 * (2 ** retries)))

        self.deliver_task = deliver

    def start(self) -> None:
        """Verify the broker once. Safe to call repeatedly."""
        if self._started:
            return
        with self._lock:
            if self._started:
                return
            try:
                with self.celery.connection_for_write() as conn:
                    conn.ensure_connection(max_retries=1)
            except Exception as e:
                raise QueueUnavailable(f"queue broker unreachable: {e}") from e
            self._started = True
            log.info("queue started broker=%s", self.celery.conf.broker_url.split("://")[0])

    def enqueue(self, queue_name: str, payload: Dict[str, Any]) -> str:
        """Publish one message. Broker errors propagate to the caller."""
        self.start()
        result = self.celery.send_task(
            DELIVER_TASK,
            args=[queue_name, payload],
            queue=queue_name,
            retry=False,
        )
        log.info("queue enqueue queue=%s job_id=%s task_id=%s", queue_name, payload.get("job_id"), result.id)
        return result.id

    def register_worker(self, queue_name: str, concurrency: int, handler: Handler) -> None:
        self._handlers[queue_name] = handler
        self._concurrency[queue_name] = max(1, int(concurrency))
        log.info("queue worker registered queue=%s concurrency=%d", queue_name, self._concurrency[queue_name])

    def dispatch(self, queue_name: str, messages: List[Dict[str, Any]]) -> None:
        handler = self._handlers.get(queue_name)
        if handler is None:
            raise KeyError(f"no handler registered for queue '{queue_name}'")
        handler(messages)

    def run_worker(self, queue_name: str, loglevel: str = "INFO") -> None:
        if queue_name not in self._handlers:
            raise KeyError(f"no handler registered for queue '{queue_name}'")
        self.celery.worker_main(argv=[
            "worker",
            "-Q", queue_name,
            "-c", str(self._concurrency[queue_name]),
            f"--loglevel={loglevel}",
        ])


_queue: Optional[DurableQueue] = None
_queue_lock = threading.Lock()


def get_queue() -> DurableQueue:
    global _queue
    if _queue is None:
        with _queue_lock:
            if _queue is None:
                _queue = DurableQueue()
    return _queue


def reset_queue() -> None:
    global _queue
    with _queue_lock:
        _queue = None

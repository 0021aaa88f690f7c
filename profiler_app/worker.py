"""
Queue consumer for profiling jobs.

Run:
    celery -A profiler_app.worker worker -Q osint-profile -c 4
or
    python -m profiler_app.worker
"""
from __future__ import annotations
import logging
import os

from dotenv import load_dotenv

from .celery_app import QUEUE_OSINT_JOB, get_queue
from .executor import process_batch
from .settings import env_int

load_dotenv()

queue = get_queue()
queue.register_worker(QUEUE_OSINT_JOB, env_int("WORKER_CONCURRENCY", 4), process_batch)
app = queue.celery


def main() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO))
    queue.run_worker(QUEUE_OSINT_JOB, loglevel=level)


if __name__ == "__main__":
    main()

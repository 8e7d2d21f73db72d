from __future__ import annotations

import logging
import os
from typing import Any

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init, worker_process_shutdown
from kombu import Queue

from ..config import configure_logging
from ..db import init_db_pool, shutdown_db_pool
from .dispatcher import drain, process_one
from .job_store import requeue_failed_jobs
from .retention import cleanup_ingest_jobs as _cleanup_ingest_jobs

logger = logging.getLogger(__name__)

BROKER_URL = os.environ.get("COS_REDIS_URL") or "redis://localhost:6379/0"
celery_app = Celery("contractos_ingest", broker=BROKER_URL, backend=BROKER_URL)
celery_app.conf.task_default_queue = "ingest"
celery_app.conf.task_queues = (
    Queue("ingest"),
    Queue("ingest_maintenance"),
)
celery_app.conf.task_routes = {
    "contractos_api.ingestion.tasks.process_ingest_job": {"queue": "ingest"},
    "contractos_api.ingestion.tasks.drain_queue": {"queue": "ingest"},
    "contractos_api.ingestion.tasks.retry_failed_jobs": {"queue": "ingest_maintenance"},
    "contractos_api.ingestion.tasks.cleanup_ingest_jobs": {"queue": "ingest_maintenance"},
}
# One job per worker process at a time; a claimed job is never prefetched behind another.
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.task_acks_late = True
celery_app.conf.beat_schedule = {
    "retry-failed-ingest-jobs": {
        "task": "contractos_api.ingestion.tasks.retry_failed_jobs",
        "schedule": crontab(minute="*/15"),
    },
    "cleanup-ingest-jobs": {
        "task": "contractos_api.ingestion.tasks.cleanup_ingest_jobs",
        "schedule": crontab(hour=3, minute=0),
    },
}


@worker_process_init.connect
def _init_worker(**_: Any) -> None:
    configure_logging()
    init_db_pool()


@worker_process_shutdown.connect
def _shutdown_worker(**_: Any) -> None:
    shutdown_db_pool()


@celery_app.task(name="contractos_api.ingestion.tasks.process_ingest_job")
def process_ingest_job(job_id: str | None = None) -> dict[str, Any]:
    return process_one(job_id).model_dump(mode="json")


@celery_app.task(name="contractos_api.ingestion.tasks.drain_queue")
def drain_queue(max_jobs: int = 10) -> dict[str, Any]:
    results = drain(max_jobs)
    return {
        "processed": len(results),
        "failed": sum(1 for r in results if not r.ok),
        "results": [r.model_dump(mode="json") for r in results],
    }


@celery_app.task(name="contractos_api.ingestion.tasks.retry_failed_jobs")
def retry_failed_jobs() -> dict[str, Any]:
    jobs = requeue_failed_jobs()
    for job in jobs:
        schedule_job(job.id)
    return {"requeued": len(jobs), "job_ids": [job.id for job in jobs]}


@celery_app.task(name="contractos_api.ingestion.tasks.cleanup_ingest_jobs")
def cleanup_ingest_jobs() -> dict[str, Any]:
    return _cleanup_ingest_jobs().model_dump()


def schedule_job(job_id: str) -> bool:
    """
    Ask a worker to process `job_id` now. Best-effort: when the broker is unreachable the
    job simply stays `queued` for the next drain or retry pass.
    """
    try:
        celery_app.send_task("contractos_api.ingestion.tasks.process_ingest_job", kwargs={"job_id": job_id})
    except Exception as exc:  # noqa: BLE001
        logger.warning("Could not schedule job %s: %s", job_id, exc)
        return False
    return True

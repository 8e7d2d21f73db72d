from __future__ import annotations

import logging
from datetime import datetime, timedelta

from ..config import abandoned_after_days, job_retention_days, log_retention_days
from ..db import _db_execute, _db_execute_returning_all
from ..time_utils import _utc_now
from .job_log import append_log
from .job_store import ABANDONED_PREFIX
from .models import CleanupCounts

logger = logging.getLogger(__name__)


def cleanup_ingest_jobs(now: datetime | None = None) -> CleanupCounts:
    """
    Retention pass.

    1. Jobs still `queued`/`working` after the abandonment window are failed with a timeout
       message. They are not picked up by the retry pass.
    2. `done`/`failed` jobs whose last update is older than the job retention window are
       deleted (their logs go with them).
    3. Log entries older than the log retention window are deleted.
    """
    now = now or _utc_now()
    abandoned_before = now - timedelta(days=abandoned_after_days())
    jobs_before = now - timedelta(days=job_retention_days())
    logs_before = now - timedelta(days=log_retention_days())

    expired = _db_execute_returning_all(
        """
        UPDATE ingest_jobs
        SET status = 'failed', last_error = %s, completed_at = %s, updated_at = %s
        WHERE status IN ('queued', 'working') AND updated_at < %s
        RETURNING id
        """,
        (
            f"{ABANDONED_PREFIX} no progress for {abandoned_after_days()} days (timeout)",
            now,
            now,
            abandoned_before,
        ),
    )
    for row in expired:
        append_log(str(row["id"]), "expired", "Marked failed by retention: no progress within the abandonment window", {"abandoned_before": abandoned_before})

    jobs_deleted = _db_execute(
        """
        DELETE FROM ingest_jobs
        WHERE status IN ('done', 'failed') AND updated_at < %s
        """,
        (jobs_before,),
    )
    logs_deleted = _db_execute(
        "DELETE FROM ingest_logs WHERE created_at < %s",
        (logs_before,),
    )

    counts = CleanupCounts(jobs_deleted=jobs_deleted, jobs_expired=len(expired), logs_deleted=logs_deleted)
    logger.info("Retention pass: %s", counts.model_dump())
    return counts

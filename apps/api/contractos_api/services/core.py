from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException

from ..db import _db_fetch_all, db_ping

logger = logging.getLogger(__name__)


def _job_status_counts() -> dict[str, int]:
    rows = _db_fetch_all("SELECT status, COUNT(*) AS n FROM ingest_jobs GROUP BY status")
    counts = {"queued": 0, "working": 0, "done": 0, "failed": 0}
    counts.update({r["status"]: int(r["n"]) for r in rows})
    return counts


def healthz() -> dict[str, Any]:
    """Liveness. Always 200; `db` reports the ping and `jobs` the queue by status when reachable."""
    if not db_ping():
        return {"status": "ok", "db": "down"}
    try:
        jobs = _job_status_counts()
    except Exception:  # noqa: BLE001
        # ingest_jobs may not exist before apply_schema has run.
        logger.warning("healthz could not count ingest jobs", exc_info=True)
        return {"status": "ok", "db": "ok"}
    return {"status": "ok", "db": "ok", "jobs": jobs}


def readyz() -> dict[str, str]:
    if not db_ping():
        raise HTTPException(status_code=503, detail={"status": "not_ready", "db": "down"})
    return {"status": "ready", "db": "ok"}

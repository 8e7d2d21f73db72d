from __future__ import annotations

import json
import logging
from typing import Any

from psycopg import Cursor

from ..db import _db_execute, _db_fetch_all
from .models import LogEntry

logger = logging.getLogger(__name__)

# Every step name the pipeline and tooling may write; `append_log` rejects anything else.
STEPS = (
    "enqueued",
    "start",
    "classify",
    "download",
    "parse_start",
    "parse_success",
    "parse_skipped",
    "model_call",
    "extract",
    "validate",
    "upsert",
    "aggregate",
    "complete",
    "error",
    "repair",
    "requeue",
    "expired",
)

_INSERT_SQL = """
    INSERT INTO ingest_logs (job_id, step, message, meta)
    VALUES (%s::uuid, %s, %s, %s::jsonb)
"""


def append_log(
    job_id: str | None,
    step: str,
    message: str,
    meta: dict[str, Any] | None = None,
    *,
    cur: Cursor[Any] | None = None,
) -> None:
    """
    Append one entry to a job's log and mirror it to the module logger.

    Pass `cur` to write inside an open transaction (the entry then commits or rolls back
    with the writes it describes).
    """
    if step not in STEPS:
        raise ValueError(f"Unknown log step {step!r}")
    params = (job_id, step, message, json.dumps(meta or {}, ensure_ascii=False, default=str))
    if cur is not None:
        cur.execute(_INSERT_SQL, params)
    else:
        _db_execute(_INSERT_SQL, params)
    level = logging.WARNING if step == "error" else logging.INFO
    logger.log(level, "[job %s] %s: %s", job_id, step, message)


def list_logs(job_id: str, *, limit: int = 500) -> list[LogEntry]:
    limit = max(1, min(int(limit), 5000))
    rows = _db_fetch_all(
        """
        SELECT id, job_id, step, message, meta, created_at
        FROM ingest_logs
        WHERE job_id = %s::uuid
        ORDER BY created_at ASC, id ASC
        LIMIT %s
        """,
        (job_id, limit),
    )
    return [
        LogEntry(
            id=r["id"],
            job_id=str(r["job_id"]) if r.get("job_id") else None,
            step=r["step"],
            message=r.get("message"),
            meta=r.get("meta") or {},
            created_at=r.get("created_at"),
        )
        for r in rows
    ]

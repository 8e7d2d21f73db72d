from __future__ import annotations

import logging

from psycopg import errors as pg_errors

from ..config import max_job_attempts, stuck_after_minutes
from ..db import _db_execute_returning, _db_execute_returning_all, _db_fetch_all, _db_fetch_one
from ..errors import ContractNotFound, EnqueueConflict, JobNotClaimable, JobNotFound
from .classifier import classify_storage_path
from .job_log import append_log
from .models import Job

logger = logging.getLogger(__name__)

# Prefix written by the retention pass; such jobs are never requeued automatically.
ABANDONED_PREFIX = "abandoned:"

_JOB_COLUMNS = """
    id, project_prefix, storage_path, file_hash, etag, contract_id, document_type,
    status, attempts, last_error, created_at, updated_at, started_at, completed_at
"""

_VALID_STATUSES = {"queued", "working", "done", "failed"}


def enqueue_job(
    *,
    storage_path: str,
    project_prefix: str,
    contract_id: str | None = None,
    document_type: str | None = None,
    file_hash: str | None = None,
    etag: str | None = None,
) -> Job:
    """
    Create a `queued` job for a stored file.

    Raises `EnqueueConflict` when the storage path (or content hash) is already tracked;
    the existing row is left untouched.
    """
    storage_path = (storage_path or "").strip()
    project_prefix = (project_prefix or "").strip()
    if not storage_path or not project_prefix:
        raise ValueError("storage_path and project_prefix are required")

    classification = classify_storage_path(storage_path)
    doc_type = document_type or classification.document_type
    try:
        row = _db_execute_returning(
            f"""
            INSERT INTO ingest_jobs (project_prefix, storage_path, file_hash, etag, contract_id, document_type)
            VALUES (%s, %s, %s, %s, %s::uuid, %s)
            ON CONFLICT DO NOTHING
            RETURNING {_JOB_COLUMNS}
            """,
            (project_prefix, storage_path, file_hash or None, etag or None, contract_id, doc_type),
        )
    except pg_errors.ForeignKeyViolation as exc:
        raise ContractNotFound(f"Contract {contract_id} not found", details={"contract_id": contract_id}) from exc
    if row is None:
        existing = _db_fetch_one(
            """
            SELECT id FROM ingest_jobs
            WHERE storage_path = %s OR (%s::text IS NOT NULL AND file_hash = %s)
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (storage_path, file_hash or None, file_hash or None),
        )
        raise EnqueueConflict(storage_path, existing_job_id=str(existing["id"]) if existing else None)

    job = Job.from_row(row)
    append_log(
        job.id,
        "enqueued",
        f"Queued {storage_path} as {doc_type}",
        {"document_type": doc_type, "classified_confidently": classification.confident, "file_hash": file_hash, "etag": etag},
    )
    return job


def claim_next_job() -> Job | None:
    """
    Atomically move the oldest `queued` job to `working`.

    The select and the update are one statement; `SKIP LOCKED` lets concurrent claimants pass
    over a row another transaction is claiming instead of waiting on it.
    """
    row = _db_execute_returning(
        f"""
        UPDATE ingest_jobs
        SET status = 'working', attempts = attempts + 1, last_error = NULL,
            started_at = now(), completed_at = NULL, updated_at = now()
        WHERE id = (
          SELECT id FROM ingest_jobs
          WHERE status = 'queued'
          ORDER BY created_at ASC, id ASC
          FOR UPDATE SKIP LOCKED
          LIMIT 1
        )
        AND status = 'queued'
        RETURNING {_JOB_COLUMNS}
        """
    )
    return Job.from_row(row) if row else None


def claim_job(job_id: str) -> Job:
    row = _db_execute_returning(
        f"""
        UPDATE ingest_jobs
        SET status = 'working', attempts = attempts + 1, last_error = NULL,
            started_at = now(), completed_at = NULL, updated_at = now()
        WHERE id = %s::uuid AND status = 'queued'
        RETURNING {_JOB_COLUMNS}
        """,
        (job_id,),
    )
    if row:
        return Job.from_row(row)
    existing = get_job(job_id)
    if existing is None:
        raise JobNotFound(f"Job {job_id} not found", details={"job_id": job_id})
    raise JobNotClaimable(
        f"Job {job_id} is {existing.status}, not queued",
        details={"job_id": job_id, "status": existing.status},
    )


def mark_job_done(job_id: str, *, contract_id: str | None = None, document_type: str | None = None) -> Job | None:
    row = _db_execute_returning(
        f"""
        UPDATE ingest_jobs
        SET status = 'done', last_error = NULL, completed_at = now(), updated_at = now(),
            contract_id = COALESCE(%s::uuid, contract_id),
            document_type = COALESCE(%s, document_type)
        WHERE id = %s::uuid AND status = 'working'
        RETURNING {_JOB_COLUMNS}
        """,
        (contract_id, document_type, job_id),
    )
    return Job.from_row(row) if row else None


def mark_job_failed(job_id: str, error: str) -> Job | None:
    row = _db_execute_returning(
        f"""
        UPDATE ingest_jobs
        SET status = 'failed', last_error = %s, completed_at = now(), updated_at = now()
        WHERE id = %s::uuid AND status = 'working'
        RETURNING {_JOB_COLUMNS}
        """,
        (error[:4000], job_id),
    )
    return Job.from_row(row) if row else None


def get_job(job_id: str) -> Job | None:
    row = _db_fetch_one(f"SELECT {_JOB_COLUMNS} FROM ingest_jobs WHERE id = %s::uuid", (job_id,))
    return Job.from_row(row) if row else None


def list_jobs(
    *,
    contract_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    if status is not None and status not in _VALID_STATUSES:
        raise ValueError(f"status must be one of {sorted(_VALID_STATUSES)}")
    limit = max(1, min(int(limit), 500))
    offset = max(0, int(offset))

    where: list[str] = []
    params: list[object] = []
    if contract_id:
        where.append("contract_id = %s::uuid")
        params.append(contract_id)
    if status:
        where.append("status = %s")
        params.append(status)
    clause = ("WHERE " + " AND ".join(where)) if where else ""
    rows = _db_fetch_all(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM ingest_jobs
        {clause}
        ORDER BY created_at DESC, id DESC
        LIMIT %s OFFSET %s
        """,
        tuple(params + [limit, offset]),
    )
    return [Job.from_row(r) for r in rows]


def find_stuck_jobs(*, older_than_minutes: int | None = None, limit: int = 100) -> list[Job]:
    """Jobs still `working` past the staleness threshold. Reported, never failed here."""
    minutes = older_than_minutes if older_than_minutes is not None else stuck_after_minutes()
    rows = _db_fetch_all(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM ingest_jobs
        WHERE status = 'working'
          AND COALESCE(started_at, updated_at) < now() - make_interval(mins => %s)
        ORDER BY started_at ASC NULLS FIRST
        LIMIT %s
        """,
        (int(minutes), max(1, min(int(limit), 1000))),
    )
    return [Job.from_row(r) for r in rows]


def requeue_failed_jobs(max_attempts: int | None = None, *, limit: int = 100) -> list[Job]:
    """
    Scheduled retry pass: move `failed` jobs with attempts left back to `queued`.

    Jobs expired by the retention pass are skipped.
    """
    ceiling = max_attempts if max_attempts is not None else max_job_attempts()
    rows = _db_execute_returning_all(
        f"""
        UPDATE ingest_jobs
        SET status = 'queued', last_error = NULL, updated_at = now()
        WHERE id IN (
          SELECT id FROM ingest_jobs
          WHERE status = 'failed'
            AND attempts < %s
            AND COALESCE(last_error, '') NOT LIKE %s
          ORDER BY updated_at ASC
          FOR UPDATE SKIP LOCKED
          LIMIT %s
        )
        RETURNING {_JOB_COLUMNS}
        """,
        (int(ceiling), ABANDONED_PREFIX + "%", max(1, min(int(limit), 1000))),
    )
    jobs = [Job.from_row(r) for r in rows]
    for job in jobs:
        append_log(job.id, "requeue", f"Requeued by retry pass (attempt {job.attempts} of {ceiling} used)", {"attempts": job.attempts, "max_attempts": ceiling})
    return jobs

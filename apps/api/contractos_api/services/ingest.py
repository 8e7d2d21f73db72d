from __future__ import annotations

from typing import Any

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..api_utils import clamp_page, optional_uuid_or_400
from ..api_utils import validate_uuid_or_400 as _validate_uuid_or_400
from ..db import _db_fetch_one
from ..errors import EnqueueConflict, JobNotFound
from ..ingestion import dispatcher, job_log, job_store, repair, retention
from ..ingestion.tasks import schedule_job


class EnqueueRequest(BaseModel):
    storage_path: str | None = None
    project_prefix: str | None = None
    contract_id: str | None = None
    document_type: str | None = None
    content_hash: str | None = None
    etag: str | None = None
    schedule: bool = True


class DispatchRequest(BaseModel):
    job_id: str | None = None


class DrainRequest(BaseModel):
    max_jobs: int = Field(default=10, ge=1, le=100)


class PathRepairRequest(BaseModel):
    contract_id: str


class FilenameRepairRequest(BaseModel):
    signature: str = Field(default=repair.DEFAULT_FAILURE_SIGNATURE, min_length=3)
    limit: int = Field(default=10, ge=1, le=100)


def enqueue_ingest_job(body: EnqueueRequest) -> JSONResponse:
    if not (body.storage_path or "").strip() or not (body.project_prefix or "").strip():
        raise HTTPException(status_code=400, detail="storage_path and project_prefix are required")
    contract_id = optional_uuid_or_400(body.contract_id, field_name="contract_id")

    try:
        job = job_store.enqueue_job(
            storage_path=body.storage_path,
            project_prefix=body.project_prefix,
            contract_id=contract_id,
            document_type=body.document_type,
            file_hash=body.content_hash,
            etag=body.etag,
        )
    except EnqueueConflict as exc:
        return JSONResponse(
            status_code=200,
            content=jsonable_encoder(
                {
                    "ok": True,
                    "status": "skipped",
                    "message": exc.message,
                    "existing_job_id": exc.existing_job_id,
                }
            ),
        )

    scheduled = schedule_job(job.id) if body.schedule else False
    return JSONResponse(
        status_code=201,
        content=jsonable_encoder({"ok": True, "status": "created", "job_id": job.id, "job": job, "scheduled": scheduled}),
    )


def dispatch_ingest_job(body: DispatchRequest | None) -> JSONResponse:
    job_id = optional_uuid_or_400(body.job_id if body else None, field_name="job_id")
    result = dispatcher.process_one(job_id)
    return JSONResponse(content=jsonable_encoder(result.model_dump(exclude_none=True)))


def drain_ingest_queue(body: DrainRequest | None) -> JSONResponse:
    max_jobs = body.max_jobs if body else 10
    results = dispatcher.drain(max_jobs)
    return JSONResponse(
        content=jsonable_encoder(
            {
                "ok": True,
                "processed": len(results),
                "failed": sum(1 for r in results if not r.ok),
                "results": [r.model_dump(exclude_none=True) for r in results],
            }
        )
    )


def list_ingest_jobs(
    *,
    contract_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> JSONResponse:
    contract_id = optional_uuid_or_400(contract_id, field_name="contract_id")
    limit, offset = clamp_page(limit, offset)
    try:
        jobs = job_store.list_jobs(contract_id=contract_id, status=status, limit=limit, offset=offset)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder({"jobs": jobs, "limit": limit, "offset": offset}))


def list_stuck_jobs(older_than_minutes: int | None = None) -> JSONResponse:
    jobs = job_store.find_stuck_jobs(older_than_minutes=older_than_minutes)
    return JSONResponse(content=jsonable_encoder({"jobs": jobs, "count": len(jobs)}))


def get_ingest_job(job_id: str) -> JSONResponse:
    job_id = _validate_uuid_or_400(job_id, field_name="job_id")
    job = job_store.get_job(job_id)
    if job is None:
        raise JobNotFound(f"Job {job_id} not found", details={"job_id": job_id})
    latest_payload = _db_fetch_one(
        """
        SELECT id, document_type, confidence, review_required, warnings, created_at
        FROM extracted_payloads
        WHERE job_id = %s::uuid
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (job_id,),
    )
    return JSONResponse(content=jsonable_encoder({"job": job, "latest_payload": latest_payload}))


def list_ingest_logs(job_id: str, limit: int = 500) -> JSONResponse:
    job_id = _validate_uuid_or_400(job_id, field_name="job_id")
    limit, _ = clamp_page(limit, maximum=2000)
    logs = job_log.list_logs(job_id, limit=limit)
    return JSONResponse(content=jsonable_encoder({"job_id": job_id, "logs": logs}))


def repair_paths(body: PathRepairRequest) -> JSONResponse:
    contract_id = _validate_uuid_or_400(body.contract_id, field_name="contract_id")
    result = repair.repair_job_paths(contract_id)
    return JSONResponse(content=jsonable_encoder({"ok": True, **result}))


def repair_filenames(body: FilenameRepairRequest | None) -> JSONResponse:
    body = body or FilenameRepairRequest()
    result = repair.repair_unparseable_filenames(signature=body.signature, limit=body.limit)
    return JSONResponse(content=jsonable_encoder({"ok": True, **result}))


def retry_failed(max_attempts: int | None = None) -> JSONResponse:
    jobs = job_store.requeue_failed_jobs(max_attempts)
    return JSONResponse(content=jsonable_encoder({"ok": True, "requeued": len(jobs), "job_ids": [j.id for j in jobs]}))


def run_cleanup() -> JSONResponse:
    counts = retention.cleanup_ingest_jobs()
    payload: dict[str, Any] = {"ok": True, **counts.model_dump()}
    return JSONResponse(content=jsonable_encoder(payload))

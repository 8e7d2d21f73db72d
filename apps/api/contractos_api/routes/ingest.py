from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..services.ingest import DispatchRequest, DrainRequest, EnqueueRequest, FilenameRepairRequest, PathRepairRequest
from ..services.ingest import dispatch_ingest_job as service_dispatch_ingest_job
from ..services.ingest import drain_ingest_queue as service_drain_ingest_queue
from ..services.ingest import enqueue_ingest_job as service_enqueue_ingest_job
from ..services.ingest import get_ingest_job as service_get_ingest_job
from ..services.ingest import list_ingest_jobs as service_list_ingest_jobs
from ..services.ingest import list_ingest_logs as service_list_ingest_logs
from ..services.ingest import list_stuck_jobs as service_list_stuck_jobs
from ..services.ingest import repair_filenames as service_repair_filenames
from ..services.ingest import repair_paths as service_repair_paths
from ..services.ingest import retry_failed as service_retry_failed
from ..services.ingest import run_cleanup as service_run_cleanup


router = APIRouter(tags=["ingest"])


@router.post("/ingest/jobs")
def enqueue_ingest_job(body: EnqueueRequest) -> JSONResponse:
    return service_enqueue_ingest_job(body)


@router.get("/ingest/jobs")
def list_ingest_jobs(
    contract_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> JSONResponse:
    return service_list_ingest_jobs(contract_id=contract_id, status=status, limit=limit, offset=offset)


@router.get("/ingest/jobs/stuck")
def list_stuck_jobs(older_than_minutes: int | None = None) -> JSONResponse:
    return service_list_stuck_jobs(older_than_minutes)


@router.get("/ingest/jobs/{job_id}")
def get_ingest_job(job_id: str) -> JSONResponse:
    return service_get_ingest_job(job_id)


@router.get("/ingest/jobs/{job_id}/logs")
def list_ingest_logs(job_id: str, limit: int = 500) -> JSONResponse:
    return service_list_ingest_logs(job_id, limit=limit)


@router.post("/ingest/dispatch")
def dispatch_ingest_job(body: DispatchRequest | None = None) -> JSONResponse:
    return service_dispatch_ingest_job(body)


@router.post("/ingest/drain")
def drain_ingest_queue(body: DrainRequest | None = None) -> JSONResponse:
    return service_drain_ingest_queue(body)


@router.post("/ingest/retry-failed")
def retry_failed(max_attempts: int | None = None) -> JSONResponse:
    return service_retry_failed(max_attempts)


@router.post("/ingest/cleanup")
def run_cleanup() -> JSONResponse:
    return service_run_cleanup()


@router.post("/ingest/repair/paths")
def repair_paths(body: PathRepairRequest) -> JSONResponse:
    return service_repair_paths(body)


@router.post("/ingest/repair/filenames")
def repair_filenames(body: FilenameRepairRequest | None = None) -> JSONResponse:
    return service_repair_filenames(body)

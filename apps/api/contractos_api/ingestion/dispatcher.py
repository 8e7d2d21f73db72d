from __future__ import annotations

import logging
from typing import Any

from ..errors import IngestError, JobNotClaimable, JobNotFound
from ..observability.tracing import trace_span
from ..providers.base import BlobStoreProvider
from ..providers.factory import get_blob_store_provider
from .classifier import classify_storage_path
from .extraction import ExtractionClient
from .job_log import append_log
from .job_store import claim_job, claim_next_job, mark_job_done, mark_job_failed
from .models import Classification, DispatchResult, Job
from .upsert import UpsertRouter
from .validator import validate_extraction

logger = logging.getLogger(__name__)

_KNOWN_TYPES = {"contract", "edp", "memo", "unknown"}


def _resolve_classification(job: Job) -> Classification:
    """Path-derived type, unless the producer declared a known type at enqueue time."""
    classification = classify_storage_path(job.storage_path)
    declared = (job.document_type or "").strip()
    if declared in _KNOWN_TYPES and declared != "unknown" and declared != classification.document_type:
        return classification.model_copy(update={"document_type": declared, "confident": True})
    return classification


def _error_body(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, IngestError):
        return exc.to_dict()
    return {"kind": "internal_error", "message": f"{exc.__class__.__name__}: {exc}"}


class Dispatcher:
    """
    Runs one claimed job through classify, download, extract, validate and upsert.

    Steps run strictly in order; the first failure ends the attempt and the job is marked
    `failed`. Nothing here retries a failed job.
    """

    def __init__(
        self,
        blob_store: BlobStoreProvider | None = None,
        extraction: ExtractionClient | None = None,
        router: UpsertRouter | None = None,
    ):
        self._blob_store = blob_store
        self._extraction = extraction
        self._router = router or UpsertRouter()

    @property
    def blob_store(self) -> BlobStoreProvider:
        if self._blob_store is None:
            self._blob_store = get_blob_store_provider()
        return self._blob_store

    @property
    def extraction(self) -> ExtractionClient:
        if self._extraction is None:
            self._extraction = ExtractionClient()
        return self._extraction

    def process_one(self, job_id: str | None = None) -> DispatchResult:
        if job_id:
            try:
                job = claim_job(job_id)
            except (JobNotFound, JobNotClaimable) as exc:
                return DispatchResult(ok=False, job_id=job_id, error=exc.to_dict())
        else:
            job = claim_next_job()
            if job is None:
                return DispatchResult(ok=True, idle=True)

        with trace_span("ingest.process_job", {"job.id": job.id, "job.attempt": job.attempts, "job.storage_path": job.storage_path}):
            try:
                result = self._run(job)
            except Exception as exc:  # noqa: BLE001
                return self._fail(job, exc)
        return DispatchResult(ok=True, job_id=job.id, result=result)

    def _run(self, job: Job) -> dict[str, Any]:
        append_log(job.id, "start", f"Processing {job.storage_path} (attempt {job.attempts})", {"attempts": job.attempts})

        with trace_span("ingest.classify"):
            classification = _resolve_classification(job)
            doc_type = classification.document_type
            filename = classification.filename or job.storage_path.rsplit("/", 1)[-1]
            append_log(
                job.id,
                "classify",
                f"Classified as {doc_type}",
                {"document_type": doc_type, "confident": classification.confident, "type_folder": classification.type_folder, "filename": filename},
            )

        with trace_span("ingest.download"):
            blob = self.blob_store.get_blob(job.storage_path, job_id=job.id)
            file_bytes = blob["bytes"]
            append_log(job.id, "download", f"Downloaded {len(file_bytes)} bytes", {"size_bytes": len(file_bytes)})

        with trace_span("ingest.extract", {"document_type": doc_type}):
            extracted = self.extraction.extract(
                file_bytes,
                filename,
                doc_type,
                job_id=job.id,
                log_step=lambda step, message, meta: append_log(job.id, step, message, meta),
            )
            append_log(
                job.id,
                "extract",
                f"Extraction returned via {extracted.parse_method}",
                {"parse_method": extracted.parse_method, "model_id": extracted.model_id, "markdown_length": extracted.markdown_length, "usage": extracted.usage},
            )

        with trace_span("ingest.validate"):
            payload = validate_extraction(
                extracted.raw,
                doc_type,
                source_filename=filename,
                classification_confident=classification.confident,
            )
            append_log(
                job.id,
                "validate",
                f"{len(payload.warnings)} warnings, review_required={payload.review_required}",
                {
                    "confidence": payload.confidence,
                    "review_required": payload.review_required,
                    "warnings": [w.model_dump() for w in payload.warnings],
                },
            )

        with trace_span("ingest.upsert"):
            writes = self._router.apply(
                payload,
                job,
                file_size=len(file_bytes),
                parse_method=extracted.parse_method,
                model_id=extracted.model_id,
            )

        contract_id = next((w.record_id for w in writes if w.table == "contracts" and w.action != "recomputed"), None)
        mark_job_done(job.id, contract_id=contract_id, document_type=doc_type)
        summary = {
            "document_type": doc_type,
            "contract_id": contract_id,
            "confidence": payload.confidence,
            "review_required": payload.review_required,
            "warnings": len(payload.warnings),
            "writes": len(writes),
        }
        append_log(job.id, "complete", f"Done: {len(writes)} writes", summary)
        return summary

    def _fail(self, job: Job, exc: BaseException) -> DispatchResult:
        error = _error_body(exc)
        if isinstance(exc, IngestError):
            logger.warning("Job %s failed: %s", job.id, exc.message)
        else:
            logger.exception("Job %s failed with an unexpected error", job.id)
        last_error = f"{error['kind']}: {error['message']}"
        try:
            mark_job_failed(job.id, last_error)
            append_log(job.id, "error", last_error, error)
        except Exception:  # noqa: BLE001
            # The job stays `working` and shows up as stuck for an operator.
            logger.exception("Could not record failure for job %s", job.id)
        return DispatchResult(ok=False, job_id=job.id, error=error)


def process_one(job_id: str | None = None) -> DispatchResult:
    return Dispatcher().process_one(job_id)


def drain(max_jobs: int = 10) -> list[DispatchResult]:
    """Process queued jobs one after another until the queue is idle or `max_jobs` ran."""
    dispatcher = Dispatcher()
    results: list[DispatchResult] = []
    for _ in range(max(1, int(max_jobs))):
        result = dispatcher.process_one()
        if result.idle:
            break
        results.append(result)
    return results

from __future__ import annotations

from typing import Any


class IngestError(Exception):
    """
    Base class for failures that end an ingestion attempt.

    `kind` is the stable machine-readable name surfaced in `{ok: false, error}` responses;
    `http_status` is what an HTTP boundary should answer with.
    """

    kind = "ingest_error"
    http_status = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class EnqueueConflict(IngestError):
    """The file is already tracked by a job. Callers treat this as a successful no-op."""

    kind = "enqueue_conflict"
    http_status = 200

    def __init__(self, storage_path: str, *, existing_job_id: str | None = None) -> None:
        super().__init__(
            "Job already queued or processed",
            details={"storage_path": storage_path, "existing_job_id": existing_job_id},
        )
        self.storage_path = storage_path
        self.existing_job_id = existing_job_id


class StorageError(IngestError):
    kind = "storage_error"
    http_status = 502


class ExtractionUpstreamError(IngestError):
    """The parsing or model service answered with a non-success status (or not at all)."""

    kind = "extraction_upstream_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        service: str,
        status_code: int | None = None,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = {"service": service, "status_code": status_code, **(details or {})}
        super().__init__(message, details=merged)
        self.service = service
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class ExtractionParseError(IngestError):
    """The upstream call succeeded but its body was not the expected structured format."""

    kind = "extraction_parse_error"
    http_status = 502


class UpsertError(IngestError):
    kind = "upsert_error"
    http_status = 500


class JobNotFound(IngestError):
    kind = "job_not_found"
    http_status = 404


class JobNotClaimable(IngestError):
    """A specific job was requested but it is not `queued` (already claimed, done or failed)."""

    kind = "job_not_claimable"
    http_status = 409


class ContractNotFound(IngestError):
    kind = "contract_not_found"
    http_status = 404

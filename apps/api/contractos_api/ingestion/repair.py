from __future__ import annotations

import logging
import re
from typing import Any

from psycopg import errors as pg_errors

from ..db import _db_execute_returning, _db_fetch_all, _db_fetch_one
from ..errors import ContractNotFound, StorageError
from ..providers.base import BlobStoreProvider
from ..providers.factory import get_blob_store_provider
from ..text_utils import _fold_text
from .classifier import classify_storage_path
from .job_log import append_log

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_SIGNATURE = "PDF parsing failed"

_WHITESPACE_RE = re.compile(r"\s+")
# ASCII word characters, dots, dashes and Latin-1/Latin Extended-A letters (accented Spanish).
_DISALLOWED_RE = re.compile(r"[^A-Za-z0-9_.\-\u00C0-\u017F]")
_UNDERSCORES_RE = re.compile(r"_+")
_MAX_NAME_CANDIDATES = 20


def sanitize_filename(name: str) -> str:
    """
    Make a stored filename safe for the parsing service.

    Whitespace becomes `_`, anything but word characters, dots, dashes and accented letters
    is dropped, and runs of `_` collapse. The result is stable: sanitising twice is a no-op.
    """
    cleaned = _WHITESPACE_RE.sub("_", name or "")
    cleaned = _DISALLOWED_RE.sub("", cleaned)
    cleaned = _UNDERSCORES_RE.sub("_", cleaned)
    stem, dot, ext = cleaned.rpartition(".")
    if dot and not stem.strip("_."):
        cleaned = f"document.{ext}"
    elif not cleaned.strip("_."):
        cleaned = "document"
    return cleaned


def _same_object(a: dict[str, Any], b: dict[str, Any]) -> bool:
    return bool(a.get("etag")) and a.get("etag") == b.get("etag") and a.get("size_bytes") == b.get("size_bytes")


def _repair_destination(store: BlobStoreProvider, old_path: str, directory: str, new_name: str) -> tuple[str, bool]:
    """
    Pick where the sanitised copy goes: `(path, needs_copy)`.

    An object already at the sanitised name is reused only when it holds the same bytes as
    the source (a repair that stopped after copying); otherwise `<stem>_<n>.<ext>` is tried.
    """
    source = store.stat_blob(old_path)
    if source is None:
        raise StorageError(f"Source object {old_path} is missing", details={"path": old_path})

    stem, dot, ext = new_name.rpartition(".")
    if not dot:
        stem, ext = new_name, ""
    for n in range(1, _MAX_NAME_CANDIDATES + 1):
        name = new_name if n == 1 else f"{stem}_{n}{dot}{ext}"
        path = f"{directory}/{name}" if directory else name
        existing = store.stat_blob(path)
        if existing is None:
            return path, True
        if _same_object(existing, source):
            return path, False
    raise StorageError(f"No free name for {new_name} in {directory or '/'}", details={"path": old_path})


def repair_job_paths(contract_id: str) -> dict[str, Any]:
    """
    Re-associate broken jobs with `contract_id` and re-derive their type from the path.

    Candidates are `queued`/`failed` jobs that have no contract, or that belong to this
    contract and failed. Jobs whose path names a different contract are left alone. Fixed
    jobs go back to `queued` with attempts reset to 0.
    """
    contract = _db_fetch_one("SELECT id, code FROM contracts WHERE id = %s::uuid", (contract_id,))
    if not contract:
        raise ContractNotFound(f"Contract {contract_id} not found", details={"contract_id": contract_id})
    contract_code = _fold_text(contract["code"])

    rows = _db_fetch_all(
        """
        SELECT id, storage_path, contract_id, document_type, status
        FROM ingest_jobs
        WHERE status IN ('queued', 'failed')
          AND (contract_id IS NULL OR (contract_id = %s::uuid AND status = 'failed'))
        ORDER BY created_at ASC
        """,
        (contract_id,),
    )

    fixed = 0
    skipped = 0
    for row in rows:
        job_id = str(row["id"])
        classification = classify_storage_path(row["storage_path"])
        if classification.entity_code and _fold_text(classification.entity_code) != contract_code:
            skipped += 1
            continue
        updated = _db_execute_returning(
            """
            UPDATE ingest_jobs
            SET contract_id = %s::uuid, document_type = %s, status = 'queued',
                last_error = NULL, attempts = 0, updated_at = now()
            WHERE id = %s::uuid AND status IN ('queued', 'failed')
            RETURNING id
            """,
            (contract_id, classification.document_type, job_id),
        )
        if not updated:
            skipped += 1
            continue
        append_log(
            job_id,
            "repair",
            f"Path repair: contract assigned, document_type = {classification.document_type}, requeued",
            {
                "old_contract_id": str(row["contract_id"]) if row.get("contract_id") else None,
                "new_contract_id": contract_id,
                "old_document_type": row.get("document_type"),
                "new_document_type": classification.document_type,
                "old_status": row.get("status"),
            },
        )
        fixed += 1

    logger.info("Path repair for contract %s: fixed=%s skipped=%s", contract_id, fixed, skipped)
    return {"fixed": fixed, "skipped": skipped}


def repair_unparseable_filenames(
    signature: str = DEFAULT_FAILURE_SIGNATURE,
    limit: int = 10,
    blob_store: BlobStoreProvider | None = None,
) -> dict[str, Any]:
    """
    Rename stored files of jobs that failed with `signature` and requeue the jobs.

    For each job: copy to the sanitised name (a numbered variant when an unrelated object
    already sits there), verify the copy exists, point the job at it and requeue, then delete
    the old object (a failed delete is only logged). Attempts are left unchanged.
    """
    store = blob_store or get_blob_store_provider()
    limit = max(1, min(int(limit), 100))
    rows = _db_fetch_all(
        """
        SELECT id, storage_path, last_error
        FROM ingest_jobs
        WHERE status = 'failed' AND last_error ILIKE %s
        ORDER BY updated_at ASC
        LIMIT %s
        """,
        (f"%{signature}%", limit),
    )

    fixed = 0
    skipped: list[dict[str, Any]] = []
    for row in rows:
        job_id = str(row["id"])
        old_path = row["storage_path"]
        directory, _, old_name = old_path.rpartition("/")
        new_name = sanitize_filename(old_name)
        if new_name == old_name:
            skipped.append({"job_id": job_id, "reason": "filename already clean"})
            continue
        new_path = f"{directory}/{new_name}" if directory else new_name

        try:
            new_path, needs_copy = _repair_destination(store, old_path, directory, new_name)
            if needs_copy:
                store.copy_blob(old_path, new_path, job_id=job_id)
            if store.stat_blob(new_path) is None:
                raise StorageError(f"Copy to {new_path} not visible after rename", details={"path": new_path})
        except StorageError as exc:
            logger.warning("Filename repair for job %s failed: %s", job_id, exc.message)
            append_log(job_id, "repair", f"Filename repair failed: {exc.message}", {"old_path": old_path, "new_path": new_path})
            skipped.append({"job_id": job_id, "reason": exc.message})
            continue

        try:
            updated = _db_execute_returning(
                """
                UPDATE ingest_jobs
                SET storage_path = %s, status = 'queued', last_error = NULL, updated_at = now()
                WHERE id = %s::uuid AND status = 'failed'
                RETURNING id, attempts
                """,
                (new_path, job_id),
            )
        except pg_errors.UniqueViolation:
            skipped.append({"job_id": job_id, "reason": f"another job already tracks {new_path}"})
            continue
        if not updated:
            skipped.append({"job_id": job_id, "reason": "job is no longer failed"})
            continue

        deleted = True
        try:
            store.delete_blob(old_path, job_id=job_id)
        except StorageError as exc:
            deleted = False
            logger.warning("Could not delete %s after rename: %s", old_path, exc.message)

        append_log(
            job_id,
            "repair",
            f"Filename repair: {old_name} -> {new_path.rpartition('/')[2]}, requeued",
            {"old_path": old_path, "new_path": new_path, "old_deleted": deleted, "previous_error": row.get("last_error")},
        )
        fixed += 1

    return {"fixed": fixed, "skipped": len(skipped), "skipped_jobs": skipped}

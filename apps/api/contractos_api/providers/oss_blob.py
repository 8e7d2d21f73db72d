from __future__ import annotations

import io
import mimetypes
from datetime import timedelta
from typing import Any

from minio.commonconfig import CopySource
from minio.error import S3Error

from ..blob_store import minio_client_or_none, s3_bucket
from ..errors import StorageError
from ..time_utils import _utc_now
from ..tool_runs import _log_tool_run
from .base import BlobStoreProvider

_MISSING_CODES = {"NoSuchKey", "NoSuchObject", "NotFound", "ResourceNotFound"}


class MinIOBlobStoreProvider(BlobStoreProvider):
    """
    S3-compatible implementation of BlobStoreProvider using the MinIO client.
    """

    def __init__(self, bucket: str | None = None, client: Any | None = None):
        self._client = client or minio_client_or_none()
        self._bucket = bucket or s3_bucket()

    @property
    def profile_family(self) -> str:
        return "oss"

    def _require_client(self, tool_name: str, path: str, job_id: str | None) -> Any:
        if self._client and self._bucket:
            return self._client
        err = "Object store not configured (COS_S3_ENDPOINT/ACCESS_KEY/SECRET_KEY/BUCKET)"
        _log_tool_run(
            tool_name,
            inputs={"path": path},
            outputs={"error": err},
            status="error",
            started_at=_utc_now(),
            job_id=job_id,
            uncertainty_note=err,
        )
        raise StorageError(err, details={"path": path})

    def put_blob(
        self,
        path: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> dict[str, Any]:
        started_at = _utc_now()
        client = self._require_client("blob.put", path, job_id)
        ct = content_type or mimetypes.guess_type(path)[0] or "application/octet-stream"
        try:
            result = client.put_object(
                self._bucket,
                path,
                io.BytesIO(data),
                length=len(data),
                content_type=ct,
                metadata=metadata,
            )
        except Exception as exc:
            err = str(exc)
            _log_tool_run("blob.put", inputs={"path": path}, outputs={"error": err}, status="error", started_at=started_at, job_id=job_id)
            raise StorageError(f"Upload failed for {path}: {err}", details={"path": path}) from exc

        outputs = {"path": path, "etag": result.etag, "size_bytes": len(data), "content_type": ct}
        _log_tool_run("blob.put", inputs={"path": path, "size": len(data)}, outputs=outputs, status="success", started_at=started_at, job_id=job_id)
        return outputs

    def get_blob(self, path: str, job_id: str | None = None) -> dict[str, Any]:
        started_at = _utc_now()
        client = self._require_client("blob.get", path, job_id)
        try:
            resp = client.get_object(self._bucket, path)
            try:
                data = resp.read()
                # Object metadata comes back as x-amz-meta-* headers.
                metadata = {k: v for k, v in resp.headers.items() if k.lower().startswith("x-amz-meta-")}
                content_type = resp.headers.get("content-type") or "application/octet-stream"
                etag = (resp.headers.get("etag") or "").strip('"') or None
            finally:
                resp.close()
                resp.release_conn()
        except Exception as exc:
            err = str(exc)
            _log_tool_run("blob.get", inputs={"path": path}, outputs={"error": err}, status="error", started_at=started_at, job_id=job_id)
            raise StorageError(f"Download failed for {path}: {err}", details={"path": path}) from exc

        outputs = {"size_bytes": len(data), "content_type": content_type, "etag": etag}
        _log_tool_run("blob.get", inputs={"path": path}, outputs=outputs, status="success", started_at=started_at, job_id=job_id)
        return {"bytes": data, "content_type": content_type, "etag": etag, "metadata": metadata}

    def delete_blob(self, path: str, job_id: str | None = None) -> None:
        started_at = _utc_now()
        client = self._require_client("blob.delete", path, job_id)
        try:
            client.remove_object(self._bucket, path)
        except Exception as exc:
            err = str(exc)
            _log_tool_run("blob.delete", inputs={"path": path}, outputs={"error": err}, status="error", started_at=started_at, job_id=job_id)
            raise StorageError(f"Delete failed for {path}: {err}", details={"path": path}) from exc
        _log_tool_run("blob.delete", inputs={"path": path}, outputs={}, status="success", started_at=started_at, job_id=job_id)

    def stat_blob(self, path: str) -> dict[str, Any] | None:
        client = self._require_client("blob.stat", path, None)
        try:
            info = client.stat_object(self._bucket, path)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return None
            raise StorageError(f"Stat failed for {path}: {exc}", details={"path": path}) from exc
        except Exception as exc:
            raise StorageError(f"Stat failed for {path}: {exc}", details={"path": path}) from exc
        return {"path": path, "etag": (info.etag or "").strip('"') or None, "size_bytes": info.size}

    def exists(self, path: str) -> bool:
        return self.stat_blob(path) is not None

    def copy_blob(self, source_path: str, dest_path: str, job_id: str | None = None) -> dict[str, Any]:
        started_at = _utc_now()
        client = self._require_client("blob.copy", source_path, job_id)
        inputs = {"source_path": source_path, "dest_path": dest_path}
        try:
            result = client.copy_object(self._bucket, dest_path, CopySource(self._bucket, source_path))
        except Exception as exc:
            err = str(exc)
            _log_tool_run("blob.copy", inputs=inputs, outputs={"error": err}, status="error", started_at=started_at, job_id=job_id)
            raise StorageError(f"Copy {source_path} -> {dest_path} failed: {err}", details=inputs) from exc

        outputs = {"path": dest_path, "etag": getattr(result, "etag", None)}
        _log_tool_run("blob.copy", inputs=inputs, outputs=outputs, status="success", started_at=started_at, job_id=job_id)
        return outputs

    def signed_url(self, path: str, expires_seconds: int = 3600) -> str:
        client = self._require_client("blob.signed_url", path, None)
        try:
            return client.presigned_get_object(self._bucket, path, expires=timedelta(seconds=expires_seconds))
        except Exception as exc:
            raise StorageError(f"Signing URL for {path} failed: {exc}", details={"path": path}) from exc

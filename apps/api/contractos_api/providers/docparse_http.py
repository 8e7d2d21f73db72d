from __future__ import annotations

import io
import logging
import os
import time
from typing import Any, Callable

import httpx

from ..config import docparse_max_polls, docparse_poll_seconds, http_timeout_seconds
from ..errors import ExtractionParseError, ExtractionUpstreamError
from ..retry import RetryPolicy, parse_retry_after
from ..time_utils import _utc_now
from ..tool_runs import _log_tool_run
from .docparse import DocParseProvider

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.cloud.llamaindex.ai/api/v1"
_SERVICE = "docparse"


def _upstream_error(resp: httpx.Response, what: str) -> ExtractionUpstreamError:
    return ExtractionUpstreamError(
        f"{what} returned HTTP {resp.status_code}: {resp.text[:500]}",
        service=_SERVICE,
        status_code=resp.status_code,
        retry_after=parse_retry_after(resp.headers.get("retry-after")),
    )


class HttpDocParseProvider(DocParseProvider):
    """
    Client for a LlamaParse-style parsing service: upload the PDF, then poll the markdown
    result until the parse job reports SUCCESS or ERROR.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._base_url = (base_url or os.environ.get("COS_DOCPARSE_BASE_URL") or _DEFAULT_BASE_URL).rstrip("/")
        self._api_key = api_key or os.environ.get("COS_DOCPARSE_API_KEY")
        self._retry = retry_policy or RetryPolicy.from_env()
        self._sleep = sleep

    @property
    def profile_family(self) -> str:
        return "saas"

    def configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Accept": "application/json"}

    def _upload(self, client: httpx.Client, file_bytes: bytes, filename: str) -> str:
        files = {"file": (filename, io.BytesIO(file_bytes), "application/pdf")}
        resp = client.post(f"{self._base_url}/parsing/upload", headers=self._headers(), files=files)
        if resp.status_code >= 400:
            raise _upstream_error(resp, "PDF parsing failed: upload")
        try:
            parse_job_id = resp.json().get("id")
        except ValueError as exc:
            raise ExtractionParseError("parse upload answered with non-JSON body") from exc
        if not parse_job_id:
            raise ExtractionParseError("parse upload answered without a job id")
        return str(parse_job_id)

    def _poll_once(self, client: httpx.Client, parse_job_id: str) -> dict[str, Any] | None:
        resp = client.get(
            f"{self._base_url}/parsing/job/{parse_job_id}/result/markdown",
            headers=self._headers(),
        )
        if resp.status_code == 429:
            raise _upstream_error(resp, "parse poll")
        if resp.status_code >= 400:
            # The result endpoint answers non-2xx while the job is still pending.
            logger.debug("Parse poll for %s answered %s", parse_job_id, resp.status_code)
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    def parse_document(
        self,
        file_bytes: bytes,
        filename: str,
        job_id: str | None = None,
    ) -> dict[str, Any]:
        started_at = _utc_now()
        inputs_logged = {"filename": filename, "byte_count": len(file_bytes), "base_url": self._base_url}
        if not self.configured():
            err = "COS_DOCPARSE_API_KEY not configured"
            _log_tool_run("docparse.parse_document", inputs=inputs_logged, outputs={"error": err}, status="error", started_at=started_at, job_id=job_id)
            raise ExtractionUpstreamError(err, service=_SERVICE)

        max_polls = docparse_max_polls()
        interval = docparse_poll_seconds()
        try:
            with httpx.Client(timeout=http_timeout_seconds()) as client:
                parse_job_id = self._retry.run(
                    lambda: self._upload(client, file_bytes, filename),
                    label="docparse.upload",
                )
                for poll in range(1, max_polls + 1):
                    self._sleep(interval)
                    result = self._retry.run(
                        lambda: self._poll_once(client, parse_job_id),
                        label="docparse.poll",
                    )
                    status = str((result or {}).get("status") or "").upper()
                    if status == "SUCCESS":
                        markdown = (result or {}).get("markdown") or ""
                        outputs = {"parse_job_id": parse_job_id, "polls": poll, "markdown_length": len(markdown)}
                        _log_tool_run(
                            "docparse.parse_document",
                            inputs=inputs_logged,
                            outputs=outputs,
                            status="success",
                            started_at=started_at,
                            job_id=job_id,
                            confidence_hint="high",
                        )
                        return {"markdown": markdown, "parse_job_id": parse_job_id, "polls": poll}
                    if status == "ERROR":
                        raise ExtractionUpstreamError(
                            f"PDF parsing failed: parse job {parse_job_id} reported ERROR: {(result or {}).get('error') or 'unknown error'}",
                            service=_SERVICE,
                        )
                    logger.info("Parse job %s status %s (poll %s/%s)", parse_job_id, status or "PENDING", poll, max_polls)
                raise ExtractionUpstreamError(
                    f"parse timeout: job {parse_job_id} not finished after {max_polls} polls",
                    service=_SERVICE,
                    details={"parse_job_id": parse_job_id},
                )
        except (ExtractionUpstreamError, ExtractionParseError) as exc:
            _log_tool_run(
                "docparse.parse_document",
                inputs=inputs_logged,
                outputs={"error": exc.message},
                status="error",
                started_at=started_at,
                job_id=job_id,
                confidence_hint="low",
            )
            raise
        except httpx.HTTPError as exc:
            err = str(exc) or exc.__class__.__name__
            _log_tool_run(
                "docparse.parse_document",
                inputs=inputs_logged,
                outputs={"error": err},
                status="error",
                started_at=started_at,
                job_id=job_id,
                confidence_hint="low",
            )
            raise ExtractionUpstreamError(f"parse request failed: {err}", service=_SERVICE) from exc

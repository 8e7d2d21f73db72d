from __future__ import annotations

import os
from typing import Any

import httpx

from ..config import http_timeout_seconds
from ..errors import ExtractionParseError, ExtractionUpstreamError
from ..retry import RetryPolicy, parse_retry_after
from ..text_utils import _estimate_tokens, _extract_json_object
from ..time_utils import _utc_now
from ..tool_runs import _log_tool_run
from .llm import LLMProvider

_SERVICE = "llm"
_DEFAULT_MODEL = "google/gemini-2.5-flash"


def _message_text(messages: list[dict[str, Any]]) -> str:
    texts: list[str] = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            texts.append(content)
        elif isinstance(content, list):
            texts.extend(part.get("text") or "" for part in content if isinstance(part, dict))
    return "\n".join(texts)


class OpenAILLMProvider(LLMProvider):
    """
    OpenAI-compatible chat-completions gateway, called in JSON mode.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        model_id: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self._base_url = base_url or os.environ.get("COS_LLM_BASE_URL")
        self._api_key = api_key or os.environ.get("COS_LLM_API_KEY")
        self._model_id = model_id or os.environ.get("COS_LLM_MODEL") or _DEFAULT_MODEL
        self._retry = retry_policy or RetryPolicy.from_env()

    @property
    def profile_family(self) -> str:
        return "saas"

    def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        with httpx.Client(timeout=http_timeout_seconds()) as client:
            resp = client.post(url, json=payload, headers=headers)
        if resp.status_code >= 400:
            raise ExtractionUpstreamError(
                f"model service returned HTTP {resp.status_code}: {resp.text[:500]}",
                service=_SERVICE,
                status_code=resp.status_code,
                retry_after=parse_retry_after(resp.headers.get("retry-after")),
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ExtractionParseError("model service answered with a non-JSON body") from exc

    def generate_structured(
        self,
        messages: list[dict[str, Any]],
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        started_at = _utc_now()
        options = options or {}
        job_id = options.get("job_id")
        model_id = options.get("model_id") or self._model_id

        inputs_logged = {
            "model_id": model_id,
            "message_count": len(messages),
            "approx_prompt_tokens": _estimate_tokens(_message_text(messages)),
        }

        if not self._base_url:
            err = "COS_LLM_BASE_URL not configured"
            _log_tool_run("llm.generate_structured", inputs=inputs_logged, outputs={"error": err}, status="error", started_at=started_at, job_id=job_id)
            raise ExtractionUpstreamError(err, service=_SERVICE)

        url = self._base_url.rstrip("/") + "/chat/completions"
        payload: dict[str, Any] = {
            "model": model_id,
            "messages": messages,
            "temperature": options.get("temperature", 0.0),
            "response_format": {"type": "json_object"},
        }
        if options.get("max_tokens"):
            payload["max_tokens"] = options["max_tokens"]

        try:
            try:
                data = self._retry.run(lambda: self._post(url, payload), label="llm.chat_completions")
            except httpx.HTTPError as exc:
                raise ExtractionUpstreamError(f"model request failed: {exc}", service=_SERVICE) from exc

            try:
                raw_text = data["choices"][0]["message"]["content"] or ""
            except (KeyError, IndexError, TypeError) as exc:
                raise ExtractionParseError("model response has no choices[0].message.content") from exc
            usage = data.get("usage") or {}
            json_obj = _extract_json_object(raw_text)
            if json_obj is None:
                raise ExtractionParseError(
                    "model answer did not contain a JSON object",
                    details={"raw_text_preview": raw_text[:500]},
                )
        except (ExtractionUpstreamError, ExtractionParseError) as exc:
            _log_tool_run(
                "llm.generate_structured",
                inputs=inputs_logged,
                outputs={"error": exc.message, "kind": exc.kind},
                status="error",
                started_at=started_at,
                job_id=job_id,
                confidence_hint="low",
            )
            raise

        tool_run_id = _log_tool_run(
            "llm.generate_structured",
            inputs=inputs_logged,
            outputs={"usage": usage, "raw_text_preview": raw_text[:1000]},
            status="success",
            started_at=started_at,
            job_id=job_id,
            confidence_hint="medium",
        )
        return {
            "json": json_obj,
            "usage": usage,
            "model_id": model_id,
            "raw_text": raw_text,
            "tool_run_id": tool_run_id,
        }

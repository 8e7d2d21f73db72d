from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..blob_store import to_data_url
from ..providers.docparse import DocParseProvider
from ..providers.factory import get_docparse_provider, get_llm_provider
from ..providers.llm import LLMProvider
from .classifier import document_type_config
from .prompts import document_user_prompt, markdown_user_prompt, system_prompt

logger = logging.getLogger(__name__)

StepLogger = Callable[[str, str, dict[str, Any]], None]


@dataclass
class ExtractionResult:
    raw: dict[str, Any]
    parse_method: str
    model_id: str | None = None
    markdown_length: int | None = None
    usage: dict[str, Any] = field(default_factory=dict)


def _noop_step(step: str, message: str, meta: dict[str, Any]) -> None:
    logger.debug("%s: %s %s", step, message, meta)


class ExtractionClient:
    """
    Sends one document to the external services and returns the model's JSON.

    `parse_then_model` types go through the parsing service first and send markdown to the
    model; `model_only` types (and every type when the parsing service is not configured)
    send the PDF itself as a file part. Errors from either service propagate unchanged.
    """

    def __init__(self, docparse: DocParseProvider | None = None, llm: LLMProvider | None = None):
        self._docparse = docparse or get_docparse_provider()
        self._llm = llm or get_llm_provider()

    def extract(
        self,
        file_bytes: bytes,
        filename: str,
        document_type: str,
        job_id: str | None = None,
        log_step: StepLogger | None = None,
    ) -> ExtractionResult:
        log_step = log_step or _noop_step
        pipeline = document_type_config(document_type).get("pipeline") or "model_only"
        system = system_prompt(document_type)

        if pipeline == "parse_then_model" and self._docparse.configured():
            log_step("parse_start", "Submitting document to the parsing service", {"filename": filename, "file_size": len(file_bytes), "profile_family": self._docparse.profile_family})
            parsed = self._docparse.parse_document(file_bytes, filename, job_id=job_id)
            markdown = parsed.get("markdown") or ""
            log_step(
                "parse_success",
                f"Parsed into {len(markdown)} characters of markdown",
                {"markdown_length": len(markdown), "parse_job_id": parsed.get("parse_job_id"), "polls": parsed.get("polls")},
            )
            messages = [
                {"role": "system", "content": system},
                {"role": "user", "content": markdown_user_prompt(document_type, filename, markdown)},
            ]
            parse_method = "docparse_markdown"
            markdown_length: int | None = len(markdown)
        else:
            if pipeline == "parse_then_model":
                log_step("parse_skipped", "Parsing service not configured; sending the PDF directly", {"filename": filename})
            messages = [
                {"role": "system", "content": system},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": document_user_prompt(document_type, filename)},
                        {
                            "type": "file",
                            "file": {"filename": filename, "file_data": to_data_url(file_bytes, "application/pdf")},
                        },
                    ],
                },
            ]
            parse_method = "direct_pdf"
            markdown_length = None

        log_step("model_call", "Calling the model service", {"parse_method": parse_method, "profile_family": self._llm.profile_family})
        out = self._llm.generate_structured(messages, options={"job_id": job_id})
        return ExtractionResult(
            raw=out["json"],
            parse_method=parse_method,
            model_id=out.get("model_id"),
            markdown_length=markdown_length,
            usage=out.get("usage") or {},
        )

from __future__ import annotations

import abc
from typing import Any

from .base import Provider


class LLMProvider(Provider):
    """
    Interface for schema-guided JSON extraction from a chat-completions model.
    """

    @abc.abstractmethod
    def generate_structured(
        self,
        messages: list[dict[str, Any]],
        options: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Generates structured JSON output from an LLM.

        Args:
            messages: Chat messages. `content` is either a string or a list of content parts
                (text and file parts for PDF documents).
            options: model_id, temperature, max_tokens, job_id.

        Returns:
            {
                "json": dict,
                "usage": dict,
                "model_id": str,
                "raw_text": str,
                "tool_run_id": str | None
            }

        Raises ExtractionUpstreamError for non-success responses and ExtractionParseError
        when the answer holds no JSON object.
        """
        pass

from __future__ import annotations

import abc
from typing import Any

from .base import Provider


class DocParseProvider(Provider):
    """
    Interface for turning PDF bytes into text (markdown) ahead of structured extraction.
    """

    @abc.abstractmethod
    def configured(self) -> bool:
        """Whether the parsing service can be called at all."""
        pass

    @abc.abstractmethod
    def parse_document(
        self,
        file_bytes: bytes,
        filename: str,
        job_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Parses a document into markdown.

        Returns:
            {"markdown": str, "parse_job_id": str, "polls": int}

        Raises ExtractionUpstreamError on non-success responses, a failed parse job or a
        parse that does not finish within the polling budget.
        """
        pass

from __future__ import annotations

import os

from .base import BlobStoreProvider
from .docparse import DocParseProvider
from .docparse_http import HttpDocParseProvider
from .llm import LLMProvider
from .llm_openai import OpenAILLMProvider
from .oss_blob import MinIOBlobStoreProvider


def get_blob_store_provider() -> BlobStoreProvider:
    """
    Returns the configured BlobStoreProvider.
    Only the S3-compatible MinIO client is implemented.
    """
    profile = os.environ.get("COS_STORAGE_PROFILE", "s3")
    if profile != "s3":
        raise NotImplementedError(f"Storage profile {profile!r} is not implemented")
    return MinIOBlobStoreProvider()


def get_docparse_provider() -> DocParseProvider:
    return HttpDocParseProvider()


def get_llm_provider() -> LLMProvider:
    return OpenAILLMProvider()

from __future__ import annotations

import abc
from typing import Any


class Provider(abc.ABC):
    """
    Base class for all providers.
    Every concrete provider declares a profile_family ('oss' for self-hosted services, 'saas' for hosted APIs).
    """

    @property
    @abc.abstractmethod
    def profile_family(self) -> str:
        """The profile family this provider belongs to."""
        pass


class BlobStoreProvider(Provider):
    """
    Interface for the object store holding uploaded contract documents.

    Every failure surfaces as `StorageError`.
    """

    @abc.abstractmethod
    def put_blob(
        self,
        path: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Stores a blob and returns metadata.
        Returns: {path, etag, size_bytes, content_type}
        """
        pass

    @abc.abstractmethod
    def get_blob(self, path: str, job_id: str | None = None) -> dict[str, Any]:
        """
        Retrieves a blob and its metadata.
        Returns: {bytes, content_type, etag, metadata}
        """
        pass

    @abc.abstractmethod
    def delete_blob(self, path: str, job_id: str | None = None) -> None:
        pass

    @abc.abstractmethod
    def stat_blob(self, path: str) -> dict[str, Any] | None:
        """
        Object metadata without the body, or `None` when nothing is stored at `path`.
        Returns: {path, etag, size_bytes}
        """
        pass

    @abc.abstractmethod
    def exists(self, path: str) -> bool:
        pass

    @abc.abstractmethod
    def copy_blob(self, source_path: str, dest_path: str, job_id: str | None = None) -> dict[str, Any]:
        """
        Server-side copy. Used for renames: copy, verify, then delete the source.
        Returns: {path, etag}
        """
        pass

    @abc.abstractmethod
    def signed_url(self, path: str, expires_seconds: int = 3600) -> str:
        pass

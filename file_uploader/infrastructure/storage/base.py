from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Mapping, Sequence


class StoreError(Exception):
    """A request the object store answered with an error."""

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.code = code or type(self).__name__
        self.status_code = status_code


class StoreTransportError(StoreError):
    """The request never got an answer: connection reset, DNS, timeouts."""


@dataclass(frozen=True)
class ObjectHead:
    key: str
    size_bytes: int
    etag: str | None = None
    content_type: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


class ObjectStoreClient(ABC):
    """Object store primitives the upload pipeline is written against.

    Implementations are bound to one bucket. Every method raises
    ``StoreError`` (or ``StoreTransportError``) on failure.
    """

    bucket: str
    region: str | None = None

    @abstractmethod
    async def put_object(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str:
        """Store a whole object in one request. Returns its etag."""

    @abstractmethod
    async def create_multipart_upload(
        self,
        key: str,
        *,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str:
        """Start a multipart upload. Returns the upload id."""

    @abstractmethod
    async def upload_part(self, key: str, upload_id: str, part_number: int, body: bytes) -> str:
        """Upload one part. Returns the part etag."""

    @abstractmethod
    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> str:
        """Assemble ``(part_number, etag)`` pairs into the final object. Returns its etag."""

    @abstractmethod
    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Discard a multipart upload and every part committed under it."""

    @abstractmethod
    async def head_object(self, key: str) -> ObjectHead | None:
        """Return object metadata, or None when the key does not exist."""

    @abstractmethod
    async def delete_object(self, key: str) -> None:
        """Delete object by key."""

    @abstractmethod
    async def head_bucket(self) -> None:
        """Raise if the bucket is not reachable."""

    @abstractmethod
    def object_url(self, key: str) -> str:
        """Locator a client can use to address the stored object."""

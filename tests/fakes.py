"""In-memory object store and payload helpers shared by the tests."""

import hashlib
from collections import defaultdict
from typing import Mapping, Sequence

import anyio

from file_uploader.infrastructure.storage.base import ObjectHead, ObjectStoreClient, StoreError

PNG_HEADER = bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A])
KIB = 1024
MIB = 1024 * 1024

MUTATING_CALLS = {
    "put_object",
    "create_multipart_upload",
    "upload_part",
    "complete_multipart_upload",
    "abort_multipart_upload",
    "delete_object",
}


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


class FakeObjectStore(ObjectStoreClient):
    """In-memory object store that records calls and can be told to fail."""

    def __init__(self, bucket: str = "test-bucket", region: str = "us-east-1", delay: float = 0.0):
        self.bucket = bucket
        self.region = region
        self.delay = delay
        self.objects: dict[str, dict] = {}
        self.uploads: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.aborted: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._part_failures: dict[int, list[Exception]] = defaultdict(list)
        self._upload_counter = 0
        self._operation_delays: dict[str, float] = {}
        self._part_delays: dict[int, float] = {}

    def slow(self, operation: str, seconds: float) -> None:
        self._operation_delays[operation] = seconds

    def slow_part(self, part_number: int, seconds: float) -> None:
        self._part_delays[part_number] = seconds

    def fail(self, operation: str, exc: Exception, times: int = 1) -> None:
        self._failures[operation].extend([exc] * times)

    def fail_part(self, part_number: int, exc: Exception, times: int = 1) -> None:
        self._part_failures[part_number].extend([exc] * times)

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def mutating_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    def _enter(self, operation: str, *detail) -> None:
        self.calls.append((operation, *detail))
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    async def put_object(self, key: str, body: bytes, *, content_type: str, metadata: Mapping[str, str]) -> str:
        self._enter("put_object", key)
        await anyio.sleep(self._operation_delays.get("put_object", self.delay))
        etag = _etag(body)
        self.objects[key] = {"body": body, "content_type": content_type, "metadata": dict(metadata), "etag": etag}
        return etag

    async def create_multipart_upload(self, key: str, *, content_type: str, metadata: Mapping[str, str]) -> str:
        self._enter("create_multipart_upload", key)
        await anyio.sleep(self._operation_delays.get("create_multipart_upload", 0))
        self._upload_counter += 1
        upload_id = f"upload-{self._upload_counter}"
        self.uploads[upload_id] = {"key": key, "content_type": content_type, "metadata": dict(metadata), "parts": {}}
        return upload_id

    async def upload_part(self, key: str, upload_id: str, part_number: int, body: bytes) -> str:
        self._enter("upload_part", key, part_number)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await anyio.sleep(self._part_delays.get(part_number, self._operation_delays.get("upload_part", self.delay)))
            if self._part_failures[part_number]:
                raise self._part_failures[part_number].pop(0)
            if upload_id not in self.uploads:
                raise StoreError("no such upload", code="NoSuchUpload", status_code=404)
            self.uploads[upload_id]["parts"][part_number] = body
            return _etag(body)
        finally:
            self.in_flight -= 1

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: Sequence[tuple[int, str]]) -> str:
        self._enter("complete_multipart_upload", key, tuple(number for number, _ in parts))
        await anyio.sleep(self._operation_delays.get("complete_multipart_upload", 0))
        upload = self.uploads.pop(upload_id)
        stored = upload["parts"]
        body = b"".join(stored[number] for number, _ in parts)
        for number, etag in parts:
            if _etag(stored[number]) != etag:
                raise StoreError("etag mismatch", code="InvalidPart", status_code=400)
        etag = f'"{hashlib.md5(body).hexdigest()}-{len(parts)}"'
        self.objects[key] = {
            "body": body,
            "content_type": upload["content_type"],
            "metadata": upload["metadata"],
            "etag": etag,
        }
        return etag

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self._enter("abort_multipart_upload", key)
        self.uploads.pop(upload_id, None)
        self.aborted.append(upload_id)

    async def head_object(self, key: str) -> ObjectHead | None:
        self._enter("head_object", key)
        stored = self.objects.get(key)
        if stored is None:
            return None
        return ObjectHead(
            key=key,
            size_bytes=len(stored["body"]),
            etag=stored["etag"],
            content_type=stored["content_type"],
            metadata=stored["metadata"],
        )

    async def delete_object(self, key: str) -> None:
        self._enter("delete_object", key)
        self.objects.pop(key, None)

    async def head_bucket(self) -> None:
        self._enter("head_bucket")

    def object_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"


def png_bytes(size: int) -> bytes:
    filler = bytes(range(256)) * (size // 256 + 1)
    return (PNG_HEADER + filler)[:size]


async def chunked(data: bytes, chunk_size: int):
    for start in range(0, len(data), chunk_size):
        yield data[start:start + chunk_size]

import re
from dataclasses import replace

import pytest

from file_uploader.domain.enums import ErrorKind, FailureStage, UploadMode, ValidationStep
from file_uploader.domain.upload import UploadRequest
from file_uploader.exceptions.exceptions import ValidationError
from file_uploader.infrastructure.connection_pool import ConnectionPool
from file_uploader.infrastructure.storage.base import StoreError, StoreTransportError
from file_uploader.services.transfer_engine import MultipartTransferEngine
from file_uploader.services.upload_service import UploadService, upload_with_retry
from tests.fakes import KIB, MIB, PNG_HEADER, png_bytes

pytestmark = pytest.mark.anyio


class NoSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TrackedStream:
    """Async byte source that remembers whether it was closed."""

    def __init__(self, data: bytes, chunk_size: int):
        self.data = data
        self.chunk_size = chunk_size
        self.closed = False
        self.delivered = 0
        self._gen = self._chunks()

    async def _chunks(self):
        try:
            for start in range(0, len(self.data), self.chunk_size):
                chunk = self.data[start:start + self.chunk_size]
                self.delivered += len(chunk)
                yield chunk
        finally:
            self.closed = True

    def __aiter__(self):
        return self._gen

    async def aclose(self):
        await self._gen.aclose()


def build_service(store, config, *, part_size=KIB, threshold=4 * KIB, concurrency=2):
    engine = MultipartTransferEngine(
        store,
        ConnectionPool(10),
        part_size=part_size,
        multipart_threshold=threshold,
        concurrency=concurrency,
        request_timeout=config.request_timeout_seconds,
        min_part_size=KIB,
    )
    return UploadService(store, engine, config)


def buffered(name, content_type, data, **extra):
    return UploadRequest(
        source_name=name,
        declared_content_type=content_type,
        declared_size=len(data),
        payload=data,
        extra_metadata=extra,
    )


async def test_buffered_png_upload(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    data = png_bytes(10 * KIB)
    events = []

    result = await service.upload(buffered("Holiday Pic.png", "image/png", data, album="summer"), events.append)

    assert result.ok
    uploaded = result.value
    assert re.match(r"^uploads/\d{13}-[0-9a-f]{16}-Holiday_Pic\.png$", uploaded.storage_key)
    assert uploaded.size_bytes == len(data)
    assert uploaded.part_count == 10
    assert uploaded.upload_mode is UploadMode.BUFFER
    assert uploaded.bucket == "test-bucket"
    assert uploaded.public_locator == f"https://test-bucket.s3.us-east-1.amazonaws.com/{uploaded.storage_key}"
    assert set(uploaded.content_hashes) == {"sha256", "md5"}
    assert fake_store.objects[uploaded.storage_key]["body"] == data
    assert events[-1].percentage == 100
    assert events[-1].storage_key == uploaded.storage_key

    metadata = fake_store.objects[uploaded.storage_key]["metadata"]
    assert metadata["original-filename"] == "Holiday Pic.png"
    assert metadata["file-size"] == str(len(data))
    assert metadata["file-sha256"] == uploaded.content_hashes["sha256"]
    assert metadata["processing-version"] == "1.0"
    assert metadata["environment"] == "test"
    assert metadata["album"] == "summer"


async def test_fake_pdf_never_reaches_the_store(fake_store, upload_config):
    service = build_service(fake_store, upload_config)

    result = await service.upload(buffered("report.pdf", "application/pdf", b"\x00" * KIB))

    assert not result.ok
    assert result.error.kind is ErrorKind.VALIDATION_FAILURE
    assert result.error.step is ValidationStep.CONTENT
    assert result.error.stage is FailureStage.VALIDATION
    assert not result.error.retryable
    assert fake_store.calls == []


async def test_oversize_is_rejected_before_any_store_call(fake_store, upload_config):
    config = replace(upload_config, max_file_size_bytes=4 * KIB)
    service = build_service(fake_store, config)

    result = await service.upload(buffered("big.png", "image/png", png_bytes(5 * KIB)))

    assert not result.ok
    assert result.error.code == "FILE_TOO_LARGE"
    assert result.error.step is ValidationStep.METADATA
    assert fake_store.calls == []


async def test_declared_size_must_match_buffer(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    request = UploadRequest("a.png", "image/png", 99, png_bytes(KIB))

    result = await service.upload(request)

    assert not result.ok
    assert result.error.code == "SIZE_MISMATCH"
    assert fake_store.calls == []


async def test_missing_payload_is_a_validation_failure(fake_store, upload_config):
    service = build_service(fake_store, upload_config)

    result = await service.upload(UploadRequest("a.png", "image/png", 10, None))

    assert not result.ok
    assert result.error.code == "INVALID_FILE_INPUT"


async def test_unsupported_payload_type_is_a_contract_violation(fake_store, upload_config):
    service = build_service(fake_store, upload_config)

    with pytest.raises(ValidationError):
        await service.upload(UploadRequest("a.txt", "text/plain", 3, "abc"))


def test_negative_declared_size_is_a_contract_violation():
    with pytest.raises(ValidationError):
        UploadRequest("a.txt", "text/plain", -1, b"")


async def test_streamed_upload(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    data = png_bytes(6 * KIB + 10)
    stream = TrackedStream(data, 700)
    request = UploadRequest("clip.png", "image/png", len(data), stream)

    result = await service.upload(request)

    assert result.ok
    assert result.value.upload_mode is UploadMode.STREAM
    assert result.value.part_count == 7
    assert set(result.value.content_hashes) == {"sha256"}
    assert fake_store.objects[result.value.storage_key]["body"] == data
    assert "file-sha256" not in fake_store.objects[result.value.storage_key]["metadata"]


async def test_stream_with_wrong_signature_is_closed_without_store_calls(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    data = b"GIF89a" + b"\x00" * (8 * KIB)
    stream = TrackedStream(data, 512)

    result = await service.upload(UploadRequest("fake.png", "image/png", len(data), stream))

    assert not result.ok
    assert result.error.kind is ErrorKind.VALIDATION_FAILURE
    assert result.error.step is ValidationStep.CONTENT
    assert fake_store.calls == []
    assert stream.closed
    assert stream.delivered == 512


async def test_stream_longer_than_declared_is_aborted(fake_store, upload_config):
    config = replace(upload_config, max_file_size_bytes=6 * KIB)
    service = build_service(fake_store, config)
    data = PNG_HEADER + b"\x00" * (10 * KIB)
    stream = TrackedStream(data, 512)
    # declared within the limit, delivers more than declared
    request = UploadRequest("liar.png", "image/png", 5 * KIB, stream)

    result = await service.upload(request)

    assert not result.ok
    assert result.error.kind is ErrorKind.VALIDATION_FAILURE
    assert "complete_multipart_upload" not in fake_store.call_names()
    assert fake_store.aborted == ["upload-1"]
    assert stream.closed
    assert stream.delivered < len(data)


async def test_stream_failing_before_its_header_is_a_transport_failure(fake_store, upload_config):
    service = build_service(fake_store, upload_config)

    async def dropped_connection():
        raise ConnectionResetError("client went away")
        yield b""

    result = await service.upload(UploadRequest("clip.png", "image/png", 8 * KIB, dropped_connection()))

    assert not result.ok
    assert result.error.kind is ErrorKind.TRANSPORT_FAILURE
    assert result.error.stage is FailureStage.TRANSFER
    assert result.error.retryable
    assert "client went away" in result.error.message
    assert fake_store.calls == []


async def test_stream_failing_after_its_header_is_also_returned(fake_store, upload_config):
    service = build_service(fake_store, upload_config)

    async def dropped_midway():
        yield PNG_HEADER + b"\x00" * 1000
        raise ConnectionResetError("client went away")

    result = await service.upload(UploadRequest("clip.png", "image/png", 8 * KIB, dropped_midway()))

    assert not result.ok
    assert result.error.kind is ErrorKind.TRANSPORT_FAILURE
    assert result.error.retryable


async def test_transport_failure_is_retryable_and_reported_with_part(fake_store, upload_config):
    fake_store.fail_part(2, StoreTransportError("connection reset", code="ECONNRESET"))
    service = build_service(fake_store, upload_config, concurrency=1)

    result = await service.upload(buffered("photo.png", "image/png", png_bytes(5 * KIB)))

    assert not result.ok
    assert result.error.kind is ErrorKind.TRANSPORT_FAILURE
    assert result.error.retryable
    assert result.error.part_index == 2
    assert result.error.stage is FailureStage.TRANSFER
    assert fake_store.aborted == ["upload-1"]


async def test_store_rejection_is_not_retryable(fake_store, upload_config):
    fake_store.fail("put_object", StoreError("Access Denied", code="AccessDenied", status_code=403))
    service = build_service(fake_store, upload_config)

    result = await service.upload(buffered("notes.txt", "text/plain", b"hello world"))

    assert not result.ok
    assert result.error.kind is ErrorKind.STORE_REJECTION
    assert not result.error.retryable


async def test_upload_with_retry_reuses_the_storage_key(fake_store, upload_config):
    fake_store.fail("put_object", StoreTransportError("timed out", code="ETIMEDOUT"), times=2)
    service = build_service(fake_store, upload_config)
    sleep = NoSleep()

    result = await upload_with_retry(service, buffered("notes.txt", "text/plain", b"hello world"), sleep=sleep)

    assert result.ok
    assert result.attempts == 3
    keys = {call[1] for call in fake_store.calls if call[0] == "put_object"}
    assert keys == {result.value.storage_key}
    assert len(sleep.delays) == 2


async def test_upload_with_retry_keeps_the_caller_correlation_id(fake_store, upload_config):
    fake_store.fail("put_object", StoreTransportError("timed out", code="ETIMEDOUT"))
    service = build_service(fake_store, upload_config)

    result = await upload_with_retry(
        service,
        buffered("notes.txt", "text/plain", b"hello world"),
        correlation_id="req-7f3a",
        sleep=NoSleep(),
    )

    assert result.ok
    assert result.attempts == 2
    assert result.value.metadata["upload-request-id"] == "req-7f3a"
    assert fake_store.objects[result.value.storage_key]["metadata"]["upload-request-id"] == "req-7f3a"


async def test_upload_with_retry_stops_on_validation_failure(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    sleep = NoSleep()

    result = await upload_with_retry(service, buffered("empty.txt", "text/plain", b""), sleep=sleep)

    assert not result.ok
    assert result.attempts == 1
    assert sleep.delays == []


async def test_upload_with_retry_gives_up_after_max_attempts(fake_store, upload_config):
    fake_store.fail("put_object", StoreTransportError("reset", code="ECONNRESET"), times=5)
    service = build_service(fake_store, upload_config)

    result = await upload_with_retry(
        service, buffered("notes.txt", "text/plain", b"hello"), max_attempts=2, sleep=NoSleep()
    )

    assert not result.ok
    assert result.attempts == 2
    assert fake_store.call_names().count("put_object") == 2


async def test_streams_get_a_single_attempt(fake_store, upload_config):
    fake_store.fail("put_object", StoreTransportError("reset", code="ECONNRESET"))
    service = build_service(fake_store, upload_config)
    data = b"plain text body"
    request = UploadRequest("notes.txt", "text/plain", len(data), TrackedStream(data, 4))

    result = await upload_with_retry(service, request, sleep=NoSleep())

    assert not result.ok
    assert result.attempts == 1
    assert result.error.retryable


async def test_exists_and_delete(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    uploaded = await service.upload(buffered("notes.txt", "text/plain", b"hello"))
    key = uploaded.value.storage_key

    assert (await service.exists(key)).value is True
    deleted = await service.delete(key)
    assert deleted.ok
    assert deleted.value.deleted
    assert (await service.exists(key)).value is False

    again = await service.delete(key)
    assert again.ok
    assert not again.value.deleted


async def test_exists_is_side_effect_free_after_failed_delete(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    uploaded = await service.upload(buffered("notes.txt", "text/plain", b"hello"))
    key = uploaded.value.storage_key
    fake_store.fail("delete_object", StoreError("Access Denied", code="AccessDenied", status_code=403))

    deleted = await service.delete(key)
    assert not deleted.ok
    assert deleted.error.kind is ErrorKind.STORE_REJECTION

    mutations_before = len(fake_store.mutating_calls())
    first = await service.exists(key)
    second = await service.exists(key)
    assert first.ok and second.ok
    assert first.value is True and second.value is True
    assert len(fake_store.mutating_calls()) == mutations_before


async def test_exists_requires_a_key(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    result = await service.exists("  ")
    assert not result.ok
    assert result.error.kind is ErrorKind.VALIDATION_FAILURE
    assert fake_store.calls == []


async def test_exists_classifies_store_failures(fake_store, upload_config):
    fake_store.fail("head_object", StoreTransportError("reset", code="ECONNRESET"))
    service = build_service(fake_store, upload_config)
    result = await service.exists("uploads/anything.txt")
    assert not result.ok
    assert result.error.kind is ErrorKind.TRANSPORT_FAILURE


async def test_health_check(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    healthy = await service.health_check()
    assert healthy["healthy"]
    assert healthy["bucket"] == "test-bucket"

    fake_store.fail("head_bucket", StoreError("No such bucket", code="NoSuchBucket", status_code=404))
    unhealthy = await service.health_check()
    assert not unhealthy["healthy"]
    assert "No such bucket" in unhealthy["error"]


def test_describe_limits(fake_store, upload_config):
    service = build_service(fake_store, upload_config)
    limits = service.describe_limits()
    assert limits["max_file_size_bytes"] == 20 * MIB
    assert "image/png" in limits["allowed_mime_types"]
    assert limits["bucket"] == "test-bucket"
    assert limits["region"] == "us-east-1"

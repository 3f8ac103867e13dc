from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from types import MappingProxyType
from typing import AsyncIterator, Awaitable, Callable
from urllib.parse import quote

import anyio

from file_uploader.core.config import UploadConfig
from file_uploader.core.upload_events import UploadEventLogger, new_correlation_id
from file_uploader.domain.enums import FailureStage, ValidationStep
from file_uploader.domain.upload import (
    DeleteOutcome,
    Err,
    Ok,
    ProgressEvent,
    Result,
    TransferError,
    UploadError,
    UploadRequest,
    UploadResult,
)
from file_uploader.exceptions.exceptions import ValidationError
from file_uploader.infrastructure.checksum import StreamingSHA256, digest_buffer
from file_uploader.infrastructure.storage.base import ObjectStoreClient, StoreError
from file_uploader.services.content_validator import ContentValidator, StreamValidator
from file_uploader.services.failure_classifier import to_upload_error
from file_uploader.services.key_generator import generate_storage_key
from file_uploader.services.retry_policy import execute_with_retry
from file_uploader.services.transfer_engine import MultipartTransferEngine, ProgressCallback, SourceError

logger = logging.getLogger(__name__)

PROCESSING_VERSION = "1.0"
_METADATA_SAFE_CHARS = " -_.:+@/="
_STORE_FAILURES = (StoreError, TimeoutError, OSError)


class ContentRejected(Exception):
    """Raised inside a validated stream when the StreamValidator rejects it."""

    def __init__(self, reason: str, code: str = "INVALID_FILE_CONTENT"):
        super().__init__(reason)
        self.reason = reason
        self.code = code


class UploadService:
    """Validates an upload, names it, and hands it to the transfer engine.

    Every outcome is returned as ``Ok``/``Err``. The service never retries;
    wrap ``upload`` in ``execute_with_retry`` (see ``upload_with_retry``).
    """

    def __init__(
        self,
        store: ObjectStoreClient,
        engine: MultipartTransferEngine,
        config: UploadConfig,
        validator: ContentValidator | None = None,
        key_generator: Callable[[str, str], str] = generate_storage_key,
    ):
        self.store = store
        self.engine = engine
        self.config = config
        self.validator = validator or ContentValidator(config)
        self.key_generator = key_generator

    def generate_key(self, source_name: str) -> str:
        return self.key_generator(source_name, self.config.key_prefix)

    async def upload(
        self,
        request: UploadRequest,
        on_progress: ProgressCallback | None = None,
        *,
        storage_key: str | None = None,
        correlation_id: str | None = None,
    ) -> Result[UploadResult]:
        correlation_id = correlation_id or new_correlation_id()
        events = UploadEventLogger(correlation_id, request.source_name or "unknown")
        started = time.perf_counter()
        events.info(
            "upload.started",
            mode=request.mode.value,
            content_type=request.declared_content_type,
            declared_size=request.declared_size,
        )
        try:
            outcome = await self._run(request, on_progress, storage_key, correlation_id, events, started)
        except Exception:
            logger.exception("[upload] unexpected failure correlation_id=%s", correlation_id)
            await self._close_source(request)
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if outcome.ok:
            events.info(
                "upload.completed",
                key=outcome.value.storage_key,
                size=outcome.value.size_bytes,
                parts=outcome.value.part_count,
                elapsed_ms=elapsed_ms,
            )
        else:
            await self._close_source(request)
            events.warning(
                "upload.failed",
                kind=outcome.error.kind.value,
                stage=outcome.error.stage.value,
                retryable=outcome.error.retryable,
                code=outcome.error.code,
                elapsed_ms=elapsed_ms,
            )
        return outcome

    async def _run(
        self,
        request: UploadRequest,
        on_progress: ProgressCallback | None,
        storage_key: str | None,
        correlation_id: str,
        events: UploadEventLogger,
        started: float,
    ) -> Result[UploadResult]:
        payload = request.payload
        if payload is None or not (request.source_name or "").strip():
            return self._reject(
                events,
                UploadError.validation(
                    "Upload request is missing its payload or source name",
                    ValidationStep.METADATA,
                    code="INVALID_FILE_INPUT",
                ),
            )
        if not isinstance(payload, bytes) and not hasattr(payload, "__aiter__"):
            raise ValidationError("Payload must be bytes or an async iterable of bytes")

        size = len(payload) if isinstance(payload, bytes) else request.declared_size
        if isinstance(payload, bytes) and request.declared_size != size:
            return self._reject(
                events,
                UploadError.validation(
                    f"Declared size {request.declared_size} does not match payload length {size}",
                    ValidationStep.METADATA,
                    code="SIZE_MISMATCH",
                ),
            )

        metadata_check = self.validator.validate_metadata(request.source_name, request.declared_content_type, size)
        if not metadata_check.accepted:
            return self._reject(
                events,
                UploadError.validation(metadata_check.reason, ValidationStep.METADATA, code=metadata_check.code),
            )

        hashes: dict[str, str] = {}
        stream_hasher: StreamingSHA256 | None = None
        if isinstance(payload, bytes):
            header_check = self.validator.validate_header(payload, request.declared_content_type)
            if not header_check.accepted:
                return self._reject(
                    events,
                    UploadError.validation(header_check.reason, ValidationStep.CONTENT, code="INVALID_FILE_CONTENT"),
                )
            hashes = digest_buffer(payload)
            source = payload
        else:
            stream_validator = self.validator.stream_validator(request.declared_content_type, expected_size=size)
            iterator = aiter(payload)
            primed = await self._prime_stream(iterator, stream_validator)
            if isinstance(primed, UploadError):
                return self._reject(events, primed)
            stream_hasher = StreamingSHA256()
            source = self._validated_stream(primed, iterator, stream_validator, stream_hasher)
        events.info("validation.passed", size=size)

        key = storage_key or self.generate_key(request.source_name)
        events.info("key.generated", key=key, reused=storage_key is not None)

        metadata = self._object_metadata(request, correlation_id, size, hashes)

        def _report(event: ProgressEvent) -> None:
            events.debug("transfer.progress", key=key, percentage=event.percentage, bytes=event.bytes_transferred)
            if on_progress is not None:
                on_progress(event)

        events.info("transfer.started", key=key, size=size, multipart=size >= self.engine.multipart_threshold)
        outcome = await self.engine.send(
            source,
            key,
            request.declared_content_type,
            metadata,
            total_size=size,
            source_name=request.source_name,
            on_progress=_report,
        )
        if not outcome.ok:
            error = self._transfer_failure(outcome.error)
            events.warning(
                "transfer.failed",
                key=key,
                kind=error.kind.value,
                retryable=error.retryable,
                part=error.part_index,
                reason=error.message,
            )
            return Err(error)

        transfer = outcome.value
        events.info("transfer.completed", key=key, etag=transfer.etag, parts=len(transfer.parts))
        if stream_hasher is not None:
            hashes = {"sha256": stream_hasher.hexdigest()}

        return Ok(
            UploadResult(
                file_id=str(uuid.uuid4()),
                storage_key=key,
                public_locator=self.store.object_url(key),
                source_name=request.source_name,
                content_type=request.declared_content_type,
                bucket=self.store.bucket,
                size_bytes=transfer.size_bytes,
                content_hashes=MappingProxyType(hashes),
                etag=transfer.etag,
                completed_at=datetime.now(timezone.utc),
                processing_duration_ms=int((time.perf_counter() - started) * 1000),
                upload_mode=request.mode,
                part_count=len(transfer.parts),
                metadata=MappingProxyType(metadata),
            )
        )

    def _reject(self, events: UploadEventLogger, error: UploadError) -> Err[UploadError]:
        events.warning("validation.failed", step=error.step.value if error.step else None, code=error.code, reason=error.message)
        return Err(error)

    async def _prime_stream(
        self,
        iterator: AsyncIterator[bytes],
        stream_validator: StreamValidator,
    ) -> list[bytes] | UploadError:
        """Read just enough of the stream to check its signature before any store call."""
        prefix: list[bytes] = []
        while not stream_validator.header_checked:
            try:
                chunk = await anext(iterator)
            except StopAsyncIteration:
                summary = stream_validator.finalize()
                if summary.accepted:
                    break
                return UploadError.validation(summary.reason, ValidationStep.CONTENT, code="INVALID_FILE_CONTENT")
            except Exception as exc:
                logger.warning("[upload] source stream failed before its header was read: %s", exc)
                return to_upload_error(exc, stage=FailureStage.TRANSFER, message=f"Payload source failed: {exc}")
            if not chunk:
                continue
            check = stream_validator.observe(chunk)
            if not check.accepted:
                return UploadError.validation(check.reason, ValidationStep.CONTENT, code="INVALID_FILE_CONTENT")
            prefix.append(chunk)
        return prefix

    async def _validated_stream(
        self,
        prefix: list[bytes],
        iterator: AsyncIterator[bytes],
        stream_validator: StreamValidator,
        hasher: StreamingSHA256,
    ) -> AsyncIterator[bytes]:
        for chunk in prefix:
            hasher.update(chunk)
            yield chunk
        async for chunk in iterator:
            if not chunk:
                continue
            check = stream_validator.observe(chunk)
            if check.should_abort or not check.accepted:
                raise ContentRejected(check.reason or "Stream rejected")
            hasher.update(chunk)
            yield chunk
        summary = stream_validator.finalize()
        if not summary.accepted:
            raise ContentRejected(summary.reason or "Stream rejected")

    def _transfer_failure(self, error: TransferError) -> UploadError:
        cause = error.cause
        if isinstance(cause, ContentRejected):
            return UploadError.validation(cause.reason, ValidationStep.CONTENT, code=cause.code)
        if isinstance(cause, SourceError):
            return UploadError.validation(str(cause), ValidationStep.CONTENT, code="SIZE_MISMATCH")
        return to_upload_error(cause, stage=FailureStage.TRANSFER, message=error.message, part_index=error.part_index)

    def _object_metadata(
        self,
        request: UploadRequest,
        correlation_id: str,
        size: int,
        hashes: dict[str, str],
    ) -> dict[str, str]:
        metadata = {
            "upload-request-id": correlation_id,
            "original-filename": quote(request.source_name, safe=_METADATA_SAFE_CHARS),
            "declared-content-type": request.declared_content_type,
            "file-size": str(size),
            "uploaded-at": datetime.now(timezone.utc).isoformat(),
            "processing-version": PROCESSING_VERSION,
            "environment": self.config.environment,
        }
        if hashes:
            metadata["file-sha256"] = hashes["sha256"]
            metadata["file-md5"] = hashes["md5"]
        for name, value in request.extra_metadata.items():
            metadata.setdefault(name.lower(), quote(value, safe=_METADATA_SAFE_CHARS))
        return metadata

    async def _close_source(self, request: UploadRequest) -> None:
        if not request.is_streamed:
            return
        aclose = getattr(request.payload, "aclose", None)
        if aclose is None:
            return
        try:
            with anyio.CancelScope(shield=True):
                await aclose()
        except Exception as exc:
            logger.warning("[upload] failed to close source stream for %s: %s", request.source_name, exc)

    async def _store_call(self, func: Callable[..., Awaitable], *args: object):
        async with self.engine.pool.connection():
            with anyio.fail_after(self.config.request_timeout_seconds):
                return await func(*args)

    async def exists(self, storage_key: str) -> Result[bool]:
        if not storage_key or not storage_key.strip():
            return Err(UploadError.validation("Storage key is required", ValidationStep.METADATA, code="MISSING_STORAGE_KEY"))
        started = time.perf_counter()
        try:
            head = await self._store_call(self.store.head_object, storage_key)
        except _STORE_FAILURES as exc:
            logger.warning("[object_store] head failed key=%s: %s", storage_key, exc)
            return Err(to_upload_error(exc))
        logger.info(
            "[object_store] head key=%s exists=%s elapsed_ms=%s",
            storage_key,
            head is not None,
            int((time.perf_counter() - started) * 1000),
        )
        return Ok(head is not None)

    async def delete(self, storage_key: str, *, correlation_id: str | None = None) -> Result[DeleteOutcome]:
        events = UploadEventLogger(correlation_id or new_correlation_id(), storage_key or "unknown")
        if not storage_key or not storage_key.strip():
            return Err(UploadError.validation("Storage key is required", ValidationStep.METADATA, code="MISSING_STORAGE_KEY"))

        found = await self.exists(storage_key)
        if not found.ok:
            events.warning("delete.failed", key=storage_key, code=found.error.code, reason=found.error.message)
            return found
        if not found.value:
            events.warning("delete.missing", key=storage_key)
            return Ok(DeleteOutcome(storage_key, False, "File does not exist (already deleted or never existed)"))

        try:
            await self._store_call(self.store.delete_object, storage_key)
        except _STORE_FAILURES as exc:
            error = to_upload_error(exc)
            events.error("delete.failed", key=storage_key, code=error.code, reason=error.message)
            return Err(error)
        events.info("delete.completed", key=storage_key)
        return Ok(DeleteOutcome(storage_key, True, "File deleted successfully"))

    async def health_check(self) -> dict:
        started = time.perf_counter()
        try:
            await self._store_call(self.store.head_bucket)
        except _STORE_FAILURES as exc:
            logger.error("[object_store] health check failed bucket=%s: %s", self.store.bucket, exc)
            return {"healthy": False, "service": "object_store", "error": str(exc)}
        return {
            "healthy": True,
            "service": "object_store",
            "bucket": self.store.bucket,
            "region": self.store.region,
            "response_time_ms": int((time.perf_counter() - started) * 1000),
        }

    def describe_limits(self) -> dict:
        return {
            "max_file_size_bytes": self.config.max_file_size_bytes,
            "allowed_mime_types": list(self.config.allowed_mime_types),
            "part_size_bytes": self.config.part_size_bytes,
            "concurrency": self.config.concurrency,
            "bucket": self.store.bucket,
            "region": self.store.region,
        }


async def upload_with_retry(
    service: UploadService,
    request: UploadRequest,
    on_progress: ProgressCallback | None = None,
    *,
    correlation_id: str | None = None,
    max_attempts: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> Result[UploadResult]:
    """Retry a whole upload, reusing one storage key and correlation id.

    Reusing the key means a retried attempt overwrites rather than orphans the
    object an earlier attempt may have written. Streams cannot be replayed, so
    they get a single attempt. ``correlation_id`` defaults to a fresh one.
    """
    correlation_id = correlation_id or new_correlation_id()
    storage_key = service.generate_key(request.source_name) if request.source_name else None
    attempts = max_attempts or service.config.retry_max_attempts
    if request.is_streamed:
        attempts = 1

    async def _attempt() -> Result[UploadResult]:
        return await service.upload(request, on_progress, storage_key=storage_key, correlation_id=correlation_id)

    return await execute_with_retry(
        _attempt,
        attempts,
        service.config.retry_base_delay_seconds if base_delay is None else base_delay,
        sleep=sleep,
    )

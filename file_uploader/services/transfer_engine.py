from __future__ import annotations

import logging
import math
from contextlib import aclosing
from typing import AsyncIterable, AsyncIterator, Callable, Mapping

import anyio

from file_uploader.core.config import MAX_PART_COUNT, MIN_PART_SIZE_BYTES
from file_uploader.domain.upload import Err, Ok, PartDescriptor, Payload, ProgressEvent, TransferError, TransferResult
from file_uploader.infrastructure.connection_pool import ConnectionPool
from file_uploader.infrastructure.storage.base import ObjectStoreClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class SourceError(Exception):
    """The payload source delivered a different number of bytes than declared."""


def effective_part_size(total_size: int, requested: int, floor: int = MIN_PART_SIZE_BYTES) -> int:
    size = max(requested, floor)
    if total_size > size * MAX_PART_COUNT:
        size = math.ceil(total_size / MAX_PART_COUNT)
    return size


def plan_parts(total_size: int, part_size: int) -> list[PartDescriptor]:
    """Fixed-size ranges; the last one holds the remainder."""
    if part_size <= 0:
        raise ValueError("part_size must be positive")
    if total_size <= 0:
        return [PartDescriptor(index=1, start=0, end=0)]
    return [
        PartDescriptor(index=index, start=start, end=min(start + part_size, total_size))
        for index, start in enumerate(range(0, total_size, part_size), start=1)
    ]


class ProgressTracker:
    """Single accumulator for the deltas reported by part tasks of one attempt."""

    def __init__(
        self,
        total_bytes: int,
        on_progress: ProgressCallback | None,
        *,
        source_name: str,
        storage_key: str,
    ):
        self.total_bytes = total_bytes
        self.on_progress = on_progress
        self.source_name = source_name
        self.storage_key = storage_key
        self.bytes_transferred = 0
        self.percentage = 0

    def advance(self, delta: int) -> None:
        if delta < 0 or (delta == 0 and self.total_bytes > 0):
            return
        self.bytes_transferred = min(self.total_bytes, self.bytes_transferred + delta)
        if self.total_bytes <= 0:
            self.percentage = 100
        else:
            self.percentage = (100 * self.bytes_transferred) // self.total_bytes
        if self.on_progress is None:
            return
        event = ProgressEvent(
            bytes_transferred=self.bytes_transferred,
            total_bytes=self.total_bytes,
            percentage=self.percentage,
            source_name=self.source_name,
            storage_key=self.storage_key,
        )
        try:
            self.on_progress(event)
        except Exception as exc:
            logger.exception("[transfer] progress callback failed key=%s: %s", self.storage_key, exc)


class _AttemptState:
    def __init__(self) -> None:
        self.error: Exception | None = None
        self.part_index: int | None = None
        self.source_failure = False

    @property
    def failed(self) -> bool:
        return self.error is not None

    def record(self, exc: Exception, *, part_index: int | None = None, source_failure: bool = False) -> None:
        if self.error is not None:
            return
        self.error = exc
        self.part_index = part_index
        self.source_failure = source_failure

    def to_error(self) -> TransferError:
        assert self.error is not None
        if self.source_failure:
            message = f"Payload source failed: {self.error}"
        else:
            message = f"Part {self.part_index} failed: {self.error}"
        return TransferError(
            message=message,
            cause=self.error,
            part_index=self.part_index,
            source_failure=self.source_failure,
        )


async def _read_exactly(stream: AsyncIterable[bytes], total_size: int) -> bytes:
    buffer = bytearray()
    async for chunk in stream:
        buffer.extend(chunk)
        if len(buffer) > total_size:
            raise SourceError(f"Stream delivered more than the declared {total_size} bytes")
    if len(buffer) != total_size:
        raise SourceError(f"Stream ended after {len(buffer)} of {total_size} bytes")
    return bytes(buffer)


async def _iter_part_bodies(
    payload: Payload,
    parts: list[PartDescriptor],
    total_size: int,
) -> AsyncIterator[tuple[PartDescriptor, bytes]]:
    if isinstance(payload, bytes):
        if len(payload) != total_size:
            raise SourceError(f"Buffer holds {len(payload)} bytes but {total_size} were declared")
        view = memoryview(payload)
        for part in parts:
            yield part, bytes(view[part.start:part.end])
        return

    pending = iter(parts)
    current = next(pending, None)
    buffer = bytearray()
    received = 0
    async for chunk in payload:
        if not chunk:
            continue
        received += len(chunk)
        if received > total_size:
            raise SourceError(f"Stream delivered more than the declared {total_size} bytes")
        buffer.extend(chunk)
        while current is not None and len(buffer) >= current.size:
            body = bytes(buffer[: current.size])
            del buffer[: current.size]
            yield current, body
            current = next(pending, None)
    if current is not None or buffer:
        raise SourceError(f"Stream ended after {received} of {total_size} bytes")


class MultipartTransferEngine:
    """Moves one payload into the object store.

    Payloads at or above the multipart threshold are split into parts that are
    uploaded with at most ``concurrency`` requests in flight; the first part
    failure cancels the rest and aborts the multipart upload so no committed
    parts are left behind. Smaller payloads go up in a single PUT.
    """

    def __init__(
        self,
        store: ObjectStoreClient,
        pool: ConnectionPool,
        *,
        part_size: int = MIN_PART_SIZE_BYTES,
        multipart_threshold: int = MIN_PART_SIZE_BYTES,
        concurrency: int = 4,
        request_timeout: float = 30.0,
        min_part_size: int = MIN_PART_SIZE_BYTES,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.store = store
        self.pool = pool
        self.part_size = part_size
        self.multipart_threshold = multipart_threshold
        self.concurrency = concurrency
        self.request_timeout = request_timeout
        self.min_part_size = min_part_size
        if concurrency > pool.capacity:
            logger.warning(
                "[transfer] concurrency=%s exceeds connection pool capacity=%s; parts will queue on the pool",
                concurrency,
                pool.capacity,
            )

    async def send(
        self,
        payload: Payload,
        key: str,
        content_type: str,
        metadata: Mapping[str, str],
        *,
        total_size: int,
        source_name: str = "",
        concurrency: int | None = None,
        part_size: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Ok[TransferResult] | Err[TransferError]:
        tracker = ProgressTracker(total_size, on_progress, source_name=source_name, storage_key=key)
        if total_size < self.multipart_threshold:
            return await self._send_single(payload, key, content_type, metadata, total_size, tracker)
        return await self._send_multipart(
            payload,
            key,
            content_type,
            metadata,
            total_size=total_size,
            concurrency=concurrency or self.concurrency,
            part_size=effective_part_size(total_size, part_size or self.part_size, self.min_part_size),
            tracker=tracker,
        )

    async def _send_single(
        self,
        payload: Payload,
        key: str,
        content_type: str,
        metadata: Mapping[str, str],
        total_size: int,
        tracker: ProgressTracker,
    ) -> Ok[TransferResult] | Err[TransferError]:
        try:
            if isinstance(payload, bytes):
                if len(payload) != total_size:
                    raise SourceError(f"Buffer holds {len(payload)} bytes but {total_size} were declared")
                body = payload
            else:
                body = await _read_exactly(payload, total_size)
        except Exception as exc:
            return Err(TransferError(message=f"Payload source failed: {exc}", cause=exc, source_failure=True))

        part = PartDescriptor(index=1, start=0, end=total_size)
        try:
            async with self.pool.connection():
                with anyio.fail_after(self.request_timeout):
                    etag = await self.store.put_object(key, body, content_type=content_type, metadata=metadata)
        except Exception as exc:
            logger.warning("[transfer] put_object failed key=%s: %s", key, exc)
            return Err(TransferError(message=f"put_object failed: {exc}", cause=exc, part_index=1))

        part.commit(etag, len(body))
        tracker.advance(len(body))
        return Ok(TransferResult(storage_key=key, etag=etag, size_bytes=total_size, parts=(part,), multipart=False))

    async def _send_multipart(
        self,
        payload: Payload,
        key: str,
        content_type: str,
        metadata: Mapping[str, str],
        *,
        total_size: int,
        concurrency: int,
        part_size: int,
        tracker: ProgressTracker,
    ) -> Ok[TransferResult] | Err[TransferError]:
        parts = plan_parts(total_size, part_size)
        try:
            async with self.pool.connection():
                with anyio.fail_after(self.request_timeout):
                    upload_id = await self.store.create_multipart_upload(
                        key, content_type=content_type, metadata=metadata
                    )
        except Exception as exc:
            logger.warning("[transfer] create_multipart_upload failed key=%s: %s", key, exc)
            return Err(TransferError(message=f"create_multipart_upload failed: {exc}", cause=exc))

        logger.debug(
            "[transfer] multipart started key=%s upload_id=%s parts=%s part_size=%s concurrency=%s",
            key,
            upload_id,
            len(parts),
            part_size,
            concurrency,
        )
        try:
            return await self._upload_parts(
                payload, key, upload_id, parts, total_size=total_size, concurrency=concurrency, tracker=tracker
            )
        except anyio.get_cancelled_exc_class():
            # the caller gave up mid-transfer; committed parts must not outlive it
            await self._abort(key, upload_id)
            raise

    async def _upload_parts(
        self,
        payload: Payload,
        key: str,
        upload_id: str,
        parts: list[PartDescriptor],
        *,
        total_size: int,
        concurrency: int,
        tracker: ProgressTracker,
    ) -> Ok[TransferResult] | Err[TransferError]:
        attempt = _AttemptState()
        slots = anyio.Semaphore(concurrency)
        async with anyio.create_task_group() as tg:
            try:
                async with aclosing(_iter_part_bodies(payload, parts, total_size)) as bodies:
                    async for part, body in bodies:
                        await slots.acquire()
                        if attempt.failed:
                            slots.release()
                            break
                        tg.start_soon(
                            self._transfer_part, key, upload_id, part, body, slots, tracker, attempt, tg.cancel_scope
                        )
            except Exception as exc:
                attempt.record(exc, source_failure=True)
                tg.cancel_scope.cancel()

        if not attempt.failed and not all(part.committed for part in parts):
            attempt.record(SourceError("Not every part was transferred"), source_failure=True)
        if attempt.failed:
            await self._abort(key, upload_id)
            return Err(attempt.to_error())

        ordered = sorted(parts, key=lambda p: p.index)
        try:
            async with self.pool.connection():
                with anyio.fail_after(self.request_timeout):
                    etag = await self.store.complete_multipart_upload(
                        key, upload_id, [(part.index, part.etag) for part in ordered]
                    )
        except Exception as exc:
            logger.warning("[transfer] complete_multipart_upload failed key=%s upload_id=%s: %s", key, upload_id, exc)
            await self._abort(key, upload_id)
            return Err(TransferError(message=f"complete_multipart_upload failed: {exc}", cause=exc))

        return Ok(
            TransferResult(
                storage_key=key,
                etag=etag,
                size_bytes=total_size,
                parts=tuple(ordered),
                multipart=True,
                upload_id=upload_id,
            )
        )

    async def _transfer_part(
        self,
        key: str,
        upload_id: str,
        part: PartDescriptor,
        body: bytes,
        slots: anyio.Semaphore,
        tracker: ProgressTracker,
        attempt: _AttemptState,
        cancel_scope: anyio.CancelScope,
    ) -> None:
        try:
            async with self.pool.connection():
                with anyio.fail_after(self.request_timeout):
                    etag = await self.store.upload_part(key, upload_id, part.index, body)
            part.commit(etag, len(body))
            tracker.advance(len(body))
        except Exception as exc:
            logger.warning("[transfer] part failed key=%s part=%s: %s", key, part.index, exc)
            attempt.record(exc, part_index=part.index)
            cancel_scope.cancel()
        finally:
            slots.release()

    async def _abort(self, key: str, upload_id: str) -> None:
        try:
            with anyio.CancelScope(shield=True):
                async with self.pool.connection():
                    with anyio.fail_after(self.request_timeout):
                        await self.store.abort_multipart_upload(key, upload_id)
            logger.info("[transfer] multipart aborted key=%s upload_id=%s", key, upload_id)
        except Exception as exc:
            logger.error("[transfer] abort_multipart_upload failed key=%s upload_id=%s: %s", key, upload_id, exc)

from __future__ import annotations

import json
import logging
import time
from typing import AsyncIterator
from urllib.parse import unquote

from fastapi import APIRouter, Depends, File, Form, Header, Request, UploadFile

from file_uploader.core.request_context import get_request_id
from file_uploader.domain.upload import UploadRequest
from file_uploader.exceptions.exceptions import UploadFailedError, ValidationError
from file_uploader.schemas.upload import DeleteResponse, ExistsResponse, UploadLimitsRead, UploadResultRead
from file_uploader.services.upload_service import UploadService, upload_with_retry

router = APIRouter(prefix="/api/v1/uploads", tags=["Uploads"])


def get_service(request: Request) -> UploadService:
    return request.app.state.upload_service


def _parse_metadata(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("metadata must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("metadata must be a JSON object")
    return {str(name): str(value) for name, value in parsed.items()}


async def _read_upload_file(upload_file: UploadFile, limit: int, chunk_size: int) -> bytes:
    # reads at most one chunk past the limit
    buffer = bytearray()
    while True:
        chunk = await upload_file.read(chunk_size)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > limit:
            break
    return bytes(buffer)


@router.post("", response_model=UploadResultRead, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    metadata: str | None = Form(None),
    request_id: str = Depends(get_request_id),
    service: UploadService = Depends(get_service),
):
    started = time.perf_counter()
    data = await _read_upload_file(
        file, service.config.max_file_size_bytes, service.config.stream_chunk_size_bytes
    )
    upload_request = UploadRequest(
        source_name=file.filename or "",
        declared_content_type=file.content_type or "application/octet-stream",
        declared_size=len(data),
        payload=data,
        extra_metadata=_parse_metadata(metadata),
    )
    outcome = await upload_with_retry(service, upload_request, correlation_id=request_id)
    if not outcome.ok:
        raise UploadFailedError(outcome.error, attempts=outcome.attempts)
    logging.info(
        "[upload_api] request_id=%s key=%s size=%s attempts=%s elapsed_ms=%s",
        request_id,
        outcome.value.storage_key,
        outcome.value.size_bytes,
        outcome.attempts,
        int((time.perf_counter() - started) * 1000),
    )
    return UploadResultRead.from_result(outcome.value, attempts=outcome.attempts)


@router.post("/stream", response_model=UploadResultRead, status_code=201)
async def upload_stream(
    request: Request,
    x_file_name: str = Header(..., alias="X-File-Name"),
    content_type: str = Header(..., alias="Content-Type"),
    content_length: int = Header(..., alias="Content-Length", ge=0),
    request_id: str = Depends(get_request_id),
    service: UploadService = Depends(get_service),
):
    async def _body_stream() -> AsyncIterator[bytes]:
        async for chunk in request.stream():
            if chunk:
                yield chunk

    upload_request = UploadRequest(
        source_name=unquote(x_file_name),
        declared_content_type=content_type.split(";", 1)[0].strip(),
        declared_size=content_length,
        payload=_body_stream(),
    )
    outcome = await upload_with_retry(service, upload_request, correlation_id=request_id)
    if not outcome.ok:
        raise UploadFailedError(outcome.error, attempts=outcome.attempts)
    return UploadResultRead.from_result(outcome.value, attempts=outcome.attempts)


@router.get("/config", response_model=UploadLimitsRead, status_code=200)
def upload_limits(service: UploadService = Depends(get_service)):
    return UploadLimitsRead(**service.describe_limits())


@router.get("/exists/{storage_key:path}", response_model=ExistsResponse, status_code=200)
async def object_exists(storage_key: str, service: UploadService = Depends(get_service)):
    outcome = await service.exists(storage_key)
    if not outcome.ok:
        raise UploadFailedError(outcome.error)
    return ExistsResponse(storage_key=storage_key, exists=outcome.value)


@router.delete("/{storage_key:path}", response_model=DeleteResponse, status_code=200)
async def delete_object(
    storage_key: str,
    request_id: str = Depends(get_request_id),
    service: UploadService = Depends(get_service),
):
    outcome = await service.delete(storage_key, correlation_id=request_id)
    if not outcome.ok:
        raise UploadFailedError(outcome.error)
    return DeleteResponse.from_outcome(outcome.value)

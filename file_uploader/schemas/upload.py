from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from file_uploader.domain.upload import DeleteOutcome, UploadError, UploadResult


class UploadErrorRead(BaseModel):
    kind: str
    code: str | None = None
    message: str
    retryable: bool
    stage: str
    step: str | None = None
    part_index: int | None = None
    attempts: int | None = None

    @classmethod
    def from_error(cls, error: UploadError, attempts: int | None = None) -> "UploadErrorRead":
        return cls(
            kind=error.kind.value,
            code=error.code,
            message=error.message,
            retryable=error.retryable,
            stage=error.stage.value,
            step=error.step.value if error.step else None,
            part_index=error.part_index,
            attempts=attempts,
        )


class UploadResultRead(BaseModel):
    file_id: str
    storage_key: str
    public_locator: str
    file_name: str
    content_type: str
    bucket: str
    size_bytes: int
    content_hashes: dict[str, str]
    etag: str
    completed_at: datetime
    processing_duration_ms: int
    upload_mode: str
    part_count: int
    attempts: int = 1

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_result(cls, result: UploadResult, attempts: int = 1) -> "UploadResultRead":
        return cls(
            file_id=result.file_id,
            storage_key=result.storage_key,
            public_locator=result.public_locator,
            file_name=result.source_name,
            content_type=result.content_type,
            bucket=result.bucket,
            size_bytes=result.size_bytes,
            content_hashes=dict(result.content_hashes),
            etag=result.etag,
            completed_at=result.completed_at,
            processing_duration_ms=result.processing_duration_ms,
            upload_mode=result.upload_mode.value,
            part_count=result.part_count,
            attempts=attempts,
        )


class DeleteResponse(BaseModel):
    storage_key: str
    deleted: bool
    message: str

    @classmethod
    def from_outcome(cls, outcome: DeleteOutcome) -> "DeleteResponse":
        return cls(storage_key=outcome.storage_key, deleted=outcome.deleted, message=outcome.message)


class ExistsResponse(BaseModel):
    storage_key: str
    exists: bool


class UploadLimitsRead(BaseModel):
    max_file_size_bytes: int
    allowed_mime_types: list[str]
    part_size_bytes: int
    concurrency: int = Field(ge=1)
    bucket: str
    region: str | None = None

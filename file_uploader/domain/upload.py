from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import AsyncIterable, Generic, Mapping, TypeVar, Union

from file_uploader.domain.enums import ErrorKind, FailureStage, UploadMode, ValidationStep
from file_uploader.exceptions.exceptions import ValidationError

T = TypeVar("T")

Payload = Union[bytes, AsyncIterable[bytes]]


@dataclass(frozen=True)
class UploadRequest:
    source_name: str
    declared_content_type: str
    declared_size: int
    payload: Payload | None
    extra_metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.declared_size < 0:
            raise ValidationError("Declared size cannot be negative")
        if isinstance(self.payload, (bytearray, memoryview)):
            object.__setattr__(self, "payload", bytes(self.payload))
        metadata = {str(name): str(value) for name, value in (self.extra_metadata or {}).items()}
        object.__setattr__(self, "extra_metadata", MappingProxyType(metadata))

    @property
    def is_streamed(self) -> bool:
        return self.payload is not None and not isinstance(self.payload, bytes)

    @property
    def mode(self) -> UploadMode:
        return UploadMode.STREAM if self.is_streamed else UploadMode.BUFFER


@dataclass
class PartDescriptor:
    index: int
    start: int
    end: int
    etag: str | None = None

    def __post_init__(self) -> None:
        if self.index < 1:
            raise ValidationError("Part index starts at 1")
        if self.start < 0 or self.end < self.start:
            raise ValidationError("Invalid part byte range")

    @property
    def byte_range(self) -> tuple[int, int]:
        return self.start, self.end

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def committed(self) -> bool:
        return self.etag is not None

    def commit(self, etag: str, transferred: int) -> None:
        if self.etag is not None:
            raise ValidationError(f"Part {self.index} is already committed")
        if transferred != self.size:
            raise ValidationError(
                f"Part {self.index} transferred {transferred} bytes for a range of {self.size}"
            )
        self.etag = etag


@dataclass(frozen=True)
class ProgressEvent:
    bytes_transferred: int
    total_bytes: int
    percentage: int
    source_name: str
    storage_key: str


@dataclass(frozen=True)
class TransferResult:
    storage_key: str
    etag: str
    size_bytes: int
    parts: tuple[PartDescriptor, ...]
    multipart: bool
    upload_id: str | None = None


@dataclass(frozen=True)
class TransferError:
    message: str
    cause: Exception
    part_index: int | None = None
    source_failure: bool = False


@dataclass(frozen=True)
class UploadResult:
    file_id: str
    storage_key: str
    public_locator: str
    source_name: str
    content_type: str
    bucket: str
    size_bytes: int
    content_hashes: Mapping[str, str]
    etag: str
    completed_at: datetime
    processing_duration_ms: int
    upload_mode: UploadMode
    part_count: int
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadError:
    kind: ErrorKind
    message: str
    retryable: bool
    stage: FailureStage
    code: str | None = None
    step: ValidationStep | None = None
    part_index: int | None = None

    @classmethod
    def validation(cls, message: str, step: ValidationStep, code: str = "FILE_VALIDATION_FAILED") -> "UploadError":
        return cls(
            kind=ErrorKind.VALIDATION_FAILURE,
            message=message,
            retryable=False,
            stage=FailureStage.VALIDATION,
            code=code,
            step=step,
        )


@dataclass(frozen=True)
class DeleteOutcome:
    storage_key: str
    deleted: bool
    message: str


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[T]):
    error: T
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[UploadError]]


@dataclass
class RetryState:
    attempt: int = 1
    last_error: UploadError | None = None

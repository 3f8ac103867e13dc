from __future__ import annotations

import hmac
from dataclasses import dataclass
from pathlib import PurePosixPath

from file_uploader.core.config import UploadConfig
from file_uploader.domain.enums import ValidationStep

# None marks types with no reliable signature; their content is not inspected.
MAGIC_NUMBERS: dict[str, bytes | None] = {
    "image/jpeg": bytes([0xFF, 0xD8, 0xFF]),
    "image/png": bytes([0x89, 0x50, 0x4E, 0x47]),
    "image/gif": bytes([0x47, 0x49, 0x46]),
    "image/webp": bytes([0x52, 0x49, 0x46, 0x46]),
    "application/pdf": bytes([0x25, 0x50, 0x44, 0x46]),
    "text/plain": None,
    "text/csv": None,
    "video/mp4": bytes([0x00, 0x00, 0x00, 0x18, 0x66, 0x74, 0x79, 0x70]),
    "audio/mpeg": bytes([0xFF, 0xFB]),
}

INSUFFICIENT_CONTENT = "insufficient content"


def format_bytes(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB", "TB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


@dataclass(frozen=True)
class HeaderCheck:
    accepted: bool
    reason: str | None = None


@dataclass(frozen=True)
class MetadataCheck:
    accepted: bool
    reason: str | None = None
    code: str | None = None
    step: ValidationStep = ValidationStep.METADATA


@dataclass(frozen=True)
class ChunkCheck:
    accepted: bool
    should_abort: bool
    bytes_so_far: int
    reason: str | None = None


@dataclass(frozen=True)
class StreamSummary:
    accepted: bool
    bytes_processed: int
    reason: str | None = None


def signature_for(content_type: str) -> bytes | None:
    return MAGIC_NUMBERS.get(content_type)


class ContentValidator:
    """Fail-fast checks of names, declared types, sizes and content signatures."""

    def __init__(self, config: UploadConfig):
        self.config = config
        self.allowed_mime_types = frozenset(config.allowed_mime_types)

    def is_type_allowed(self, content_type: str) -> bool:
        return content_type in self.allowed_mime_types

    def validate_file_name(self, file_name: str) -> MetadataCheck:
        if not file_name or not file_name.strip():
            return MetadataCheck(False, "Filename cannot be empty", "INVALID_FILE")
        if ".." in file_name or "/" in file_name or "\\" in file_name:
            return MetadataCheck(False, "Filename contains invalid characters", "INVALID_FILE")
        extension = PurePosixPath(file_name).suffix.lower()
        if extension in self.config.dangerous_extensions:
            return MetadataCheck(
                False,
                f"File extension '{extension}' is not allowed for security reasons",
                "INVALID_FILE_EXTENSION",
            )
        return MetadataCheck(True)

    def validate_metadata(self, file_name: str, content_type: str, size_bytes: int) -> MetadataCheck:
        name_check = self.validate_file_name(file_name)
        if not name_check.accepted:
            return name_check
        if not self.is_type_allowed(content_type):
            return MetadataCheck(False, f"MIME type '{content_type}' not allowed", "INVALID_FILE_TYPE")
        if size_bytes == 0:
            return MetadataCheck(False, "File is empty", "INVALID_FILE")
        if size_bytes > self.config.max_file_size_bytes:
            return MetadataCheck(
                False,
                f"File size {format_bytes(size_bytes)} exceeds limit of {format_bytes(self.config.max_file_size_bytes)}",
                "FILE_TOO_LARGE",
            )
        return MetadataCheck(True)

    def validate_header(self, data: bytes, declared_type: str) -> HeaderCheck:
        if not self.is_type_allowed(declared_type):
            return HeaderCheck(False, f"MIME type '{declared_type}' not allowed")
        if declared_type not in MAGIC_NUMBERS:
            return HeaderCheck(False, f"No content signature registered for '{declared_type}'")
        signature = MAGIC_NUMBERS[declared_type]
        if signature is None:
            return HeaderCheck(True)
        if len(data) < len(signature):
            return HeaderCheck(False, INSUFFICIENT_CONTENT)
        if not hmac.compare_digest(bytes(data[: len(signature)]), signature):
            return HeaderCheck(False, f"File content does not match expected MIME type '{declared_type}'")
        return HeaderCheck(True)

    def stream_validator(self, declared_type: str, expected_size: int | None = None) -> "StreamValidator":
        return StreamValidator(
            self,
            declared_type,
            max_size=self.config.max_file_size_bytes,
            expected_size=expected_size,
        )


class StreamValidator:
    """Validates a stream chunk by chunk.

    The signature prefix is collected across chunks until it is long enough to
    compare; the byte budget is enforced on every chunk.
    """

    def __init__(
        self,
        validator: ContentValidator,
        declared_type: str,
        *,
        max_size: int,
        expected_size: int | None = None,
    ):
        self._validator = validator
        self.declared_type = declared_type
        self.max_size = max_size
        self.expected_size = expected_size
        self.bytes_processed = 0
        self._signature = signature_for(declared_type)
        self._prefix = bytearray()
        self._header_checked = self._signature is None
        self._rejection: str | None = None
        if not validator.is_type_allowed(declared_type) or declared_type not in MAGIC_NUMBERS:
            self._rejection = validator.validate_header(b"", declared_type).reason

    @property
    def header_checked(self) -> bool:
        return self._header_checked

    def observe(self, chunk: bytes) -> ChunkCheck:
        if self._rejection is not None:
            return ChunkCheck(False, True, self.bytes_processed, self._rejection)

        self.bytes_processed += len(chunk)
        if self.bytes_processed > self.max_size:
            self._rejection = f"File size exceeds limit of {format_bytes(self.max_size)}"
            return ChunkCheck(False, True, self.bytes_processed, self._rejection)

        if not self._header_checked:
            needed = len(self._signature) - len(self._prefix)
            self._prefix.extend(chunk[:needed])
            if len(self._prefix) >= len(self._signature):
                check = self._validator.validate_header(bytes(self._prefix), self.declared_type)
                self._header_checked = True
                if not check.accepted:
                    self._rejection = check.reason
                    return ChunkCheck(False, True, self.bytes_processed, self._rejection)

        return ChunkCheck(True, False, self.bytes_processed)

    def finalize(self) -> StreamSummary:
        if self._rejection is not None:
            return StreamSummary(False, self.bytes_processed, self._rejection)
        if self.bytes_processed == 0:
            return StreamSummary(False, 0, "File is empty")
        if not self._header_checked:
            return StreamSummary(False, self.bytes_processed, INSUFFICIENT_CONTENT)
        if self.expected_size is not None and self.bytes_processed != self.expected_size:
            return StreamSummary(
                False,
                self.bytes_processed,
                f"Stream delivered {self.bytes_processed} bytes but {self.expected_size} were declared",
            )
        return StreamSummary(True, self.bytes_processed)

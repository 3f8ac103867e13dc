import logging
from pathlib import Path

from dataclasses import dataclass
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Object stores reject non-final multipart parts smaller than this.
MIN_PART_SIZE_BYTES = 5 * 1024 * 1024
MAX_PART_COUNT = 10_000

DEFAULT_ALLOWED_MIME_TYPES = (
    "image/jpeg,image/png,image/gif,image/webp,application/pdf,"
    "text/plain,text/csv,video/mp4,audio/mpeg"
)
DEFAULT_DANGEROUS_EXTENSIONS = (
    ".exe,.bat,.cmd,.com,.pif,.scr,.vbs,.js,.jar,.app,.deb,.pkg,.dmg,.run,"
    ".msi,.dll,.so,.php,.asp,.jsp,.py,.rb,.pl,.sh,.bash"
)


def _resolve_path(value: str, fallback: str) -> str:
    raw = (value or "").strip() or fallback
    path = Path(raw)
    if not path.is_absolute():
        path = (PROJECT_ROOT / path).resolve()
    return str(path)


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in (value or "").split(",") if item.strip())


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=PROJECT_ROOT / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_FILE_PATH: str = ""
    LOG_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5
    LOG_TO_FILE: bool = True
    LOG_LIBRARY_LEVEL: str = "WARNING"

    # Storage backend
    STORAGE_BACKEND: str = "local"
    UPLOAD_ROOT: str = "storage"

    # S3-compatible object store (AWS S3, DigitalOcean Spaces, R2, MinIO)
    S3_BUCKET: str = ""
    S3_REGION: str = "us-east-1"
    S3_ENDPOINT_URL: str = ""
    S3_ACCESS_KEY_ID: str = ""
    S3_SECRET_ACCESS_KEY: str = ""
    S3_PUBLIC_BASE_URL: str = ""
    S3_MAX_SOCKETS: int = 50
    S3_CONNECT_TIMEOUT_SECONDS: float = 6.0
    S3_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Upload pipeline
    UPLOAD_MAX_FILE_SIZE_BYTES: int = 10 * 1024 * 1024
    UPLOAD_ALLOWED_MIME_TYPES: str = DEFAULT_ALLOWED_MIME_TYPES
    UPLOAD_DANGEROUS_EXTENSIONS: str = DEFAULT_DANGEROUS_EXTENSIONS
    UPLOAD_PART_SIZE_BYTES: int = MIN_PART_SIZE_BYTES
    UPLOAD_MULTIPART_THRESHOLD_BYTES: int = MIN_PART_SIZE_BYTES
    UPLOAD_CONCURRENCY: int = 4
    UPLOAD_KEY_PREFIX: str = "uploads"
    UPLOAD_STREAM_CHUNK_SIZE_BYTES: int = 1024 * 1024

    # Upload retry
    UPLOAD_RETRY_MAX_ATTEMPTS: int = 3
    UPLOAD_RETRY_BASE_DELAY_SECONDS: float = 1.0

    @model_validator(mode="after")
    def normalize_and_validate(self) -> "AppSettings":
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper()
        self.LOG_LIBRARY_LEVEL = (self.LOG_LIBRARY_LEVEL or "WARNING").upper()
        self.LOG_DIR = _resolve_path(self.LOG_DIR, "logs")
        self.LOG_FILE_PATH = _resolve_path(self.LOG_FILE_PATH, str(Path(self.LOG_DIR) / "app.log"))
        self.UPLOAD_ROOT = _resolve_path(self.UPLOAD_ROOT, "storage")
        self.STORAGE_BACKEND = (self.STORAGE_BACKEND or "local").lower()
        self.S3_ENDPOINT_URL = (self.S3_ENDPOINT_URL or "").strip().rstrip("/")
        self.S3_PUBLIC_BASE_URL = (self.S3_PUBLIC_BASE_URL or "").strip().rstrip("/")
        self.UPLOAD_KEY_PREFIX = (self.UPLOAD_KEY_PREFIX or "uploads").strip("/") or "uploads"

        for name in ("LOG_LEVEL", "LOG_LIBRARY_LEVEL"):
            if not isinstance(logging.getLevelName(getattr(self, name)), int):
                raise RuntimeError(f"{name} must be a logging level name.")
        if self.STORAGE_BACKEND not in {"local", "object"}:
            raise RuntimeError("STORAGE_BACKEND must be 'local' or 'object'.")
        if self.UPLOAD_CONCURRENCY <= 0:
            raise RuntimeError("UPLOAD_CONCURRENCY must be positive.")
        if self.UPLOAD_CONCURRENCY > self.S3_MAX_SOCKETS:
            raise RuntimeError("UPLOAD_CONCURRENCY must not exceed S3_MAX_SOCKETS.")
        if self.UPLOAD_PART_SIZE_BYTES < MIN_PART_SIZE_BYTES:
            raise RuntimeError(f"UPLOAD_PART_SIZE_BYTES must be at least {MIN_PART_SIZE_BYTES} bytes.")
        if self.UPLOAD_MAX_FILE_SIZE_BYTES <= 0:
            raise RuntimeError("UPLOAD_MAX_FILE_SIZE_BYTES must be positive.")
        if self.UPLOAD_RETRY_MAX_ATTEMPTS <= 0:
            raise RuntimeError("UPLOAD_RETRY_MAX_ATTEMPTS must be positive.")
        return self

    def validate_object_store(self) -> None:
        if self.STORAGE_BACKEND != "object":
            return
        if not self.S3_BUCKET:
            raise RuntimeError("S3_BUCKET is required when STORAGE_BACKEND is 'object'.")
        if bool(self.S3_ACCESS_KEY_ID) != bool(self.S3_SECRET_ACCESS_KEY):
            raise RuntimeError("S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY must be set together.")


settings = AppSettings()


@dataclass(frozen=True)
class UploadConfig:
    max_file_size_bytes: int
    allowed_mime_types: tuple[str, ...]
    dangerous_extensions: frozenset[str]
    part_size_bytes: int
    multipart_threshold_bytes: int
    concurrency: int
    key_prefix: str
    stream_chunk_size_bytes: int
    request_timeout_seconds: float
    retry_max_attempts: int
    retry_base_delay_seconds: float
    environment: str = "development"

    @classmethod
    def from_settings(cls, source: AppSettings) -> "UploadConfig":
        return cls(
            max_file_size_bytes=source.UPLOAD_MAX_FILE_SIZE_BYTES,
            allowed_mime_types=_split_csv(source.UPLOAD_ALLOWED_MIME_TYPES),
            dangerous_extensions=frozenset(ext.lower() for ext in _split_csv(source.UPLOAD_DANGEROUS_EXTENSIONS)),
            part_size_bytes=source.UPLOAD_PART_SIZE_BYTES,
            multipart_threshold_bytes=source.UPLOAD_MULTIPART_THRESHOLD_BYTES,
            concurrency=source.UPLOAD_CONCURRENCY,
            key_prefix=source.UPLOAD_KEY_PREFIX,
            stream_chunk_size_bytes=source.UPLOAD_STREAM_CHUNK_SIZE_BYTES,
            request_timeout_seconds=source.S3_REQUEST_TIMEOUT_SECONDS,
            retry_max_attempts=source.UPLOAD_RETRY_MAX_ATTEMPTS,
            retry_base_delay_seconds=source.UPLOAD_RETRY_BASE_DELAY_SECONDS,
            environment=source.ENVIRONMENT,
        )


upload_config = UploadConfig.from_settings(settings)

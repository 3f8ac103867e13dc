from __future__ import annotations

from dataclasses import dataclass

import anyio

from file_uploader.domain.enums import ErrorKind, FailureStage
from file_uploader.domain.upload import UploadError
from file_uploader.infrastructure.storage.base import StoreError, StoreTransportError

STORE_REJECTION_CODES = frozenset(
    {
        "AccessDenied",
        "AllAccessDisabled",
        "InvalidAccessKeyId",
        "InvalidArgument",
        "InvalidBucketName",
        "InvalidPart",
        "InvalidPartOrder",
        "NoSuchBucket",
        "NoSuchUpload",
        "SignatureDoesNotMatch",
        "ValidationException",
        "EntityTooLarge",
        "EntityTooSmall",
        "NoCredentialsError",
        "PartialCredentialsError",
        "ParamValidationError",
    }
)

TRANSPORT_CODES = frozenset(
    {
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "SlowDown",
        "ServiceUnavailable",
        "InternalError",
        "ECONNRESET",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "ENOTFOUND",
        "EAI_AGAIN",
        "EHOSTUNREACH",
        "ENETUNREACH",
        "EPIPE",
    }
)


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    retryable: bool
    code: str


def classify_failure(exc: BaseException) -> Classification:
    """Sort an operational failure into the retry taxonomy.

    Unknown failures are treated as retryable.
    """
    if isinstance(exc, StoreTransportError):
        return Classification(ErrorKind.TRANSPORT_FAILURE, True, exc.code)
    if isinstance(exc, StoreError):
        if exc.code in TRANSPORT_CODES:
            return Classification(ErrorKind.TRANSPORT_FAILURE, True, exc.code)
        if exc.code in STORE_REJECTION_CODES:
            return Classification(ErrorKind.STORE_REJECTION, False, exc.code)
        status = exc.status_code
        if status is not None:
            if status in (408, 429) or status >= 500:
                return Classification(ErrorKind.TRANSPORT_FAILURE, True, exc.code)
            if 400 <= status < 500:
                return Classification(ErrorKind.STORE_REJECTION, False, exc.code)
        return Classification(ErrorKind.UNCLASSIFIED_FAILURE, True, exc.code)
    if isinstance(exc, (TimeoutError, ConnectionError, anyio.BrokenResourceError, anyio.EndOfStream)):
        return Classification(ErrorKind.TRANSPORT_FAILURE, True, type(exc).__name__)
    if isinstance(exc, OSError):
        # socket.gaierror and friends
        return Classification(ErrorKind.TRANSPORT_FAILURE, True, type(exc).__name__)
    return Classification(ErrorKind.UNCLASSIFIED_FAILURE, True, type(exc).__name__)


def to_upload_error(
    exc: BaseException,
    *,
    stage: FailureStage = FailureStage.TRANSFER,
    message: str | None = None,
    part_index: int | None = None,
) -> UploadError:
    classification = classify_failure(exc)
    return UploadError(
        kind=classification.kind,
        message=message or str(exc) or classification.code,
        retryable=classification.retryable,
        stage=stage,
        code=classification.code,
        part_index=part_index,
    )

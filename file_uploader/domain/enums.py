from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_FAILURE = "ValidationFailure"
    TRANSPORT_FAILURE = "TransportFailure"
    STORE_REJECTION = "StoreRejection"
    UNCLASSIFIED_FAILURE = "UnclassifiedFailure"


class FailureStage(str, Enum):
    VALIDATION = "validation"
    TRANSFER = "transfer"
    UNKNOWN = "unknown"


class ValidationStep(str, Enum):
    METADATA = "metadata"
    CONTENT = "content"


class UploadMode(str, Enum):
    BUFFER = "buffer"
    STREAM = "stream"

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


from file_uploader.domain.enums import ErrorKind
from file_uploader.exceptions.exceptions import (
    DomainError,
    ExternalServiceError,
    UploadFailedError,
    ValidationError,
)
from file_uploader.schemas.upload import UploadErrorRead

_UPLOAD_ERROR_STATUS = {
    ErrorKind.VALIDATION_FAILURE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.STORE_REJECTION: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.TRANSPORT_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.UNCLASSIFIED_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UploadFailedError)
    async def _upload_failed_handler(_request: Request, exc: UploadFailedError) -> JSONResponse:
        status_code = _UPLOAD_ERROR_STATUS[exc.error.kind]
        if exc.error.code == "FILE_TOO_LARGE":
            status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        body = UploadErrorRead.from_error(exc.error, attempts=exc.attempts)
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": body.model_dump()})

    @app.exception_handler(ValidationError)
    async def _validation_handler(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})

    @app.exception_handler(ExternalServiceError)
    async def _external_service_handler(_request: Request, exc: ExternalServiceError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})

    @app.exception_handler(DomainError)
    async def _domain_handler(_request: Request, exc: DomainError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

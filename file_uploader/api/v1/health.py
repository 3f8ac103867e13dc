from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from file_uploader.core.config import settings
from file_uploader.exceptions.exceptions import ExternalServiceError
from file_uploader.services.upload_service import UploadService

router = APIRouter(tags=["Health"])


def get_service(request: Request) -> UploadService:
    return request.app.state.upload_service


@router.get("/health", status_code=200)
async def health(service: UploadService = Depends(get_service)):
    store = await service.health_check()
    if not store["healthy"]:
        raise ExternalServiceError(f"Object store unavailable: {store.get('error', 'unknown error')}")
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {"object_store": store},
    }

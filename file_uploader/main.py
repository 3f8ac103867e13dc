from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from file_uploader.api.v1 import health, uploads
from file_uploader.core.config import UploadConfig, settings, upload_config
from file_uploader.core.logging_setup import configure_logging
from file_uploader.core.request_context import register_request_context
from file_uploader.exceptions.handlers import register_exception_handlers
from file_uploader.infrastructure.connection_pool import ConnectionPool
from file_uploader.infrastructure.storage.base import ObjectStoreClient
from file_uploader.infrastructure.storage.local_fs import LocalFileSystemStorage
from file_uploader.infrastructure.storage.object_storage import S3ObjectStore
from file_uploader.services.transfer_engine import MultipartTransferEngine
from file_uploader.services.upload_service import UploadService


def _build_store() -> ObjectStoreClient:
    if settings.STORAGE_BACKEND == "local":
        return LocalFileSystemStorage(Path(settings.UPLOAD_ROOT), bucket=settings.S3_BUCKET or "local")
    if settings.STORAGE_BACKEND == "object":
        return S3ObjectStore(
            bucket=settings.S3_BUCKET,
            region=settings.S3_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            max_pool_connections=settings.S3_MAX_SOCKETS,
            connect_timeout=settings.S3_CONNECT_TIMEOUT_SECONDS,
            read_timeout=settings.S3_REQUEST_TIMEOUT_SECONDS,
            public_base_url=settings.S3_PUBLIC_BASE_URL,
        )
    raise RuntimeError(f"Unsupported STORAGE_BACKEND: {settings.STORAGE_BACKEND}")


def build_upload_service(
    store: ObjectStoreClient,
    config: UploadConfig = upload_config,
    pool: ConnectionPool | None = None,
) -> UploadService:
    engine = MultipartTransferEngine(
        store,
        pool or ConnectionPool(settings.S3_MAX_SOCKETS),
        part_size=config.part_size_bytes,
        multipart_threshold=config.multipart_threshold_bytes,
        concurrency=config.concurrency,
        request_timeout=config.request_timeout_seconds,
    )
    return UploadService(store, engine, config)


def create_app(upload_service: UploadService | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store: ObjectStoreClient | None = None
        if upload_service is not None:
            app.state.upload_service = upload_service
        else:
            configure_logging()
            settings.validate_object_store()
            store = _build_store()
            if isinstance(store, S3ObjectStore):
                await store.connect()
            app.state.upload_service = build_upload_service(store)
        try:
            yield
        finally:
            if isinstance(store, S3ObjectStore):
                await store.close()

    app = FastAPI(title="File Uploader API", lifespan=lifespan)
    register_request_context(app)
    register_exception_handlers(app)
    app.include_router(uploads.router)
    app.include_router(health.router)
    return app


app = create_app()

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, contextmanager
from typing import Any, Iterator, Mapping, Sequence
from urllib.parse import quote

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError, HTTPClientError

from file_uploader.infrastructure.storage.base import ObjectHead, ObjectStoreClient, StoreError, StoreTransportError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class S3ObjectStore(ObjectStoreClient):
    """
    S3-compatible adapter (AWS S3, DigitalOcean Spaces, R2, MinIO) on aioboto3.
    botocore's own retries are disabled: retry decisions belong to the caller.
    """

    def __init__(
        self,
        *,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        max_pool_connections: int = 50,
        connect_timeout: float = 6.0,
        read_timeout: float = 30.0,
        public_base_url: str | None = None,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url or None
        self.public_base_url = public_base_url or None
        self._access_key_id = access_key_id or None
        self._secret_access_key = secret_access_key or None
        self._client_config = Config(
            region_name=region,
            signature_version="s3v4",
            max_pool_connections=max_pool_connections,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"total_max_attempts": 1},
        )
        self._exit_stack: AsyncExitStack | None = None
        self._client: Any = None

    async def connect(self) -> None:
        if self._client is not None:
            return
        session = aioboto3.Session(
            aws_access_key_id=self._access_key_id,
            aws_secret_access_key=self._secret_access_key,
        )
        stack = AsyncExitStack()
        self._client = await stack.enter_async_context(
            session.client("s3", endpoint_url=self.endpoint_url, config=self._client_config)
        )
        self._exit_stack = stack
        logger.info("[object_store] connected bucket=%s region=%s endpoint=%s", self.bucket, self.region, self.endpoint_url)

    async def close(self) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        self._exit_stack = None
        self._client = None

    def _require_client(self) -> Any:
        if self._client is None:
            raise RuntimeError("S3ObjectStore.connect() must be awaited before use")
        return self._client

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ClientError as exc:
            error = exc.response.get("Error", {})
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            code = str(error.get("Code") or status or "ClientError")
            raise StoreError(f"{operation} failed: {error.get('Message') or code}", code=code, status_code=status) from exc
        except (HTTPClientError, BotoConnectionError) as exc:
            raise StoreTransportError(f"{operation} failed: {exc}", code=type(exc).__name__) from exc
        except BotoCoreError as exc:
            raise StoreError(f"{operation} failed: {exc}", code=type(exc).__name__) from exc
        except (TimeoutError, ConnectionError) as exc:
            raise StoreTransportError(f"{operation} failed: {exc}", code=type(exc).__name__) from exc

    async def put_object(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str:
        client = self._require_client()
        with self._translate_errors("put_object"):
            response = await client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata=dict(metadata),
            )
        return response["ETag"]

    async def create_multipart_upload(
        self,
        key: str,
        *,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str:
        client = self._require_client()
        with self._translate_errors("create_multipart_upload"):
            response = await client.create_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                ContentType=content_type,
                Metadata=dict(metadata),
            )
        return response["UploadId"]

    async def upload_part(self, key: str, upload_id: str, part_number: int, body: bytes) -> str:
        client = self._require_client()
        with self._translate_errors("upload_part"):
            response = await client.upload_part(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
        return response["ETag"]

    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> str:
        client = self._require_client()
        with self._translate_errors("complete_multipart_upload"):
            response = await client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": [{"PartNumber": number, "ETag": etag} for number, etag in parts]},
            )
        return response.get("ETag", "")

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        client = self._require_client()
        with self._translate_errors("abort_multipart_upload"):
            await client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)

    async def head_object(self, key: str) -> ObjectHead | None:
        client = self._require_client()
        try:
            with self._translate_errors("head_object"):
                response = await client.head_object(Bucket=self.bucket, Key=key)
        except StoreError as exc:
            if exc.code in _NOT_FOUND_CODES:
                return None
            raise
        return ObjectHead(
            key=key,
            size_bytes=int(response.get("ContentLength", 0)),
            etag=response.get("ETag"),
            content_type=response.get("ContentType"),
            metadata=response.get("Metadata", {}),
        )

    async def delete_object(self, key: str) -> None:
        client = self._require_client()
        with self._translate_errors("delete_object"):
            await client.delete_object(Bucket=self.bucket, Key=key)

    async def head_bucket(self) -> None:
        client = self._require_client()
        with self._translate_errors("head_bucket"):
            await client.head_bucket(Bucket=self.bucket)

    def object_url(self, key: str) -> str:
        quoted = quote(key, safe="/")
        if self.public_base_url:
            return f"{self.public_base_url}/{quoted}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{quoted}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quoted}"

from __future__ import annotations

import hashlib
import json
import shutil
import uuid
from pathlib import Path
from typing import Mapping, Sequence

import anyio

from file_uploader.infrastructure.storage.base import ObjectHead, ObjectStoreClient, StoreError


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data, usedforsecurity=False).hexdigest()}"'


class LocalFileSystemStorage(ObjectStoreClient):
    """Local FS object store with a multipart staging area, for development."""

    def __init__(self, root: Path, bucket: str = "local"):
        self.bucket = bucket
        self.root = root
        self.temp_root = self.root / "multipart"
        self.object_root = self.root / "objects" / bucket
        self.temp_root.mkdir(parents=True, exist_ok=True)
        self.object_root.mkdir(parents=True, exist_ok=True)

    def _upload_dir(self, upload_id: str) -> Path:
        if not upload_id or "/" in upload_id or ".." in upload_id:
            raise StoreError("Invalid upload id", code="InvalidArgument", status_code=400)
        return self.temp_root / upload_id

    def _object_path(self, storage_key: str) -> Path:
        normalized = Path(storage_key)
        if not storage_key or normalized.is_absolute() or ".." in normalized.parts:
            raise StoreError("Invalid storage key", code="InvalidArgument", status_code=400)
        return self.object_root / normalized

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + ".meta.json")

    def _write_object(self, path: Path, data: bytes, content_type: str, metadata: Mapping[str, str]) -> str:
        etag = _etag(data)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        self._meta_path(path).write_text(
            json.dumps({"content_type": content_type, "etag": etag, "metadata": dict(metadata)}),
            encoding="utf-8",
        )
        return etag

    async def put_object(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str:
        path = self._object_path(key)
        return await anyio.to_thread.run_sync(lambda: self._write_object(path, body, content_type, metadata))

    async def create_multipart_upload(
        self,
        key: str,
        *,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str:
        self._object_path(key)
        upload_id = uuid.uuid4().hex
        upload_dir = self._upload_dir(upload_id)

        def _init() -> None:
            upload_dir.mkdir(parents=True, exist_ok=False)
            (upload_dir / "upload.json").write_text(
                json.dumps({"key": key, "content_type": content_type, "metadata": dict(metadata)}),
                encoding="utf-8",
            )

        await anyio.to_thread.run_sync(_init)
        return upload_id

    async def upload_part(self, key: str, upload_id: str, part_number: int, body: bytes) -> str:
        upload_dir = self._upload_dir(upload_id)

        def _write_part() -> str:
            if not upload_dir.exists():
                raise StoreError(f"Upload {upload_id} not found", code="NoSuchUpload", status_code=404)
            (upload_dir / f"{part_number:05d}.part").write_bytes(body)
            return _etag(body)

        return await anyio.to_thread.run_sync(_write_part)

    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> str:
        upload_dir = self._upload_dir(upload_id)
        dst = self._object_path(key)

        def _complete() -> str:
            if not upload_dir.exists():
                raise StoreError(f"Upload {upload_id} not found", code="NoSuchUpload", status_code=404)
            manifest = json.loads((upload_dir / "upload.json").read_text(encoding="utf-8"))
            numbers = [number for number, _ in parts]
            if numbers != sorted(numbers):
                raise StoreError("Parts must be listed in ascending order", code="InvalidPartOrder", status_code=400)
            digests = hashlib.md5(usedforsecurity=False)
            dst.parent.mkdir(parents=True, exist_ok=True)
            with dst.open("wb") as handle:
                for number, etag in parts:
                    part_path = upload_dir / f"{number:05d}.part"
                    if not part_path.exists():
                        raise StoreError(f"Part {number} not found", code="InvalidPart", status_code=400)
                    data = part_path.read_bytes()
                    if _etag(data) != etag:
                        raise StoreError(f"Part {number} etag mismatch", code="InvalidPart", status_code=400)
                    handle.write(data)
                    digests.update(bytes.fromhex(etag.strip('"')))
            etag = f'"{digests.hexdigest()}-{len(parts)}"'
            self._meta_path(dst).write_text(
                json.dumps({"content_type": manifest["content_type"], "etag": etag, "metadata": manifest["metadata"]}),
                encoding="utf-8",
            )
            shutil.rmtree(upload_dir, ignore_errors=True)
            return etag

        return await anyio.to_thread.run_sync(_complete)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        upload_dir = self._upload_dir(upload_id)
        await anyio.to_thread.run_sync(lambda: shutil.rmtree(upload_dir, ignore_errors=True))

    async def head_object(self, key: str) -> ObjectHead | None:
        path = self._object_path(key)

        def _head() -> ObjectHead | None:
            if not path.is_file():
                return None
            meta_path = self._meta_path(path)
            meta = json.loads(meta_path.read_text(encoding="utf-8")) if meta_path.exists() else {}
            return ObjectHead(
                key=key,
                size_bytes=path.stat().st_size,
                etag=meta.get("etag"),
                content_type=meta.get("content_type"),
                metadata=meta.get("metadata", {}),
            )

        return await anyio.to_thread.run_sync(_head)

    async def delete_object(self, key: str) -> None:
        path = self._object_path(key)

        def _delete() -> None:
            path.unlink(missing_ok=True)
            self._meta_path(path).unlink(missing_ok=True)

        await anyio.to_thread.run_sync(_delete)

    async def head_bucket(self) -> None:
        exists = await anyio.to_thread.run_sync(self.object_root.is_dir)
        if not exists:
            raise StoreError(f"Bucket {self.bucket} not found", code="NoSuchBucket", status_code=404)

    def object_url(self, key: str) -> str:
        return self._object_path(key).as_uri()

from __future__ import annotations

import hashlib


class StreamingSHA256:
    """Incremental SHA-256 helper used while a stream is transferred."""

    def __init__(self):
        self._hasher = hashlib.sha256()
        self._size_bytes = 0

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    def update(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._hasher.update(chunk)
        self._size_bytes += len(chunk)

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()


def digest_buffer(data: bytes) -> dict[str, str]:
    """SHA-256 and MD5 of a fully materialized payload."""
    return {
        "sha256": hashlib.sha256(data).hexdigest(),
        "md5": hashlib.md5(data, usedforsecurity=False).hexdigest(),
    }

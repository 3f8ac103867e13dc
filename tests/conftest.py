"""
Pytest configuration for file_uploader tests
"""

import pytest

from file_uploader.core.config import UploadConfig
from tests.fakes import KIB, MIB, FakeObjectStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_store():
    return FakeObjectStore()


@pytest.fixture
def upload_config():
    return UploadConfig(
        max_file_size_bytes=20 * MIB,
        allowed_mime_types=(
            "image/jpeg",
            "image/png",
            "image/gif",
            "image/webp",
            "application/pdf",
            "text/plain",
            "text/csv",
            "video/mp4",
            "audio/mpeg",
        ),
        dangerous_extensions=frozenset({".exe", ".bat", ".sh", ".js", ".php", ".py"}),
        part_size_bytes=5 * MIB,
        multipart_threshold_bytes=5 * MIB,
        concurrency=4,
        key_prefix="uploads",
        stream_chunk_size_bytes=64 * KIB,
        request_timeout_seconds=5.0,
        retry_max_attempts=3,
        retry_base_delay_seconds=0.0,
        environment="test",
    )

from __future__ import annotations

import os
import re
import secrets
import time

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.-]")


def sanitize_file_name(file_name: str) -> str:
    return _UNSAFE_CHARS.sub("_", file_name)


def generate_storage_key(original_name: str, prefix: str = "uploads") -> str:
    """Build ``{prefix}/{millis}-{16 hex}-{name}{ext}``.

    Uniqueness rests on the timestamp plus 8 random bytes; keys are not
    checked against the store.
    """
    sanitized = sanitize_file_name(original_name)
    base_name, extension = os.path.splitext(sanitized)
    timestamp_ms = time.time_ns() // 1_000_000
    random_id = secrets.token_hex(8)
    return f"{prefix}/{timestamp_ms}-{random_id}-{base_name}{extension}"

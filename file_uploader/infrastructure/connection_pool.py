from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import anyio


class ConnectionPool:
    """Bounded socket budget shared by every upload in the process.

    The object store client is configured with the same ceiling, so holding a
    slot here before each store request keeps concurrent uploads from
    exhausting the client's own pool.
    """

    def __init__(self, max_connections: int):
        if max_connections <= 0:
            raise ValueError("max_connections must be positive")
        self.capacity = max_connections
        self._semaphore: anyio.Semaphore | None = None
        self._in_use = 0
        self._peak_in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak_in_use(self) -> int:
        return self._peak_in_use

    def _get_semaphore(self) -> anyio.Semaphore:
        # created on first use so it binds to the running event loop
        if self._semaphore is None:
            self._semaphore = anyio.Semaphore(self.capacity)
        return self._semaphore

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[None]:
        async with self._get_semaphore():
            self._in_use += 1
            self._peak_in_use = max(self._peak_in_use, self._in_use)
            try:
                yield
            finally:
                self._in_use -= 1

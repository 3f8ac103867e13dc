from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import FastAPI, Request, Response

from file_uploader.core.upload_events import new_correlation_id

REQUEST_ID_HEADER = "X-Request-ID"
_MAX_REQUEST_ID_LENGTH = 128


def _accepted_request_id(raw: str | None) -> str | None:
    if not raw:
        return None
    candidate = raw.strip()
    if not candidate or len(candidate) > _MAX_REQUEST_ID_LENGTH or not candidate.isprintable():
        return None
    return candidate


def register_request_context(app: FastAPI) -> None:
    """Attach a correlation id to every request and echo it on the response.

    A caller-supplied ``X-Request-ID`` is kept; otherwise a fresh id is made.
    """

    @app.middleware("http")
    async def _request_id_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = _accepted_request_id(request.headers.get(REQUEST_ID_HEADER)) or new_correlation_id()
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or new_correlation_id()

from __future__ import annotations

import logging
import uuid

logger = logging.getLogger(__name__)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def _render(value: object) -> str:
    text = str(value)
    if not text or any(ch.isspace() for ch in text):
        return repr(text)
    return text


class UploadEventLogger:
    """Emits one structured log line per pipeline stage.

    Every line carries the correlation id of the upload attempt so the stages
    of one attempt can be grepped together, e.g.::

        [upload] event=validation.passed correlation_id=3f2a... source=cat.png
    """

    def __init__(self, correlation_id: str, source_name: str):
        self.correlation_id = correlation_id
        self.source_name = source_name

    def emit(self, event: str, level: int = logging.INFO, **fields: object) -> None:
        if not logger.isEnabledFor(level):
            return
        rendered = " ".join(f"{name}={_render(value)}" for name, value in fields.items() if value is not None)
        logger.log(
            level,
            "[upload] event=%s correlation_id=%s source=%s %s",
            event,
            self.correlation_id,
            _render(self.source_name),
            rendered,
        )

    def info(self, event: str, **fields: object) -> None:
        self.emit(event, logging.INFO, **fields)

    def warning(self, event: str, **fields: object) -> None:
        self.emit(event, logging.WARNING, **fields)

    def error(self, event: str, **fields: object) -> None:
        self.emit(event, logging.ERROR, **fields)

    def debug(self, event: str, **fields: object) -> None:
        self.emit(event, logging.DEBUG, **fields)

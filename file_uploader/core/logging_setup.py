from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from file_uploader.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# SDK loggers that report every credential lookup and retry decision at INFO
LIBRARY_LOGGERS = ("botocore", "aiobotocore", "boto3", "s3transfer", "urllib3")

_CONFIGURED_FLAG = "_file_uploader_handlers"


def _rotating_file_handler(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=path,
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: str | None = None,
    log_file: str | Path | None = None,
    *,
    to_file: bool | None = None,
) -> list[logging.Handler]:
    """Install the upload service's handlers on the root logger.

    Runs once per process; later calls return the handlers installed by the
    first one. Arguments override the matching ``LOG_*`` settings.
    """
    root_logger = logging.getLogger()
    installed = getattr(root_logger, _CONFIGURED_FLAG, None)
    if installed is not None:
        return installed

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [stream_handler]

    write_file = settings.LOG_TO_FILE if to_file is None else to_file
    if write_file:
        handlers.append(_rotating_file_handler(Path(log_file or settings.LOG_FILE_PATH), formatter))

    root_logger.setLevel((level or settings.LOG_LEVEL).upper())
    for handler in handlers:
        root_logger.addHandler(handler)

    library_level = max(logging.getLevelName(settings.LOG_LIBRARY_LEVEL), root_logger.level)
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    setattr(root_logger, _CONFIGURED_FLAG, handlers)
    logging.getLogger(__name__).debug(
        "[logging] configured level=%s file=%s", logging.getLevelName(root_logger.level), write_file
    )
    return handlers

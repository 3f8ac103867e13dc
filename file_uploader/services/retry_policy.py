from __future__ import annotations

import logging
import random
from dataclasses import replace
from typing import Awaitable, Callable, TypeVar

import anyio

from file_uploader.domain.enums import ErrorKind, FailureStage
from file_uploader.domain.upload import Err, Ok, RetryState, UploadError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable["Ok[T] | Err[UploadError]"]]


def backoff_delay(
    attempt: int,
    base_delay: float,
    jitter: Callable[[], float] = random.random,
    max_jitter: float = 1.0,
) -> float:
    """Exponential backoff plus jitter drawn from [0, max_jitter)."""
    return base_delay * (2 ** (attempt - 1)) + jitter() * max_jitter


async def execute_with_retry(
    operation: Operation,
    max_attempts: int,
    base_delay: float,
    *,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    jitter: Callable[[], float] = random.random,
    max_jitter: float = 1.0,
) -> Ok[T] | Err[UploadError]:
    """Run ``operation`` until it succeeds, fails for good, or attempts run out.

    Only ``Err`` results flagged retryable are retried. An exception raised by
    the operation ends the loop at once and is returned as a non-retryable
    ``Err``. The returned result carries the number of attempts made.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    state = RetryState()
    for attempt in range(1, max_attempts + 1):
        state.attempt = attempt
        try:
            result = await operation()
        except Exception as exc:
            logger.exception("[retry] unexpected error on attempt %s: %s", attempt, exc)
            error = UploadError(
                kind=ErrorKind.UNCLASSIFIED_FAILURE,
                message=str(exc) or type(exc).__name__,
                retryable=False,
                stage=FailureStage.UNKNOWN,
                code=type(exc).__name__,
            )
            return Err(error, attempts=attempt)

        if result.ok:
            if attempt > 1:
                logger.info("[retry] succeeded on attempt %s of %s", attempt, max_attempts)
            return replace(result, attempts=attempt)

        state.last_error = result.error
        if not result.error.retryable:
            logger.warning(
                "[retry] attempt %s failed with non-retryable %s: %s",
                attempt,
                result.error.kind.value,
                result.error.message,
            )
            return replace(result, attempts=attempt)

        if attempt < max_attempts:
            delay = backoff_delay(attempt, base_delay, jitter, max_jitter)
            logger.warning(
                "[retry] attempt %s failed (%s). Retrying in %.1f seconds.",
                attempt,
                result.error.message,
                delay,
            )
            await sleep(delay)

    logger.error(
        "[retry] failed after %s attempts: %s",
        max_attempts,
        state.last_error.message if state.last_error else "unknown error",
    )
    return Err(state.last_error, attempts=max_attempts)

"""
Bounded retry for transient network errors on auth/session lookups.

Only errors whose text matches a known transient marker are retried;
anything else propagates on the first failure.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Tuple, TypeVar, Union

from app.utils.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_MARKERS: Tuple[str, ...] = (
    "connection reset",
    "connection error",
    "sendrequest",
    "timed out",
    "temporarily unavailable",
)

DEFAULT_RETRIES = 3
DEFAULT_DELAY_SECONDS = 0.1


def is_transient_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


async def with_retry(
    fn: Callable[[], Union[T, Awaitable[T]]],
    retries: int = DEFAULT_RETRIES,
    delay: float = DEFAULT_DELAY_SECONDS,
    operation: str = "request",
) -> T:
    """
    Call fn, retrying transient failures with linear backoff.

    Args:
        fn: Zero-argument callable, sync or async
        retries: Total attempts
        delay: Base delay in seconds; attempt n waits delay * n
        operation: Name used in log lines

    Raises:
        TransientError: If every attempt failed with a transient error
        Exception: The original error if it is not transient
    """
    last_error: Any = None
    for attempt in range(1, retries + 1):
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            if not is_transient_error(e):
                raise
            last_error = e
            if attempt == retries:
                break
            logger.warning(f"Retry attempt {attempt}/{retries} for {operation} after error: {e}")
            await asyncio.sleep(delay * attempt)

    raise TransientError(f"{operation} failed after {retries} attempts: {last_error}")

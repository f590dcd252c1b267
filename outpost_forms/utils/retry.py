"""
Retry helper.

Used by the discovery client: while a daemon is starting, the first
requests fail, so they're retried with a growing delay.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_linear_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 6,
    delay_step: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call func until it succeeds, waiting retry × delay_step between tries.

    Args:
        func: async function to call
        max_retries: retries after the first attempt
        delay_step: delay added per retry (seconds)
        exceptions: exception types to retry
        on_retry: called with the retry number (1, 2, ...) before waiting
        sleep: awaitable delay (tests pass a fake)

    Returns:
        func's return value

    Raises:
        the exception from the last attempt
    """
    retries = 0
    while True:
        try:
            result = await func()
            if retries > 0:
                logger.info(f"Retry succeeded on attempt {retries + 1}")
            return result

        except exceptions as e:
            if retries >= max_retries:
                logger.error(f"All {retries + 1} attempts failed. Last error: {e}")
                raise

            retries += 1
            delay = retries * delay_step
            logger.warning(
                f"Attempt {retries}/{max_retries + 1} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            if on_retry is not None:
                on_retry(retries)
            await sleep(delay)

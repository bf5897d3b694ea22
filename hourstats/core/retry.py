"""Bounded exponential backoff for transient failures."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STORE_ERRORS: Tuple[Type[BaseException], ...] = (
    RedisConnectionError,
    RedisTimeoutError,
)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: Optional[int] = None,
    initial_delay: Optional[float] = None,
    backoff_factor: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = TRANSIENT_STORE_ERRORS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Retry an async callable with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else propagates
    immediately.

    Args:
        func: Async callable to retry
        max_retries: Maximum number of retry attempts (defaults to settings)
        initial_delay: Initial delay in seconds
        backoff_factor: Multiplier for delay between retries
        retry_on: Exception types considered transient

    Returns:
        Function result on success

    Raises:
        Last exception if all retries fail
    """
    max_retries = settings.store_max_retries if max_retries is None else max_retries
    delay = settings.store_initial_delay if initial_delay is None else initial_delay
    backoff_factor = settings.store_backoff_factor if backoff_factor is None else backoff_factor

    for attempt in range(max_retries + 1):  # +1 for initial attempt
        try:
            return await func()
        except retry_on as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries + 1} attempts failed. Last error: {e}")
                raise

            logger.warning(f"Attempt {attempt + 1} failed: {e}. Retrying in {delay:.1f}s...")
            await sleep(delay)
            delay *= backoff_factor

    raise RuntimeError("retry_with_backoff exited without a result")

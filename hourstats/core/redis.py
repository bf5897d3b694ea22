"""Redis connection management - no caching to avoid event loop issues."""

import logging
from typing import AsyncIterator, List, Optional, Sequence

from redis.asyncio import Redis

from .config import settings
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)


def get_redis_client(url: Optional[str] = None) -> Redis:
    """Get Redis client (creates fresh client to avoid event loop issues)."""
    redis_url = url or settings.redis_url.get_secret_value()
    redis_password = settings.redis_password.get_secret_value() if settings.redis_password else None
    return Redis.from_url(
        url=redis_url,
        password=redis_password,
        decode_responses=False,
    )


async def scan_keys(
    client: Redis, match: str, count: Optional[int] = None
) -> AsyncIterator[str]:
    """Yield every key matching ``match``, following SCAN cursors to the end.

    SCAN is paginated and may return a key more than once across pages, so keys
    are de-duplicated here. Callers iterate the whole keyspace match and never
    deal with cursors themselves.
    """
    count = count or settings.scan_count
    seen = set()
    cursor = 0
    while True:
        cursor, keys = await retry_with_backoff(
            lambda: client.scan(cursor=cursor, match=match, count=count)
        )
        for key in keys:
            key = key.decode() if isinstance(key, bytes) else key
            if key in seen:
                continue
            seen.add(key)
            yield key
        if int(cursor) == 0:
            break


async def mget_chunked(
    client: Redis, keys: Sequence[str], chunk_size: int = 200
) -> List[Optional[bytes]]:
    """MGET ``keys`` in fixed-size chunks, preserving order."""
    values: List[Optional[bytes]] = []
    for start in range(0, len(keys), chunk_size):
        chunk = list(keys[start : start + chunk_size])
        values.extend(await retry_with_backoff(lambda: client.mget(chunk)))
    return values


async def test_redis_connection(url: Optional[str] = None) -> bool:
    """Test Redis connection health.

    Args:
        url: Optional Redis URL to test. If not provided, uses default from settings.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        client = get_redis_client(url=url)
        await client.ping()
        await client.aclose()
        return True
    except Exception as e:
        logger.error(f"Redis connection test failed: {e}")
        return False


async def initialize_redis() -> dict:
    """Check the store and task queue infrastructure and return status."""
    status = {}

    redis_ok = await test_redis_connection()
    status["redis_connection"] = "available" if redis_ok else "unavailable"

    if redis_ok:
        docket_ok = await initialize_docket()
        status["docket_infrastructure"] = "available" if docket_ok else "unavailable"
    else:
        status["docket_infrastructure"] = "unavailable"

    return status


async def initialize_docket() -> bool:
    """Initialize Docket task queue infrastructure."""
    try:
        # Import Docket here to avoid circular imports
        from docket import Docket

        async with Docket(
            url=settings.redis_url.get_secret_value(), name=settings.docket_name
        ) as docket:
            await docket.workers()
            logger.info("Docket infrastructure initialized successfully")
            return True
    except Exception as e:
        logger.error(f"Failed to initialize Docket: {e}")
        return False

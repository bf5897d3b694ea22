"""Append-only sentiment observation log."""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel
from redis.asyncio import Redis

from .config import settings
from .keys import RedisKeys
from .redis import get_redis_client, mget_chunked, scan_keys
from .retry import retry_with_backoff
from .run_state import utc_now

logger = logging.getLogger(__name__)


class Observation(BaseModel):
    """Sentiment measured for one completed run."""

    run_id: str
    timestamp: datetime
    average_compound_score: float
    net_sentiment_percent: float
    sentiment_category: str
    total_posts: int
    created_at: Optional[datetime] = None
    ttl: Optional[int] = None  # epoch seconds

    @property
    def epoch(self) -> int:
        return int(self.timestamp.timestamp())


def _epoch_from_key(key: str) -> int:
    # <prefix>:observation:<epoch>:<run_id>
    return int(key.split(":observation:", 1)[1].split(":", 1)[0])


class ObservationStore:
    """Stores observations and reads them back by time range."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[Redis] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self._redis_url = redis_url
        self._redis_client = redis_client
        self._now = now

    async def _get_client(self) -> Redis:
        """Get Redis client (lazy initialization)."""
        if self._redis_client is None:
            self._redis_client = get_redis_client(self._redis_url)
        return self._redis_client

    async def store_observation(self, observation: Observation) -> Observation:
        """Append ``observation`` with the configured retention."""
        now = self._now()
        stored = observation.model_copy(
            update={
                "created_at": observation.created_at or now,
                "ttl": observation.ttl or int(now.timestamp()) + settings.observation_ttl_seconds,
            }
        )
        client = await self._get_client()
        key = RedisKeys.observation(stored.epoch, stored.run_id)
        await retry_with_backoff(
            lambda: client.set(key, stored.model_dump_json(), exat=stored.ttl)
        )
        logger.info(
            f"Stored observation for run {stored.run_id}: "
            f"{stored.net_sentiment_percent:+.1f}% over {stored.total_posts} posts"
        )
        return stored

    async def get_range(self, start: datetime, end: datetime) -> List[Observation]:
        """Observations with ``start <= timestamp < end``, oldest first.

        Reads the full keyspace match; the key embeds the timestamp, so rows
        outside the range are skipped before they are fetched.
        """
        client = await self._get_client()
        start_epoch, end_epoch = math.floor(start.timestamp()), end.timestamp()

        keys = []
        async for key in scan_keys(client, RedisKeys.observation_pattern()):
            if start_epoch <= _epoch_from_key(key) < end_epoch:
                keys.append(key)

        observations = [
            Observation.model_validate_json(raw)
            for raw in await mget_chunked(client, keys)
            if raw is not None
        ]
        observations = [o for o in observations if start <= o.timestamp < end]
        observations.sort(key=lambda o: (o.timestamp, o.run_id))
        return observations

    async def get_history(self, duration: timedelta) -> List[Observation]:
        """Observations from the last ``duration``, oldest first."""
        now = self._now()
        history = await self.get_range(now - duration, now + timedelta(seconds=1))
        logger.debug(f"Loaded {len(history)} observations for the last {duration}")
        return history

    async def get_history_for_run(self, run_id: str) -> List[Observation]:
        client = await self._get_client()
        keys = [
            key
            async for key in scan_keys(client, RedisKeys.observation_pattern())
            if key.endswith(f":{run_id}")
        ]
        observations = [
            Observation.model_validate_json(raw)
            for raw in await mget_chunked(client, keys)
            if raw is not None
        ]
        return sorted(observations, key=lambda o: o.timestamp)

    async def get_observation(self, timestamp: datetime, run_id: str) -> Optional[Observation]:
        client = await self._get_client()
        key = RedisKeys.observation(int(timestamp.timestamp()), run_id)
        raw = await retry_with_backoff(lambda: client.get(key))
        return Observation.model_validate_json(raw) if raw is not None else None

    async def delete_observation(self, timestamp: datetime, run_id: str) -> Optional[Observation]:
        """Delete one observation and return it, or ``None`` if it does not exist.

        The returned row can be passed back to ``store_observation`` to restore it.
        """
        observation = await self.get_observation(timestamp, run_id)
        if observation is None:
            return None
        client = await self._get_client()
        key = RedisKeys.observation(observation.epoch, run_id)
        await retry_with_backoff(lambda: client.delete(key))
        logger.info(f"Deleted observation {run_id} at {observation.timestamp.isoformat()}")
        return observation

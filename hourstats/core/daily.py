"""Daily sentiment rollups computed from observations."""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, List, Optional, Union

from pydantic import BaseModel
from redis.asyncio import Redis

from .config import settings
from .errors import NoObservationsError
from .history import ObservationStore
from .keys import RedisKeys
from .redis import get_redis_client, mget_chunked
from .retry import retry_with_backoff
from .run_state import utc_now

logger = logging.getLogger(__name__)

DateLike = Union[date, str]


class DailyAggregate(BaseModel):
    """One row per calendar date (UTC)."""

    date: str  # YYYY-MM-DD
    run_id: str
    average_net_sentiment: float
    min_net_sentiment: float
    max_net_sentiment: float
    total_runs: int
    total_posts: int
    created_at: datetime
    ttl: int  # epoch seconds


def parse_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value, "%Y-%m-%d").date()


def day_window(day: date) -> tuple[datetime, datetime]:
    """``[midnight, midnight + 24h)`` of ``day`` in UTC."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class DailyAggregateStore:
    """Computes and stores daily rollups; each date is computed at most once."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[Redis] = None,
        observations: Optional[ObservationStore] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self._redis_url = redis_url
        self._redis_client = redis_client
        self._now = now
        self.observations = observations or ObservationStore(
            redis_url=redis_url, redis_client=redis_client, now=now
        )

    async def _get_client(self) -> Redis:
        """Get Redis client (lazy initialization)."""
        if self._redis_client is None:
            self._redis_client = get_redis_client(self._redis_url)
        return self._redis_client

    async def get_daily_aggregate(self, day: DateLike) -> Optional[DailyAggregate]:
        client = await self._get_client()
        key = RedisKeys.daily(parse_date(day).isoformat())
        raw = await retry_with_backoff(lambda: client.get(key))
        return DailyAggregate.model_validate_json(raw) if raw is not None else None

    async def compute_daily_aggregate(self, day: DateLike) -> DailyAggregate:
        """Return the rollup of ``day``, computing it only if it is not stored yet.

        The write is conditional on absence; when two invocations race, the
        loser returns the row the winner stored.

        Raises:
            NoObservationsError: no observations fall inside the day's window.
        """
        day = parse_date(day)
        existing = await self.get_daily_aggregate(day)
        if existing is not None:
            logger.info(f"Daily aggregate for {day} already exists, skipping")
            return existing

        start, end = day_window(day)
        observations = await self.observations.get_range(start, end)
        if not observations:
            raise NoObservationsError(f"No observations found for {day}")

        values = [o.net_sentiment_percent for o in observations]
        now = self._now()
        aggregate = DailyAggregate(
            date=day.isoformat(),
            run_id=f"daily-{day.isoformat()}",
            average_net_sentiment=sum(values) / len(values),
            min_net_sentiment=min(values),
            max_net_sentiment=max(values),
            total_runs=len(observations),
            total_posts=sum(o.total_posts for o in observations),
            created_at=now,
            ttl=int(now.timestamp()) + settings.daily_ttl_seconds,
        )

        client = await self._get_client()
        key = RedisKeys.daily(aggregate.date)
        written = await retry_with_backoff(
            lambda: client.set(key, aggregate.model_dump_json(), exat=aggregate.ttl, nx=True)
        )
        if not written:
            logger.info(f"Daily aggregate for {day} was stored concurrently, using stored row")
            stored = await self.get_daily_aggregate(day)
            if stored is not None:
                return stored

        logger.info(
            f"Stored daily aggregate for {day}: avg {aggregate.average_net_sentiment:+.1f}% "
            f"from {aggregate.total_runs} runs"
        )
        return aggregate

    async def get_daily_history(self, days: int) -> List[DailyAggregate]:
        """Rollups of the last ``days`` dates before today, oldest first."""
        today = self._now().date()
        dates = [today - timedelta(days=n) for n in range(days, 0, -1)]
        client = await self._get_client()
        values = await mget_chunked(client, [RedisKeys.daily(d.isoformat()) for d in dates])
        return [DailyAggregate.model_validate_json(raw) for raw in values if raw is not None]

"""Run state coordination store.

Each pipeline run keeps one JSON row per (run, stage) in Redis. A stage never
edits another stage's row: it derives its own row from the latest prior row,
carrying the cumulative fields (cutoff time, cursor, counters) forward. The set
of rows for a run is therefore the run's transition log.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field
from redis.asyncio import Redis
from ulid import ULID

from .config import settings
from .errors import InvalidStageTransitionError, RunStateNotFoundError
from .keys import RedisKeys
from .redis import get_redis_client, mget_chunked, scan_keys
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Stage(str, Enum):
    """Pipeline stage owning a state row."""

    ORCHESTRATOR = "orchestrator"
    FETCHER = "fetcher"
    ANALYZER = "analyzer"
    AGGREGATOR = "aggregator"
    POSTER = "poster"


# Logical progress order; used to resolve the latest row of a run.
STAGE_ORDER: Dict[Stage, int] = {
    Stage.ORCHESTRATOR: 0,
    Stage.FETCHER: 1,
    Stage.ANALYZER: 2,
    Stage.AGGREGATOR: 3,
    Stage.POSTER: 4,
}

ALLOWED_PREDECESSORS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.ORCHESTRATOR: frozenset(),
    Stage.FETCHER: frozenset({Stage.ORCHESTRATOR, Stage.FETCHER}),
    Stage.ANALYZER: frozenset({Stage.FETCHER, Stage.ANALYZER}),
    Stage.AGGREGATOR: frozenset({Stage.ANALYZER, Stage.AGGREGATOR}),
    Stage.POSTER: frozenset({Stage.AGGREGATOR, Stage.POSTER}),
}


class RunStatus(str, Enum):
    """Run status as recorded on a stage row."""

    INITIALIZING = "initializing"
    FETCHING = "fetching"
    FETCHED = "fetched"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    POSTING = "posting"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class TopPost(BaseModel):
    """A ranked post carried in the run summary."""

    uri: str
    author: str
    text: str = ""
    likes: int = 0
    reposts: int = 0
    replies: int = 0
    sentiment: str = "neutral"
    compound_score: float = 0.0
    engagement_score: float = 0.0


class SentimentSummary(BaseModel):
    """Aggregate sentiment computed for one run."""

    overall_sentiment: str
    average_compound_score: float
    net_sentiment_percentage: float
    positive_percent: float = 0.0
    negative_percent: float = 0.0
    neutral_percent: float = 0.0
    analyzed_post_count: int = 0
    top_posts: List[TopPost] = Field(default_factory=list)


class RunState(BaseModel):
    """State row of one (run, stage)."""

    run_id: str
    stage: Stage
    status: RunStatus
    analysis_interval_minutes: int
    cutoff_time: datetime
    cursor: str = ""
    has_more_posts: bool = True
    total_posts_retrieved: int = 0
    batch_count: int = 0
    fetch_invocations: int = 0
    summary: Optional[SentimentSummary] = None
    published_uri: Optional[str] = None
    error_message: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    ttl: int  # epoch seconds

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw) -> "RunState":
        return cls.model_validate_json(raw)


def derive_stage(
    state: RunState, stage: Stage, status: Optional[RunStatus] = None
) -> RunState:
    """Copy ``state`` into a row for ``stage``, validating the transition.

    Cumulative fields are preserved; only ``stage`` and ``status`` change.
    """
    if state.stage not in ALLOWED_PREDECESSORS[stage]:
        raise InvalidStageTransitionError(state.stage.value, stage.value)
    return state.model_copy(
        deep=True,
        update={"stage": stage, "status": status if status is not None else state.status},
    )


class RunStateManager:
    """Manages run state rows in Redis."""

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

    async def _write(self, state: RunState, only_if_absent: bool = False) -> bool:
        client = await self._get_client()
        key = RedisKeys.run_state(state.run_id, state.stage.value)

        async def _set():
            return await client.set(key, state.to_json(), exat=state.ttl, nx=only_if_absent)

        return bool(await retry_with_backoff(_set))

    async def create_run(
        self, run_id: Optional[str] = None, interval_minutes: Optional[int] = None
    ) -> RunState:
        """Create the orchestrator row of a new run.

        The cutoff time is computed here, once, as ``now - interval`` and is never
        recomputed by later stages. Creating a run that already exists returns the
        stored row unchanged.
        """
        run_id = run_id or f"run-{ULID()}"
        interval = interval_minutes or settings.analysis_interval_minutes
        now = self._now()
        state = RunState(
            run_id=run_id,
            stage=Stage.ORCHESTRATOR,
            status=RunStatus.INITIALIZING,
            analysis_interval_minutes=interval,
            cutoff_time=now - timedelta(minutes=interval),
            has_more_posts=True,
            created_at=now,
            updated_at=now,
            ttl=int(now.timestamp()) + settings.run_ttl_seconds,
        )

        if not await self._write(state, only_if_absent=True):
            logger.warning(f"Run {run_id} already exists, keeping stored cutoff")
            return await self.get_run(run_id, Stage.ORCHESTRATOR)

        logger.info(
            f"Created run {run_id} (interval={interval}m, cutoff={state.cutoff_time.isoformat()})"
        )
        return state

    async def get_run(self, run_id: str, stage: Stage) -> RunState:
        """Load the row of one (run, stage).

        Raises:
            RunStateNotFoundError: no row exists for the exact key. Store errors
                propagate unchanged.
        """
        client = await self._get_client()
        key = RedisKeys.run_state(run_id, Stage(stage).value)
        raw = await retry_with_backoff(lambda: client.get(key))
        if raw is None:
            raise RunStateNotFoundError(run_id, Stage(stage).value)
        return RunState.from_json(raw)

    async def update_run(self, state: RunState) -> RunState:
        """Upsert ``state`` under its (run, stage) key, refreshing ``updated_at``."""
        state.updated_at = self._now()
        await self._write(state)
        return state

    async def get_latest_run(self, run_id: str) -> RunState:
        """Return the row of the most advanced stage present for ``run_id``."""
        client = await self._get_client()
        stages = sorted(STAGE_ORDER, key=STAGE_ORDER.__getitem__)
        keys = [RedisKeys.run_state(run_id, stage.value) for stage in stages]
        values = await retry_with_backoff(lambda: client.mget(keys))

        latest: Optional[RunState] = None
        for _stage, raw in zip(stages, values):
            if raw is not None:
                latest = RunState.from_json(raw)
        if latest is None:
            raise RunStateNotFoundError(run_id)
        return latest

    async def advance(
        self, run_id: str, stage: Stage, status: RunStatus, **changes
    ) -> RunState:
        """Derive a ``stage`` row from the latest row of the run and store it."""
        latest = await self.get_latest_run(run_id)
        state = derive_stage(latest, stage, status)
        for field, value in changes.items():
            setattr(state, field, value)
        return await self.update_run(state)

    async def get_fetch_state(self, run_id: str) -> RunState:
        """Fetcher row of a run, falling back to the orchestrator row."""
        try:
            return await self.get_run(run_id, Stage.FETCHER)
        except RunStateNotFoundError:
            return await self.get_run(run_id, Stage.ORCHESTRATOR)

    async def update_cursor(self, run_id: str, cursor: str, has_more: bool) -> RunState:
        """Record the fetch continuation cursor on the fetcher row."""
        state = derive_stage(
            await self.get_fetch_state(run_id), Stage.FETCHER, RunStatus.FETCHING
        )
        state.cursor = cursor
        state.has_more_posts = has_more
        return await self.update_run(state)

    async def record_error(self, run_id: str, stage: Stage, message: str) -> RunState:
        """Mark the ``stage`` row of a run as failed."""
        try:
            state = await self.get_run(run_id, stage)
        except RunStateNotFoundError:
            state = derive_stage(await self.get_latest_run(run_id), stage)
        state.status = RunStatus.FAILED
        state.error_message = message
        state.errors.append(message)
        logger.error(f"Run {run_id} failed at {Stage(stage).value}: {message}")
        return await self.update_run(state)

    async def set_analysis_complete(
        self, run_id: str, summary: SentimentSummary
    ) -> RunState:
        """Store the computed summary on the aggregator row."""
        return await self.advance(
            run_id, Stage.AGGREGATOR, RunStatus.ANALYZED, summary=summary
        )

    async def set_posting_complete(
        self,
        run_id: str,
        published_uri: Optional[str] = None,
        status: RunStatus = RunStatus.COMPLETED,
    ) -> RunState:
        """Finish the run on the poster row."""
        return await self.advance(
            run_id, Stage.POSTER, status, published_uri=published_uri
        )

    async def list_runs(self, limit: Optional[int] = 20) -> List[RunState]:
        """Latest row of each stored run, newest first."""
        client = await self._get_client()

        latest_keys: Dict[str, tuple] = {}
        async for key in scan_keys(client, RedisKeys.run_state_pattern()):
            # <prefix>:run:<run_id>:state:<stage>
            head, stage_name = key.rsplit(":state:", 1)
            run_id = head.split(":run:", 1)[1]
            try:
                order = STAGE_ORDER[Stage(stage_name)]
            except ValueError:
                logger.warning(f"Ignoring state row with unknown stage: {key}")
                continue
            if run_id not in latest_keys or latest_keys[run_id][0] < order:
                latest_keys[run_id] = (order, key)

        keys = [key for _, key in latest_keys.values()]
        runs = [RunState.from_json(raw) for raw in await mget_chunked(client, keys) if raw]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs if limit is None else runs[:limit]

    async def get_run_stats(self) -> Dict[str, Dict[str, int]]:
        """Counts of stored runs by latest stage and status."""
        runs = await self.list_runs(limit=None)
        return {
            "total": {"runs": len(runs)},
            "by_stage": dict(Counter(r.stage.value for r in runs)),
            "by_status": dict(Counter(r.status.value for r in runs)),
        }

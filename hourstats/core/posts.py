"""Batched post storage.

Posts of a run are stored in fixed-size batch rows keyed by (run, index).
Indices are allocated from the highest index already persisted for the run, and
the allocation, the batch writes and the counter bump on the fetcher row commit
together in one optimistic (WATCH/MULTI) transaction. A fetch stage invoked any
number of times therefore appends batches and never overwrites earlier ones.
"""

import logging
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional, Sequence

from pydantic import BaseModel, Field
from redis.asyncio import Redis
from redis.exceptions import WatchError

from .config import settings
from .errors import ConcurrentUpdateError, RunStateNotFoundError
from .keys import RedisKeys
from .redis import get_redis_client, mget_chunked, scan_keys
from .retry import retry_with_backoff
from .run_state import RunState, RunStatus, Stage, derive_stage, utc_now

logger = logging.getLogger(__name__)


class Post(BaseModel):
    """A collected feed item."""

    uri: str
    author: str
    text: str = ""
    created_at: datetime
    likes: int = 0
    reposts: int = 0
    replies: int = 0


class PostBatch(BaseModel):
    """One stored batch row."""

    run_id: str
    batch_index: int
    posts: List[Post] = Field(default_factory=list)
    created_at: datetime
    ttl: int


class AddPostsResult(BaseModel):
    """Outcome of one ``add_posts`` call."""

    run_id: str
    added: int
    batch_indices: List[int] = Field(default_factory=list)
    total_posts: int
    state: RunState


def _chunks(posts: Sequence[Post], size: int) -> List[Sequence[Post]]:
    return [posts[i : i + size] for i in range(0, len(posts), size)]


class PostStore:
    """Stores and reads post batches of a run."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[Redis] = None,
        batch_size: Optional[int] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self._redis_url = redis_url
        self._redis_client = redis_client
        self.batch_size = batch_size or settings.post_batch_size
        self._now = now

    async def _get_client(self) -> Redis:
        """Get Redis client (lazy initialization)."""
        if self._redis_client is None:
            self._redis_client = get_redis_client(self._redis_url)
        return self._redis_client

    async def add_posts(
        self,
        run_id: str,
        posts: Sequence[Post],
        cursor: Optional[str] = None,
        has_more: Optional[bool] = None,
    ) -> AddPostsResult:
        """Append ``posts`` to the run as new batches.

        When ``cursor`` / ``has_more`` are given they are committed on the fetcher
        row in the same transaction, so a restarted fetch resumes from a cursor
        that always matches the persisted batches. Connection errors are retried
        with backoff; each retry re-reads the run under a fresh WATCH.

        Raises:
            RunStateNotFoundError: the run has no orchestrator or fetcher row.
            ConcurrentUpdateError: the transaction kept conflicting with other
                writers.
        """
        client = await self._get_client()

        for attempt in range(1, settings.transaction_max_attempts + 1):
            result = await retry_with_backoff(
                lambda: self._commit_posts(client, run_id, list(posts), cursor, has_more)
            )
            if result is None:
                logger.warning(
                    f"Concurrent update on run {run_id} while adding posts "
                    f"(attempt {attempt}/{settings.transaction_max_attempts}), retrying"
                )
                continue

            if result.batch_indices:
                logger.info(
                    f"Stored {len(posts)} posts for run {run_id} in batches "
                    f"{result.batch_indices[0]}..{result.batch_indices[-1]} "
                    f"(total {result.total_posts})"
                )
            return result

        raise ConcurrentUpdateError(
            f"Could not add posts to run {run_id} after "
            f"{settings.transaction_max_attempts} attempts"
        )

    async def _commit_posts(
        self,
        client: Redis,
        run_id: str,
        posts: List[Post],
        cursor: Optional[str],
        has_more: Optional[bool],
    ) -> Optional[AddPostsResult]:
        """One WATCH/MULTI attempt; ``None`` when a watched key changed."""
        fetcher_key = RedisKeys.run_state(run_id, Stage.FETCHER.value)
        orchestrator_key = RedisKeys.run_state(run_id, Stage.ORCHESTRATOR.value)
        index_key = RedisKeys.run_batch_index(run_id)

        async with client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(fetcher_key, orchestrator_key, index_key)

                raw = await pipe.get(fetcher_key)
                if raw is None:
                    raw = await pipe.get(orchestrator_key)
                if raw is None:
                    raise RunStateNotFoundError(run_id, Stage.FETCHER.value)
                state = derive_stage(RunState.from_json(raw), Stage.FETCHER, RunStatus.FETCHING)

                highest = await pipe.zrevrange(index_key, 0, 0, withscores=True)
                next_index = int(highest[0][1]) + 1 if highest else 0

                now = self._now()
                indices: List[int] = []
                pipe.multi()
                for offset, chunk in enumerate(_chunks(posts, self.batch_size)):
                    index = next_index + offset
                    batch = PostBatch(
                        run_id=run_id,
                        batch_index=index,
                        posts=list(chunk),
                        created_at=now,
                        ttl=state.ttl,
                    )
                    pipe.set(
                        RedisKeys.run_batch(run_id, index),
                        batch.model_dump_json(),
                        exat=state.ttl,
                    )
                    pipe.zadd(index_key, {str(index): index})
                    indices.append(index)
                if indices:
                    pipe.expireat(index_key, state.ttl)

                state.total_posts_retrieved += len(posts)
                state.batch_count += len(indices)
                if cursor is not None:
                    state.cursor = cursor
                if has_more is not None:
                    state.has_more_posts = has_more
                state.updated_at = now
                pipe.set(fetcher_key, state.to_json(), exat=state.ttl)

                await pipe.execute()
            except WatchError:
                return None

        return AddPostsResult(
            run_id=run_id,
            added=len(posts),
            batch_indices=indices,
            total_posts=state.total_posts_retrieved,
            state=state,
        )

    async def get_batch_indices(self, run_id: str) -> List[int]:
        """Indices of every stored batch of the run, ascending."""
        client = await self._get_client()
        indices = [
            RedisKeys.batch_index_from_key(key)
            async for key in scan_keys(client, RedisKeys.run_batch_pattern(run_id))
        ]
        return sorted(indices)

    async def iter_batches(self, run_id: str) -> AsyncIterator[PostBatch]:
        """Yield every stored batch of the run in index order."""
        client = await self._get_client()
        keys = [RedisKeys.run_batch(run_id, i) for i in await self.get_batch_indices(run_id)]
        for raw in await mget_chunked(client, keys):
            # A batch may expire between SCAN and MGET
            if raw is not None:
                yield PostBatch.model_validate_json(raw)

    async def iter_posts(self, run_id: str) -> AsyncIterator[Post]:
        async for batch in self.iter_batches(run_id):
            for post in batch.posts:
                yield post

    async def get_all_posts(self, run_id: str) -> List[Post]:
        """Every stored post of the run, across all batches."""
        posts = [post async for post in self.iter_posts(run_id)]
        logger.info(f"Loaded {len(posts)} posts for run {run_id}")
        return posts

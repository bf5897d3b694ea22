"""Time-windowed feed fetch loop.

``WindowFetcher.fetch_window`` walks a newest-first feed from a resume cursor back
to a fixed cutoff time. Each page's in-window items are de-duplicated and stored
together with the page's continuation cursor, so an invocation killed at any
point resumes from the last committed cursor without re-storing posts.

The loop is a single sequential consumer: page k's stop decision depends on page
k's content. Optional speculative prefetch (``PagePrefetcher``) only overlaps
the network latency of pages whose cursors are predictable numeric offsets.
"""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Set

from pydantic import BaseModel

from hourstats.core.config import settings
from hourstats.core.posts import Post, PostStore
from hourstats.core.run_state import RunStateManager
from hourstats.feed.client import FeedClient
from hourstats.feed.errors import PaginationLimitError, RateLimitedError
from hourstats.feed.models import FeedItem, FeedPage

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    """Why a fetch invocation stopped."""

    WINDOW_EXHAUSTED = "window_exhausted"
    FEED_EXHAUSTED = "feed_exhausted"
    TIME_BUDGET = "time_budget"
    DEADLINE = "deadline"
    PAGE_CAP = "page_cap"
    PAGINATION_LIMIT = "pagination_limit"
    RATE_LIMITED = "rate_limited"


# Reasons after which there is nothing left to fetch for the run.
TERMINAL_REASONS = frozenset(
    {StopReason.WINDOW_EXHAUSTED, StopReason.FEED_EXHAUSTED, StopReason.PAGINATION_LIMIT}
)


class FetchResult(BaseModel):
    """Outcome of one fetch invocation."""

    total_count: int
    final_cursor: str
    exhausted: bool
    pages: int
    stop_reason: StopReason
    duplicates_skipped: int = 0
    out_of_window_skipped: int = 0
    elapsed_seconds: float = 0.0

    @property
    def has_more(self) -> bool:
        return not self.exhausted


def to_post(item: FeedItem) -> Post:
    return Post(
        uri=item.uri,
        author=item.author,
        text=item.text,
        created_at=item.created_at,
        likes=item.likes,
        reposts=item.reposts,
        replies=item.replies,
    )


class PagePrefetcher:
    """Bounded-width speculative page prefetch.

    When the current cursor is a numeric offset, the next ``width - 1`` offsets
    are requested ahead of time as tasks. The consumer still takes pages strictly
    in order; a prediction that does not match the feed's real next cursor is
    cancelled and the page is fetched directly. A width of 1 fetches sequentially.
    """

    def __init__(self, feed: FeedClient, since: datetime, width: int = 1, page_size: int = 100):
        self.feed = feed
        self.since = since
        self.width = max(1, width)
        self.page_size = page_size
        self._pending: Dict[str, asyncio.Task] = {}

    @staticmethod
    def _offset(cursor: Optional[str]) -> Optional[int]:
        if not cursor:
            return 0
        return int(cursor) if cursor.isdigit() else None

    def _speculate(self, cursor: Optional[str]) -> None:
        offset = self._offset(cursor)
        if offset is None or self.width == 1:
            return
        for step in range(1, self.width):
            predicted = str(offset + step * self.page_size)
            if predicted not in self._pending:
                self._pending[predicted] = asyncio.create_task(
                    self.feed.fetch_page(predicted, self.since)
                )

    async def get(self, cursor: Optional[str]) -> FeedPage:
        task = self._pending.pop(cursor or "", None)
        if task is None:
            await self.cancel()
            self._speculate(cursor)
            return await self.feed.fetch_page(cursor or None, self.since)
        self._speculate(cursor)
        return await task

    async def cancel(self) -> None:
        """Cancel every outstanding speculative request."""
        pending = list(self._pending.values())
        self._pending.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class WindowFetcher:
    """Fetches one run's window from the feed into the post store."""

    def __init__(
        self,
        run_id: str,
        feed: FeedClient,
        post_store: PostStore,
        run_state: RunStateManager,
        clock: Callable[[], float] = time.monotonic,
        soft_budget_seconds: Optional[float] = None,
        execution_limit_seconds: Optional[float] = None,
        safety_margin_seconds: Optional[float] = None,
        min_items: Optional[int] = None,
        max_pages: Optional[int] = None,
        prefetch_width: Optional[int] = None,
        page_size: Optional[int] = None,
    ):
        self.run_id = run_id
        self.feed = feed
        self.post_store = post_store
        self.run_state = run_state
        self._clock = clock

        def pick(value, default):
            return default if value is None else value

        self.soft_budget_seconds = pick(soft_budget_seconds, settings.fetch_soft_budget_seconds)
        self.execution_limit_seconds = pick(
            execution_limit_seconds, settings.fetch_execution_limit_seconds
        )
        self.safety_margin_seconds = pick(
            safety_margin_seconds, settings.fetch_safety_margin_seconds
        )
        self.min_items = pick(min_items, settings.fetch_min_items)
        self.max_pages = pick(max_pages, settings.fetch_max_pages)
        self.prefetch_width = pick(prefetch_width, settings.fetch_prefetch_width)
        self.page_size = pick(page_size, settings.feed_page_size)

    @property
    def deadline_seconds(self) -> float:
        return self.execution_limit_seconds - self.safety_margin_seconds

    async def _known_uris(self, resume_cursor: Optional[str]) -> Set[str]:
        if not resume_cursor:
            return set()
        return {post.uri async for post in self.post_store.iter_posts(self.run_id)}

    def _budget_stop(self, elapsed: float, total: int) -> Optional[StopReason]:
        if elapsed >= self.deadline_seconds:
            return StopReason.DEADLINE
        if elapsed >= self.soft_budget_seconds and total >= self.min_items:
            return StopReason.TIME_BUDGET
        return None

    async def fetch_window(
        self, cutoff_time: datetime, resume_cursor: Optional[str] = None
    ) -> FetchResult:
        """Fetch pages until the window is exhausted or a safety limit trips.

        Args:
            cutoff_time: Fixed lower bound of the window; items created before it
                are not stored and mark the window as exhausted.
            resume_cursor: Cursor committed by a previous invocation, or empty to
                start at the newest item.

        Returns:
            FetchResult with the number of posts stored by this invocation, the
            cursor to resume from (empty once exhausted) and the exhausted flag.
        """
        started = self._clock()
        cursor = resume_cursor or ""
        seen = await self._known_uris(resume_cursor)
        total = pages = duplicates = out_of_window = 0
        stop_reason: Optional[StopReason] = None

        logger.info(
            f"Fetching window for run {self.run_id} back to {cutoff_time.isoformat()} "
            f"(resume cursor: {cursor or 'none'})"
        )

        prefetcher = PagePrefetcher(self.feed, cutoff_time, self.prefetch_width, self.page_size)
        try:
            while stop_reason is None:
                if pages >= self.max_pages:
                    logger.warning(
                        f"Run {self.run_id}: page cap of {self.max_pages} reached, "
                        f"stopping at cursor {cursor}"
                    )
                    stop_reason = StopReason.PAGE_CAP
                    break

                stop_reason = self._budget_stop(self._clock() - started, total)
                if stop_reason is not None:
                    logger.info(
                        f"Run {self.run_id}: stopping on {stop_reason.value} after "
                        f"{pages} pages and {total} posts"
                    )
                    break

                try:
                    page = await prefetcher.get(cursor)
                except PaginationLimitError as e:
                    logger.warning(f"Run {self.run_id}: pagination limit reached: {e}")
                    cursor = ""
                    await self.run_state.update_cursor(self.run_id, cursor, has_more=False)
                    stop_reason = StopReason.PAGINATION_LIMIT
                    break
                except RateLimitedError as e:
                    logger.warning(
                        f"Run {self.run_id}: rate limited, keeping cursor {cursor} for the "
                        f"next invocation: {e}"
                    )
                    stop_reason = StopReason.RATE_LIMITED
                    break

                pages += 1
                if not page.items and pages == 1 and not resume_cursor:
                    logger.warning(
                        f"Run {self.run_id}: first page is EMPTY with no cursor. Check the "
                        f"feed's sort order and time semantics (since="
                        f"{cutoff_time.isoformat()}); continuing in case this is a quiet period"
                    )

                fresh = []
                for item in page.items:
                    if item.uri in seen:
                        duplicates += 1
                        continue
                    seen.add(item.uri)
                    if item.created_at < cutoff_time:
                        out_of_window += 1
                        continue
                    fresh.append(to_post(item))

                oldest = page.oldest()
                if oldest is not None and oldest.created_at < cutoff_time:
                    stop_reason = StopReason.WINDOW_EXHAUSTED
                elif not page.has_more or not page.next_cursor:
                    stop_reason = StopReason.FEED_EXHAUSTED

                cursor = "" if stop_reason is not None else page.next_cursor
                await self.post_store.add_posts(
                    self.run_id, fresh, cursor=cursor, has_more=stop_reason is None
                )
                total += len(fresh)
                logger.debug(
                    f"Run {self.run_id}: page {pages} gave {len(page.items)} items, "
                    f"stored {len(fresh)} (total {total})"
                )
        finally:
            await prefetcher.cancel()

        elapsed = self._clock() - started
        result = FetchResult(
            total_count=total,
            final_cursor=cursor,
            exhausted=stop_reason in TERMINAL_REASONS,
            pages=pages,
            stop_reason=stop_reason,
            duplicates_skipped=duplicates,
            out_of_window_skipped=out_of_window,
            elapsed_seconds=elapsed,
        )
        logger.info(
            f"Run {self.run_id}: fetched {total} posts from {pages} pages in {elapsed:.1f}s "
            f"({stop_reason.value}, {duplicates} duplicates, {out_of_window} out of window)"
        )
        return result

"""Unit tests for the time-windowed fetch loop."""

import pytest

from hourstats.core.posts import PostStore
from hourstats.core.run_state import RunStateManager
from hourstats.feed.errors import PaginationLimitError, RateLimitedError
from hourstats.pipelines.fetcher import PagePrefetcher, StopReason, WindowFetcher


@pytest.fixture
def run_state(redis_client, clock):
    return RunStateManager(redis_client=redis_client, now=clock)


@pytest.fixture
def posts(redis_client, clock):
    return PostStore(redis_client=redis_client, now=clock)


@pytest.fixture
async def run(run_state):
    return await run_state.create_run(run_id="run-a", interval_minutes=30)


def fetcher_for(feed, posts, run_state, clock=None, **options):
    options.setdefault("min_items", 0)
    kwargs = {"clock": clock} if clock is not None else {}
    return WindowFetcher("run-a", feed, posts, run_state, **kwargs, **options)


class TestWindowExhaustion:
    @pytest.mark.asyncio
    async def test_stops_on_page_crossing_cutoff(
        self, run, run_state, posts, make_item, feed_factory
    ):
        """Page 3 crosses the cutoff, so page 4 is never requested."""
        # 25 items one minute apart from 1 to 25 minutes ago, then older ones
        items = [make_item(i, minutes_ago=i + 1) for i in range(25)]
        items += [make_item(100 + i, minutes_ago=31 + i) for i in range(20)]
        feed = feed_factory(items, page_size=10)

        result = await fetcher_for(feed, posts, run_state).fetch_window(run.cutoff_time)

        assert feed.requests == [None, "10", "20"]
        assert result.stop_reason == StopReason.WINDOW_EXHAUSTED
        assert result.exhausted is True
        assert result.total_count == 25
        assert result.out_of_window_skipped == 5
        assert result.final_cursor == ""

        state = await run_state.get_fetch_state("run-a")
        assert state.cursor == ""
        assert state.has_more_posts is False
        assert state.total_posts_retrieved == 25
        assert state.cutoff_time == run.cutoff_time

    @pytest.mark.asyncio
    async def test_feed_end_inside_window(self, run, run_state, posts, make_item, feed_factory):
        feed = feed_factory([make_item(i, minutes_ago=i) for i in range(15)], page_size=10)

        result = await fetcher_for(feed, posts, run_state).fetch_window(run.cutoff_time)

        assert result.stop_reason == StopReason.FEED_EXHAUSTED
        assert result.total_count == 15
        assert result.pages == 2

    @pytest.mark.asyncio
    async def test_empty_first_page(self, run, run_state, posts, feed_factory, caplog):
        feed = feed_factory([], page_size=10)

        result = await fetcher_for(feed, posts, run_state).fetch_window(run.cutoff_time)

        assert result.total_count == 0
        assert result.stop_reason == StopReason.FEED_EXHAUSTED
        assert "first page is EMPTY" in caplog.text


class TestSafetyLimits:
    @pytest.mark.asyncio
    async def test_soft_time_budget(
        self, run, run_state, posts, make_item, feed_factory, tick_clock
    ):
        feed = feed_factory([make_item(i, minutes_ago=i * 0.1) for i in range(100)], page_size=10)
        fetcher = fetcher_for(
            feed, posts, run_state, clock=tick_clock(step=4), soft_budget_seconds=10
        )

        result = await fetcher.fetch_window(run.cutoff_time)

        assert result.stop_reason == StopReason.TIME_BUDGET
        assert result.pages == 2
        assert result.exhausted is False
        assert result.final_cursor == "20"
        state = await run_state.get_fetch_state("run-a")
        assert state.cursor == "20"
        assert state.has_more_posts is True

    @pytest.mark.asyncio
    async def test_soft_budget_waits_for_min_items(
        self, run, run_state, posts, make_item, feed_factory, tick_clock
    ):
        feed = feed_factory([make_item(i, minutes_ago=i * 0.1) for i in range(100)], page_size=10)
        fetcher = fetcher_for(
            feed,
            posts,
            run_state,
            clock=tick_clock(step=4),
            soft_budget_seconds=10,
            min_items=50,
        )

        result = await fetcher.fetch_window(run.cutoff_time)

        assert result.stop_reason == StopReason.TIME_BUDGET
        assert result.total_count == 50

    @pytest.mark.asyncio
    async def test_hard_deadline_ignores_min_items(
        self, run, run_state, posts, make_item, feed_factory, tick_clock
    ):
        feed = feed_factory([make_item(i, minutes_ago=i * 0.1) for i in range(100)], page_size=10)
        fetcher = fetcher_for(
            feed,
            posts,
            run_state,
            clock=tick_clock(step=10),
            execution_limit_seconds=40,
            safety_margin_seconds=10,
            min_items=1000,
        )

        result = await fetcher.fetch_window(run.cutoff_time)

        assert result.stop_reason == StopReason.DEADLINE
        assert result.pages == 2

    @pytest.mark.asyncio
    async def test_page_cap(self, run, run_state, posts, make_item, feed_factory):
        feed = feed_factory([make_item(i, minutes_ago=i * 0.1) for i in range(100)], page_size=10)

        result = await fetcher_for(feed, posts, run_state, max_pages=3).fetch_window(
            run.cutoff_time
        )

        assert result.stop_reason == StopReason.PAGE_CAP
        assert result.pages == 3
        assert result.has_more is True


class TestFeedErrors:
    @pytest.mark.asyncio
    async def test_pagination_limit_closes_window(
        self, run, run_state, posts, make_item, feed_factory
    ):
        feed = feed_factory(
            [make_item(i, minutes_ago=i * 0.1) for i in range(50)],
            page_size=10,
            errors={"20": PaginationLimitError("too deep")},
        )

        result = await fetcher_for(feed, posts, run_state).fetch_window(run.cutoff_time)

        assert result.stop_reason == StopReason.PAGINATION_LIMIT
        assert result.exhausted is True
        assert result.total_count == 20
        state = await run_state.get_fetch_state("run-a")
        assert state.cursor == ""
        assert state.has_more_posts is False

    @pytest.mark.asyncio
    async def test_rate_limit_keeps_cursor(self, run, run_state, posts, make_item, feed_factory):
        feed = feed_factory(
            [make_item(i, minutes_ago=i * 0.1) for i in range(50)],
            page_size=10,
            errors={"10": RateLimitedError("slow down")},
        )

        result = await fetcher_for(feed, posts, run_state).fetch_window(run.cutoff_time)

        assert result.stop_reason == StopReason.RATE_LIMITED
        assert result.exhausted is False
        assert result.final_cursor == "10"
        state = await run_state.get_fetch_state("run-a")
        assert state.cursor == "10"
        assert state.has_more_posts is True


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_skips_stored_posts(self, run, run_state, posts, make_item, feed_factory):
        items = [make_item(i, minutes_ago=i * 0.5) for i in range(40)]
        first = feed_factory(items, page_size=10)
        await fetcher_for(first, posts, run_state, max_pages=2).fetch_window(run.cutoff_time)
        state = await run_state.get_fetch_state("run-a")
        assert state.cursor == "20"

        # The feed shifted by five new items; page "20" now repeats five stored posts
        shifted = [make_item(200 + i, minutes_ago=0) for i in range(5)] + items
        second = feed_factory(shifted, page_size=10)
        result = await fetcher_for(second, posts, run_state).fetch_window(
            run.cutoff_time, state.cursor
        )

        assert second.requests[0] == "20"
        assert result.duplicates_skipped == 5
        assert len(await posts.get_all_posts("run-a")) == 40
        assert len({p.uri for p in await posts.get_all_posts("run-a")}) == 40

    @pytest.mark.asyncio
    async def test_duplicates_within_invocation(
        self, run, run_state, posts, make_item, feed_factory
    ):
        item = make_item(1, minutes_ago=1)
        feed = feed_factory([item, item.model_copy(), make_item(2, minutes_ago=2)], page_size=2)

        result = await fetcher_for(feed, posts, run_state).fetch_window(run.cutoff_time)

        assert result.total_count == 2
        assert result.duplicates_skipped == 1


class TestPrefetch:
    @pytest.mark.asyncio
    async def test_wide_prefetch_matches_sequential(
        self, run, run_state, posts, make_item, feed_factory
    ):
        items = [make_item(i, minutes_ago=i * 0.5) for i in range(45)]
        items += [make_item(100 + i, minutes_ago=40 + i) for i in range(30)]
        feed = feed_factory(items, page_size=10)

        result = await fetcher_for(
            feed, posts, run_state, prefetch_width=3, page_size=10
        ).fetch_window(run.cutoff_time)

        assert result.stop_reason == StopReason.WINDOW_EXHAUSTED
        assert result.total_count == 45
        assert len(await posts.get_all_posts("run-a")) == 45
        assert "10" in feed.requests and "20" in feed.requests

    @pytest.mark.asyncio
    async def test_mismatched_prediction_is_fetched_directly(self, make_item, feed_factory):
        feed = feed_factory([make_item(i, minutes_ago=i) for i in range(30)], page_size=10)
        prefetcher = PagePrefetcher(feed, since=None, width=2, page_size=10)

        first = await prefetcher.get("")
        other = await prefetcher.get("5")
        await prefetcher.cancel()

        assert first.next_cursor == "10"
        assert other.items[0].uri == feed.items[5].uri

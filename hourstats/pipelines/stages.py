"""Stage drivers.

Each driver is one stateless invocation: it reads the run's prior state row,
does its work, and writes its own row. All coordination goes through the store,
so any driver can run in a different process (or Docket worker) from the others.
Every driver filters against the cutoff stored on the run, never against "now".
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from redis.asyncio import Redis

from hourstats.core.config import settings
from hourstats.core.daily import DailyAggregateStore, DateLike
from hourstats.core.errors import NoObservationsError, RunStateNotFoundError
from hourstats.core.history import Observation, ObservationStore
from hourstats.core.posts import PostStore
from hourstats.core.redis import get_redis_client
from hourstats.core.run_state import (
    RunState,
    RunStateManager,
    RunStatus,
    Stage,
    derive_stage,
    utc_now,
)
from hourstats.core.secrets import (
    PipelineConfig,
    SecretSource,
    default_secret_source,
    load_pipeline_config,
)
from hourstats.feed.client import (
    BlueskyFeedClient,
    BlueskyPublisher,
    BlueskySession,
    FeedClient,
    Publisher,
)

from .analysis import (
    VaderSentimentScorer,
    SentimentScorer,
    analyze_posts,
    deduplicate_by_uri,
    filter_by_cutoff,
    summarize,
)
from .fetcher import WindowFetcher
from .formatter import format_summary

logger = logging.getLogger(__name__)


class StageContext:
    """Stores and collaborators shared by the stage drivers."""

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        feed: Optional[FeedClient] = None,
        publisher: Optional[Publisher] = None,
        secrets: Optional[SecretSource] = None,
        scorer: Optional[SentimentScorer] = None,
        now: Callable[[], datetime] = utc_now,
        clock: Callable[[], float] = time.monotonic,
        dry_run: Optional[bool] = None,
        fetcher_options: Optional[Dict[str, Any]] = None,
    ):
        self.redis_client = redis_client or get_redis_client()
        self.now = now
        self.clock = clock
        self.run_state = RunStateManager(redis_client=self.redis_client, now=now)
        self.posts = PostStore(redis_client=self.redis_client, now=now)
        self.observations = ObservationStore(redis_client=self.redis_client, now=now)
        self.daily = DailyAggregateStore(
            redis_client=self.redis_client, observations=self.observations, now=now
        )
        self.secrets = secrets or default_secret_source(self.redis_client)
        self.scorer = scorer or VaderSentimentScorer()
        self.dry_run = dry_run
        self.fetcher_options = fetcher_options or {}
        self._feed = feed
        self._publisher = publisher
        self._session: Optional[BlueskySession] = None

    def _bluesky_session(self) -> BlueskySession:
        if self._session is None:
            self._session = BlueskySession(secrets=self.secrets)
        return self._session

    @property
    def feed(self) -> FeedClient:
        if self._feed is None:
            self._feed = BlueskyFeedClient(session=self._bluesky_session())
        return self._feed

    @property
    def publisher(self) -> Publisher:
        if self._publisher is None:
            self._publisher = BlueskyPublisher(session=self._bluesky_session())
        return self._publisher

    async def load_config(self) -> PipelineConfig:
        config = await load_pipeline_config(self.secrets)
        if self.dry_run is not None:
            config.dry_run = self.dry_run
        return config

    async def aclose(self) -> None:
        if self._session is not None:
            await self._session.aclose()
        await self.redis_client.aclose()


class StageDriver:
    """Base driver: runs the stage and records failures on the run."""

    stage: Stage

    def __init__(self, context: StageContext):
        self.ctx = context

    async def run(self, run_id: str) -> Dict[str, Any]:
        try:
            return await self._run(run_id)
        except RunStateNotFoundError:
            raise
        except Exception as e:
            logger.error(f"{self.stage.value} stage failed for run {run_id}: {e}")
            try:
                await self.ctx.run_state.record_error(run_id, self.stage, str(e))
            except Exception as record_exc:
                logger.error(f"Could not record failure on run {run_id}: {record_exc}")
            raise

    async def _run(self, run_id: str) -> Dict[str, Any]:
        raise NotImplementedError


class OrchestratorStage:
    """Creates a run with its fixed cutoff time."""

    stage = Stage.ORCHESTRATOR

    def __init__(self, context: StageContext):
        self.ctx = context

    async def run(
        self, run_id: Optional[str] = None, interval_minutes: Optional[int] = None
    ) -> Dict[str, Any]:
        config = await self.ctx.load_config()
        state = await self.ctx.run_state.create_run(
            run_id=run_id, interval_minutes=interval_minutes or config.analysis_interval_minutes
        )
        return {
            "run_id": state.run_id,
            "stage": state.stage.value,
            "status": state.status.value,
            "cutoff_time": state.cutoff_time.isoformat(),
            "analysis_interval_minutes": state.analysis_interval_minutes,
        }


class FetcherStage(StageDriver):
    """One fetch invocation; call again while ``has_more`` is true."""

    stage = Stage.FETCHER

    async def _run(self, run_id: str) -> Dict[str, Any]:
        state = await self.ctx.run_state.get_fetch_state(run_id)
        if state.stage == Stage.FETCHER and not state.has_more_posts:
            logger.info(f"Run {run_id} has no more posts to fetch")
            return {
                "run_id": run_id,
                "total_posts": state.total_posts_retrieved,
                "fetched": 0,
                "has_more": False,
            }

        state = derive_stage(state, Stage.FETCHER, RunStatus.FETCHING)
        if state.fetch_invocations >= settings.fetch_max_invocations:
            logger.warning(
                f"Run {run_id} reached {state.fetch_invocations} fetch invocations, "
                f"closing the window with {state.total_posts_retrieved} posts"
            )
            state.status = RunStatus.FETCHED
            state.has_more_posts = False
            state = await self.ctx.run_state.update_run(state)
            return {
                "run_id": run_id,
                "total_posts": state.total_posts_retrieved,
                "fetched": 0,
                "has_more": False,
            }
        state.fetch_invocations += 1
        state = await self.ctx.run_state.update_run(state)

        fetcher = WindowFetcher(
            run_id,
            self.ctx.feed,
            self.ctx.posts,
            self.ctx.run_state,
            clock=self.ctx.clock,
            **self.ctx.fetcher_options,
        )
        result = await fetcher.fetch_window(state.cutoff_time, state.cursor)

        state = await self.ctx.run_state.get_fetch_state(run_id)
        if result.exhausted:
            state = derive_stage(state, Stage.FETCHER, RunStatus.FETCHED)
            state.cursor = ""
            state.has_more_posts = False
            state = await self.ctx.run_state.update_run(state)

        return {
            "run_id": run_id,
            "fetched": result.total_count,
            "total_posts": state.total_posts_retrieved,
            "pages": result.pages,
            "stop_reason": result.stop_reason.value,
            "cursor": result.final_cursor,
            "has_more": result.has_more,
            "invocation": state.fetch_invocations,
        }


class AnalyzerStage(StageDriver):
    """Scores every stored post of the run inside the run's window."""

    stage = Stage.ANALYZER

    async def _run(self, run_id: str) -> Dict[str, Any]:
        config = await self.ctx.load_config()
        state = await self.ctx.run_state.advance(run_id, Stage.ANALYZER, RunStatus.ANALYZING)

        posts = await self.ctx.posts.get_all_posts(run_id)
        in_window = filter_by_cutoff(posts, state.cutoff_time)
        analyzed = deduplicate_by_uri(analyze_posts(in_window, self.ctx.scorer))
        summary = summarize(analyzed, config.top_posts_count, config.min_engagement_score)

        state.summary = summary
        await self.ctx.run_state.update_run(state)

        logger.info(
            f"Analyzed {len(analyzed)} posts for run {run_id} "
            f"({len(posts) - len(in_window)} outside the window): "
            f"{summary.overall_sentiment} {summary.net_sentiment_percentage:+.1f}%"
        )
        return {
            "run_id": run_id,
            "stored_posts": len(posts),
            "analyzed_posts": len(analyzed),
            "overall_sentiment": summary.overall_sentiment,
            "net_sentiment_percentage": summary.net_sentiment_percentage,
        }


class AggregatorStage(StageDriver):
    """Finalizes the summary on the run and appends the run's observation."""

    stage = Stage.AGGREGATOR

    async def _run(self, run_id: str) -> Dict[str, Any]:
        analyzer_state = await self.ctx.run_state.get_run(run_id, Stage.ANALYZER)
        summary = analyzer_state.summary
        if summary is None:
            raise ValueError(f"Run {run_id} has no analysis summary")

        state = await self.ctx.run_state.set_analysis_complete(run_id, summary)

        observation = None
        if summary.analyzed_post_count > 0:
            observation = await self.ctx.observations.store_observation(
                Observation(
                    run_id=run_id,
                    timestamp=state.created_at,
                    average_compound_score=summary.average_compound_score,
                    net_sentiment_percent=summary.net_sentiment_percentage,
                    sentiment_category=summary.overall_sentiment,
                    total_posts=summary.analyzed_post_count,
                )
            )
        else:
            logger.warning(f"Run {run_id} analysed no posts, no observation stored")

        return {
            "run_id": run_id,
            "status": state.status.value,
            "top_posts": len(summary.top_posts),
            "observation_stored": observation is not None,
        }


class PosterStage(StageDriver):
    """Publishes the summary; dry-run only suppresses the publish call."""

    stage = Stage.POSTER

    async def _run(self, run_id: str) -> Dict[str, Any]:
        config = await self.ctx.load_config()
        state: RunState = await self.ctx.run_state.get_run(run_id, Stage.AGGREGATOR)
        summary = state.summary

        skip_reason = None
        if state.total_posts_retrieved == 0:
            skip_reason = "no posts"
        elif summary is None:
            skip_reason = "no sentiment summary"
        elif not summary.top_posts:
            skip_reason = "no top posts"

        if skip_reason:
            logger.warning(f"Skipping post for run {run_id}: {skip_reason}")
            await self.ctx.run_state.set_posting_complete(run_id, status=RunStatus.SKIPPED)
            return {"run_id": run_id, "posted": False, "skipped": skip_reason}

        text = format_summary(summary, state.analysis_interval_minutes, summary.analyzed_post_count)
        published_uri = None
        if config.dry_run:
            logger.info(f"Dry run, not publishing summary for run {run_id}:\n{text}")
        else:
            published_uri = await self.ctx.publisher.publish(text)

        await self.ctx.run_state.set_posting_complete(run_id, published_uri=published_uri)
        return {
            "run_id": run_id,
            "posted": published_uri is not None,
            "dry_run": config.dry_run,
            "published_uri": published_uri,
            "text": text,
        }


class DailyAggregatorStage:
    """Computes the rollup of one date, yesterday by default."""

    def __init__(self, context: StageContext):
        self.ctx = context

    async def run(self, day: Optional[DateLike] = None) -> Dict[str, Any]:
        day = day or (self.ctx.now() - timedelta(days=1)).date()
        try:
            aggregate = await self.ctx.daily.compute_daily_aggregate(day)
        except NoObservationsError as e:
            logger.warning(f"Daily aggregate skipped: {e}")
            return {"date": str(day), "computed": False, "reason": str(e)}

        return {
            "date": aggregate.date,
            "computed": True,
            "average_net_sentiment": aggregate.average_net_sentiment,
            "min_net_sentiment": aggregate.min_net_sentiment,
            "max_net_sentiment": aggregate.max_net_sentiment,
            "total_runs": aggregate.total_runs,
            "total_posts": aggregate.total_posts,
        }

"""Docket task definitions for pipeline stages.

Every stage runs as its own task. A task does one stage invocation and then
enqueues its successor: the fetcher re-enqueues itself while the run reports
more posts, then hands off to the analyzer, which hands off to the aggregator
and the poster.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from docket import ConcurrencyLimit, Docket, Perpetual, Retry

from hourstats.core.config import settings
from hourstats.pipelines.stages import (
    AggregatorStage,
    AnalyzerStage,
    DailyAggregatorStage,
    FetcherStage,
    OrchestratorStage,
    PosterStage,
    StageContext,
)

logger = logging.getLogger(__name__)

# Pipeline task registry
PIPELINE_TASK_COLLECTION = []


def pipeline_task(func):
    """Decorator to register pipeline tasks."""
    PIPELINE_TASK_COLLECTION.append(func)
    return func


async def get_redis_url() -> str:
    """Get Redis URL for Docket."""
    return settings.redis_url.get_secret_value()


async def enqueue(task, key: str, **kwargs) -> None:
    """Schedule ``task`` now under the deduplication ``key``."""
    async with Docket(url=await get_redis_url(), name=settings.docket_name) as docket:
        task_func = docket.add(task, key=key)
        await task_func(**kwargs)
    logger.info(f"Enqueued {task.__name__} with key {key}")


async def register_pipeline_tasks() -> None:
    """Register all pipeline tasks with Docket."""
    try:
        async with Docket(url=await get_redis_url(), name=settings.docket_name) as docket:
            for task in PIPELINE_TASK_COLLECTION:
                docket.register(task)

            logger.info(f"Registered {len(PIPELINE_TASK_COLLECTION)} pipeline tasks with Docket")
    except Exception as e:
        logger.error(f"Failed to register pipeline tasks: {e}")
        raise


@pipeline_task
async def start_run_task(
    run_id: Optional[str] = None,
    interval_minutes: Optional[int] = None,
    retry: Retry = Retry(attempts=3, delay=timedelta(seconds=5)),
) -> Dict[str, Any]:
    """Create a run and enqueue its first fetch invocation."""
    ctx = StageContext()
    try:
        result = await OrchestratorStage(ctx).run(run_id, interval_minutes)
        await enqueue(fetch_posts_task, key=f"fetch:{result['run_id']}:1", run_id=result["run_id"])
        return result
    except Exception as e:
        logger.error(f"Failed to start run (attempt {retry.attempt}): {e}")
        raise
    finally:
        await ctx.aclose()


@pipeline_task
async def fetch_posts_task(
    run_id: str,
    concurrency: ConcurrencyLimit = ConcurrencyLimit("run_id", max_concurrent=1, scope="fetch"),
    retry: Retry = Retry(attempts=3, delay=timedelta(seconds=10)),
) -> Dict[str, Any]:
    """
    One fetch invocation for ``run_id``.

    Re-enqueues itself while the run has more posts in its window, otherwise
    hands the run to the analyzer. The ConcurrencyLimit keeps a single fetcher
    per run.
    """
    ctx = StageContext()
    try:
        result = await FetcherStage(ctx).run(run_id)
        if result["has_more"]:
            await enqueue(
                fetch_posts_task,
                key=f"fetch:{run_id}:{result['invocation'] + 1}",
                run_id=run_id,
            )
        else:
            await enqueue(analyze_run_task, key=f"analyze:{run_id}", run_id=run_id)
        return result
    except Exception as e:
        logger.error(f"Fetch failed for run {run_id} (attempt {retry.attempt}): {e}")
        raise
    finally:
        await ctx.aclose()


@pipeline_task
async def analyze_run_task(
    run_id: str,
    retry: Retry = Retry(attempts=3, delay=timedelta(seconds=5)),
) -> Dict[str, Any]:
    """Score the run's posts, then hand off to the aggregator."""
    ctx = StageContext()
    try:
        result = await AnalyzerStage(ctx).run(run_id)
        await enqueue(aggregate_run_task, key=f"aggregate:{run_id}", run_id=run_id)
        return result
    except Exception as e:
        logger.error(f"Analysis failed for run {run_id} (attempt {retry.attempt}): {e}")
        raise
    finally:
        await ctx.aclose()


@pipeline_task
async def aggregate_run_task(
    run_id: str,
    retry: Retry = Retry(attempts=3, delay=timedelta(seconds=5)),
) -> Dict[str, Any]:
    """Store the run summary and observation, then hand off to the poster."""
    ctx = StageContext()
    try:
        result = await AggregatorStage(ctx).run(run_id)
        await enqueue(post_summary_task, key=f"post:{run_id}", run_id=run_id)
        return result
    except Exception as e:
        logger.error(f"Aggregation failed for run {run_id} (attempt {retry.attempt}): {e}")
        raise
    finally:
        await ctx.aclose()


@pipeline_task
async def post_summary_task(
    run_id: str,
    retry: Retry = Retry(attempts=2, delay=timedelta(seconds=30)),
) -> Dict[str, Any]:
    """Publish the run summary (logged only in dry-run)."""
    ctx = StageContext()
    try:
        return await PosterStage(ctx).run(run_id)
    except Exception as e:
        logger.error(f"Posting failed for run {run_id} (attempt {retry.attempt}): {e}")
        raise
    finally:
        await ctx.aclose()


@pipeline_task
async def daily_aggregate_task(
    day: Optional[str] = None,
    retry: Retry = Retry(attempts=3, delay=timedelta(minutes=1)),
) -> Dict[str, Any]:
    """Compute the rollup of ``day`` (yesterday by default)."""
    ctx = StageContext()
    try:
        return await DailyAggregatorStage(ctx).run(day)
    except Exception as e:
        logger.error(f"Daily aggregation failed (attempt {retry.attempt}): {e}")
        raise
    finally:
        await ctx.aclose()


@pipeline_task
async def scheduled_pipeline_task(
    global_limit="scheduler",  # Need a sentinel value for concurrency limit argument
    perpetual: Perpetual = Perpetual(
        every=timedelta(minutes=settings.analysis_interval_minutes), automatic=True
    ),
    concurrency: ConcurrencyLimit = ConcurrencyLimit("global_limit", max_concurrent=1),
) -> Optional[Dict[str, Any]]:
    """
    Start a new run every analysis interval.

    With automatic=True, Docket starts and reschedules this task whenever a
    worker is running.
    """
    if not settings.schedule_enabled:
        return None
    return await start_run_task()


@pipeline_task
async def scheduled_daily_task(
    global_limit="daily",  # Need a sentinel value for concurrency limit argument
    perpetual: Perpetual = Perpetual(every=timedelta(hours=24), automatic=True),
    concurrency: ConcurrencyLimit = ConcurrencyLimit("global_limit", max_concurrent=1),
) -> Optional[Dict[str, Any]]:
    """Compute yesterday's rollup once a day."""
    if not settings.schedule_enabled:
        return None
    return await daily_aggregate_task()

"""CLI commands for running pipeline stages."""

import asyncio
from typing import Optional

import click
from ulid import ULID

from ..pipelines.orchestrator import PipelineOrchestrator
from ..pipelines.stages import DailyAggregatorStage, FetcherStage, StageContext


@click.group()
def pipeline():
    """Pipeline commands for runs and daily rollups."""
    pass


@pipeline.command()
@click.option("--run-id", help="Run identifier (generated when omitted)")
@click.option("--interval", type=int, help="Window length in minutes")
@click.option("--dry-run/--live", default=None, help="Override the dry-run parameter")
def run(run_id: Optional[str], interval: Optional[int], dry_run: Optional[bool]):
    """Run every stage of one run locally."""
    click.echo("🚀 Starting pipeline run...")

    async def _run():
        ctx = StageContext(dry_run=dry_run)
        try:
            results = await PipelineOrchestrator(ctx).run_full_pipeline(run_id, interval)

            fetch = results["fetcher"]
            analysis = results["analyzer"]
            poster = results["poster"]
            click.echo("✅ Pipeline completed!")
            click.echo(f"   Run: {results['run_id']}")
            click.echo(f"   Cutoff: {results['orchestrator']['cutoff_time']}")
            click.echo(
                f"   Posts: {fetch['total_posts']} in {fetch['invocations']} fetch invocation(s)"
            )
            click.echo(
                f"   Sentiment: {analysis['overall_sentiment']} "
                f"({analysis['net_sentiment_percentage']:+.1f}%)"
            )
            if poster.get("skipped"):
                click.echo(f"   ⏭️  Post skipped: {poster['skipped']}")
            elif poster.get("posted"):
                click.echo(f"   📣 Published: {poster['published_uri']}")
            else:
                click.echo("   📝 Dry run, summary not published:")
                click.echo(poster["text"])
            return results
        except Exception as e:
            click.echo(f"❌ Pipeline failed: {e}")
            raise
        finally:
            await ctx.aclose()

    asyncio.run(_run())


@pipeline.command()
@click.option("--interval", type=int, help="Window length in minutes")
def start(interval: Optional[int]):
    """Queue a new run on the Docket workers."""

    async def _start():
        from ..core.docket_tasks import enqueue, start_run_task

        await enqueue(start_run_task, key=f"start:manual:{ULID()}", interval_minutes=interval)

    asyncio.run(_start())
    click.echo("✅ Run queued")


@pipeline.command()
@click.argument("run_id")
def fetch(run_id: str):
    """Run one fetch invocation for RUN_ID."""

    async def _fetch():
        ctx = StageContext()
        try:
            return await FetcherStage(ctx).run(run_id)
        finally:
            await ctx.aclose()

    result = asyncio.run(_fetch())
    click.echo(f"✅ Fetched {result['fetched']} posts (total {result['total_posts']})")
    if "stop_reason" in result:
        click.echo(f"   Stopped on: {result['stop_reason']}")
    click.echo(f"   More posts: {'yes' if result['has_more'] else 'no'}")


@pipeline.command()
@click.option("--date", "day", help="Date to aggregate (YYYY-MM-DD), defaults to yesterday")
def daily(day: Optional[str]):
    """Compute the daily rollup for a date."""

    async def _daily():
        ctx = StageContext()
        try:
            return await DailyAggregatorStage(ctx).run(day)
        finally:
            await ctx.aclose()

    result = asyncio.run(_daily())
    if not result["computed"]:
        click.echo(f"⚠️  {result['reason']}")
        return
    click.echo(f"✅ Daily aggregate for {result['date']}")
    click.echo(
        f"   Net sentiment: avg {result['average_net_sentiment']:+.1f}% "
        f"(min {result['min_net_sentiment']:+.1f}%, max {result['max_net_sentiment']:+.1f}%)"
    )
    click.echo(f"   Runs: {result['total_runs']}, posts: {result['total_posts']}")

"""Run state inspection CLI commands."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import click
from rich.console import Console
from pydantic import ValidationError
from rich.table import Table

from hourstats.core.daily import DailyAggregateStore
from hourstats.core.errors import RunStateNotFoundError
from hourstats.core.history import Observation, ObservationStore
from hourstats.core.redis import get_redis_client
from hourstats.core.run_state import RunStateManager, Stage


@click.group()
def runs():
    """Run state and history commands."""
    pass


@runs.command("list")
@click.option("--limit", "-l", default=20, help="Number of runs to show")
def runs_list(limit: int):
    """List recent runs with their latest stage."""

    async def _list():
        client = get_redis_client()
        try:
            return await RunStateManager(redis_client=client).list_runs(limit=limit)
        finally:
            await client.aclose()

    states = asyncio.run(_list())
    if not states:
        click.echo("No runs found")
        return

    table = Table(title="Runs")
    table.add_column("Run", no_wrap=True)
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Posts", justify="right")
    table.add_column("Sentiment")
    table.add_column("Created")
    for state in states:
        sentiment = (
            f"{state.summary.overall_sentiment} {state.summary.net_sentiment_percentage:+.1f}%"
            if state.summary
            else "-"
        )
        table.add_row(
            state.run_id,
            state.stage.value,
            state.status.value,
            str(state.total_posts_retrieved),
            sentiment,
            state.created_at.isoformat(timespec="seconds"),
        )
    Console().print(table)


@runs.command("show")
@click.argument("run_id")
@click.option(
    "--stage",
    type=click.Choice([s.value for s in Stage], case_sensitive=False),
    help="Show one stage row instead of the latest",
)
def runs_show(run_id: str, stage: str | None):
    """Show the state row of a run."""

    async def _show():
        client = get_redis_client()
        manager = RunStateManager(redis_client=client)
        try:
            if stage:
                return await manager.get_run(run_id, Stage(stage))
            return await manager.get_latest_run(run_id)
        finally:
            await client.aclose()

    try:
        state = asyncio.run(_show())
    except RunStateNotFoundError as e:
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    click.echo(state.model_dump_json(indent=2))


@runs.command("stats")
def runs_stats():
    """Count stored runs by stage and status."""

    async def _stats():
        client = get_redis_client()
        try:
            return await RunStateManager(redis_client=client).get_run_stats()
        finally:
            await client.aclose()

    stats = asyncio.run(_stats())
    click.echo(f"Runs: {stats['total']['runs']}")
    for section in ("by_stage", "by_status"):
        click.echo(f"{section.replace('_', ' ').title()}:")
        for name, count in sorted(stats[section].items()):
            click.echo(f"   {name}: {count}")


@runs.command("history")
@click.option("--hours", default=24, help="How far back to read observations")
def runs_history(hours: int):
    """Show sentiment observations from the last N hours."""

    async def _history():
        client = get_redis_client()
        try:
            return await ObservationStore(redis_client=client).get_history(
                timedelta(hours=hours)
            )
        finally:
            await client.aclose()

    observations = asyncio.run(_history())
    if not observations:
        click.echo(f"No observations in the last {hours}h")
        return
    for obs in observations:
        click.echo(
            f"{obs.timestamp.isoformat(timespec='minutes')}  {obs.net_sentiment_percent:+6.1f}%  "
            f"{obs.sentiment_category:<8}  {obs.total_posts:>6} posts  {obs.run_id}"
        )


@runs.command("daily-history")
@click.option("--days", default=7, help="Number of past days to show")
def runs_daily_history(days: int):
    """Show stored daily rollups."""

    async def _daily():
        client = get_redis_client()
        try:
            return await DailyAggregateStore(redis_client=client).get_daily_history(days)
        finally:
            await client.aclose()

    rows = asyncio.run(_daily())
    if not rows:
        click.echo("No daily aggregates found")
        return
    for row in rows:
        click.echo(
            f"{row.date}  avg {row.average_net_sentiment:+6.1f}%  "
            f"[{row.min_net_sentiment:+.1f}, {row.max_net_sentiment:+.1f}]  "
            f"{row.total_runs} runs  {row.total_posts} posts"
        )


def observation_key(obs: Observation) -> str:
    """``run_id#timestamp`` reference accepted by ``observations delete``."""
    return f"{obs.run_id}#{obs.timestamp.isoformat(timespec='seconds')}"


def parse_observation_key(value: str) -> tuple[str, datetime]:
    run_id, sep, stamp = value.rpartition("#")
    if not sep or not run_id:
        raise click.BadParameter(f"expected RUN_ID#TIMESTAMP, got {value!r}")
    try:
        timestamp = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
    except ValueError as e:
        raise click.BadParameter(f"invalid timestamp {stamp!r}") from e
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return run_id, timestamp


@runs.group()
def observations():
    """Manage stored sentiment observations."""
    pass


@observations.command("list")
@click.option("--hours", default=48, help="How far back to read observations")
@click.option("--run-id", help="Only show observations of this run")
def observations_list(hours: int, run_id: str | None):
    """List observations with the key used to delete them."""

    async def _list():
        client = get_redis_client()
        store = ObservationStore(redis_client=client)
        try:
            if run_id:
                return await store.get_history_for_run(run_id)
            return await store.get_history(timedelta(hours=hours))
        finally:
            await client.aclose()

    rows = asyncio.run(_list())
    if not rows:
        click.echo("No observations found")
        return

    click.echo(f"📋 Found {len(rows)} observation(s):")
    for index, obs in enumerate(rows, start=1):
        click.echo(f"{index}. Key: {observation_key(obs)}")
        click.echo(f"   Net sentiment: {obs.net_sentiment_percent:+.2f}%")
        click.echo(f"   Total posts: {obs.total_posts}")
        click.echo(f"   Category: {obs.sentiment_category}")


@observations.command("delete")
@click.argument("key")
def observations_delete(key: str):
    """Delete the observation RUN_ID#TIMESTAMP and print it for restoring."""
    run_id, timestamp = parse_observation_key(key)

    async def _delete():
        client = get_redis_client()
        try:
            return await ObservationStore(redis_client=client).delete_observation(
                timestamp, run_id
            )
        finally:
            await client.aclose()

    deleted = asyncio.run(_delete())
    if deleted is None:
        click.echo(f"❌ Observation {key} not found")
        raise SystemExit(1)

    click.echo(f"🗑️  Deleted observation {key}")
    click.echo("Save this JSON to restore it with 'runs observations restore':")
    click.echo(deleted.model_dump_json(indent=2))


@observations.command("restore")
@click.argument("payload")
def observations_restore(payload: str):
    """Store an observation from the JSON printed by 'delete'."""
    try:
        observation = Observation.model_validate_json(payload)
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint="PAYLOAD") from e

    # Retention restarts from now
    observation = observation.model_copy(update={"created_at": None, "ttl": None})

    async def _restore():
        client = get_redis_client()
        try:
            return await ObservationStore(redis_client=client).store_observation(observation)
        finally:
            await client.aclose()

    stored = asyncio.run(_restore())
    click.echo(f"✅ Restored observation {observation_key(stored)}")
    click.echo(f"   Net sentiment: {stored.net_sentiment_percent:+.2f}%")

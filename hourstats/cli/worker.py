"""Top-level `worker` CLI command."""

from __future__ import annotations

import asyncio

import click

from hourstats.core.config import settings


@click.command()
@click.option("--concurrency", "-c", default=None, type=int, help="Number of concurrent tasks")
def worker(concurrency: int | None):
    """Start the background worker."""
    if not settings.redis_url or not settings.redis_url.get_secret_value():
        click.echo("❌ Redis URL not configured")
        raise SystemExit(1)

    from hourstats.worker import main as worker_main

    try:
        asyncio.run(worker_main(concurrency))
    except KeyboardInterrupt:
        click.echo("\nhourstats worker stopped by user")
    except Exception as e:
        click.echo(f"Unexpected worker error: {e}")
        raise

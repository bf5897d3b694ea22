"""Pipeline parameter CLI commands."""

import asyncio

import click
from pydantic import ValidationError

from hourstats.core.redis import get_redis_client
from hourstats.core.secrets import (
    PipelineConfig,
    RedisParameterSource,
    default_secret_source,
    load_pipeline_config,
)


@click.group()
def params():
    """Runtime pipeline parameters stored in Redis."""
    pass


@params.command("show")
def params_show():
    """Show the effective pipeline parameters."""

    async def _show():
        client = get_redis_client()
        try:
            return await load_pipeline_config(default_secret_source(client))
        finally:
            await client.aclose()

    config = asyncio.run(_show())
    for name, value in config.model_dump().items():
        click.echo(f"{name}: {value}")


@params.command("set")
@click.argument("name", type=click.Choice(list(PipelineConfig.model_fields)))
@click.argument("value")
def params_set(name: str, value: str):
    """Set parameter NAME to VALUE."""
    try:
        PipelineConfig.model_validate({name: value})
    except ValidationError as e:
        message = e.errors()[0]["msg"] if e.errors() else str(e)
        raise click.BadParameter(f"{value!r}: {message}", param_hint="VALUE") from e

    async def _set():
        client = get_redis_client()
        try:
            await RedisParameterSource(redis_client=client).set(name, value)
        finally:
            await client.aclose()

    asyncio.run(_set())
    click.echo(f"✅ {name} = {value}")


@params.command("unset")
@click.argument("name", type=click.Choice(list(PipelineConfig.model_fields)))
def params_unset(name: str):
    """Remove parameter NAME so the default applies."""

    async def _unset():
        client = get_redis_client()
        try:
            return await RedisParameterSource(redis_client=client).delete(name)
        finally:
            await client.aclose()

    if asyncio.run(_unset()):
        click.echo(f"✅ {name} removed")
    else:
        click.echo(f"{name} was not set")

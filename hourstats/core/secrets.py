"""Secret and parameter lookup.

A source maps a name to a value or raises ``SecretNotFoundError``. Stage drivers
resolve their runtime parameters through ``load_pipeline_config`` so that the
parameters can be changed in Redis without redeploying the worker.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Protocol

from pydantic import BaseModel, SecretStr
from redis.asyncio import Redis

from .config import Settings, settings
from .errors import SecretNotFoundError
from .keys import RedisKeys
from .redis import get_redis_client

logger = logging.getLogger(__name__)


class SecretSource(Protocol):
    async def get(self, name: str) -> str:
        """Return the value of ``name`` or raise ``SecretNotFoundError``."""
        ...


class SettingsSecretSource:
    """Reads values from the application settings (environment / .env)."""

    def __init__(self, app_settings: Optional[Settings] = None):
        self._settings = app_settings or settings

    async def get(self, name: str) -> str:
        value = getattr(self._settings, name.lower(), None)
        if value is None:
            raise SecretNotFoundError(name)
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        if isinstance(value, bool):
            return "true" if value else "false"
        if value == "":
            raise SecretNotFoundError(name)
        return str(value)


class RedisParameterSource:
    """Reads parameters from the shared pipeline config hash."""

    def __init__(self, redis_url: Optional[str] = None, redis_client: Optional[Redis] = None):
        self._redis_url = redis_url
        self._redis_client = redis_client

    async def _get_client(self) -> Redis:
        """Get Redis client (lazy initialization)."""
        if self._redis_client is None:
            self._redis_client = get_redis_client(self._redis_url)
        return self._redis_client

    async def get(self, name: str) -> str:
        client = await self._get_client()
        raw = await client.hget(RedisKeys.pipeline_config(), name)
        if raw is None:
            raise SecretNotFoundError(name)
        return raw.decode() if isinstance(raw, bytes) else str(raw)

    async def set(self, name: str, value: Any) -> None:
        client = await self._get_client()
        if isinstance(value, bool):
            value = "true" if value else "false"
        await client.hset(RedisKeys.pipeline_config(), name, str(value))

    async def delete(self, name: str) -> bool:
        client = await self._get_client()
        return bool(await client.hdel(RedisKeys.pipeline_config(), name))


class ChainedSecretSource:
    """Tries each source in order; the first hit wins."""

    def __init__(self, sources: Iterable[SecretSource]):
        self.sources = list(sources)

    async def get(self, name: str) -> str:
        for source in self.sources:
            try:
                return await source.get(name)
            except SecretNotFoundError:
                continue
        raise SecretNotFoundError(name)


class PipelineConfig(BaseModel):
    """Runtime parameters of one pipeline run."""

    analysis_interval_minutes: int = 30
    top_posts_count: int = 5
    min_engagement_score: float = 10
    dry_run: bool = False


def default_secret_source(redis_client: Optional[Redis] = None) -> SecretSource:
    return ChainedSecretSource(
        [RedisParameterSource(redis_client=redis_client), SettingsSecretSource()]
    )


async def load_pipeline_config(source: Optional[SecretSource] = None) -> PipelineConfig:
    """Resolve every ``PipelineConfig`` field through ``source``.

    Fields the source does not know keep their defaults.
    """
    source = source or default_secret_source()
    values: Dict[str, str] = {}
    for name in PipelineConfig.model_fields:
        try:
            values[name] = await source.get(name)
        except SecretNotFoundError:
            logger.debug(f"Parameter {name} not set, using default")
    config = PipelineConfig.model_validate(values)
    logger.debug(f"Pipeline config: {config.model_dump()}")
    return config

"""Unit tests for Redis helpers."""

from unittest.mock import AsyncMock, patch

import pytest

from redis.exceptions import ConnectionError as RedisConnectionError

from hourstats.core import redis as redis_helpers
from hourstats.core.config import settings
from hourstats.core.redis import mget_chunked, scan_keys


@pytest.fixture
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(settings, "store_initial_delay", 0)


class TestScanKeys:
    @pytest.mark.asyncio
    async def test_follows_cursor_until_zero(self):
        client = AsyncMock()
        client.scan.side_effect = [
            (17, [b"p:a", b"p:b"]),
            (42, []),
            (0, [b"p:c"]),
        ]

        keys = [key async for key in scan_keys(client, "p:*", count=2)]

        assert keys == ["p:a", "p:b", "p:c"]
        assert [c.kwargs["cursor"] for c in client.scan.await_args_list] == [0, 17, 42]

    @pytest.mark.asyncio
    async def test_deduplicates_keys_returned_twice(self):
        client = AsyncMock()
        client.scan.side_effect = [(5, [b"p:a", b"p:b"]), (0, [b"p:b", b"p:c"])]

        assert [key async for key in scan_keys(client, "p:*")] == ["p:a", "p:b", "p:c"]

    @pytest.mark.asyncio
    async def test_reads_every_key_beyond_one_page(self, redis_client):
        for i in range(1200):
            await redis_client.set(f"scan-test:{i}", i)
        await redis_client.set("other:1", 1)

        keys = [key async for key in scan_keys(redis_client, "scan-test:*", count=50)]

        assert len(keys) == 1200

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, no_retry_delay):
        client = AsyncMock()
        client.scan.side_effect = [
            (5, [b"p:a"]),
            RedisConnectionError("connection reset"),
            (0, [b"p:b"]),
        ]

        keys = [key async for key in scan_keys(client, "p:*")]

        assert keys == ["p:a", "p:b"]
        assert [c.kwargs["cursor"] for c in client.scan.await_args_list] == [0, 5, 5]


class TestMgetChunked:
    @pytest.mark.asyncio
    async def test_preserves_order_across_chunks(self, redis_client):
        keys = [f"k:{i}" for i in range(7)]
        for i, key in enumerate(keys):
            if i != 3:
                await redis_client.set(key, str(i))

        values = await mget_chunked(redis_client, keys, chunk_size=3)

        assert values[:3] == [b"0", b"1", b"2"]
        assert values[3] is None
        assert values[6] == b"6"

    @pytest.mark.asyncio
    async def test_empty_keys(self, redis_client):
        assert await mget_chunked(redis_client, []) == []

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, no_retry_delay):
        client = AsyncMock()
        client.mget.side_effect = [
            [b"1", b"2"],
            RedisConnectionError("connection reset"),
            [b"3"],
        ]

        values = await mget_chunked(client, ["a", "b", "c"], chunk_size=2)

        assert values == [b"1", b"2", b"3"]
        assert client.mget.await_args_list[2].args == (["c"],)


class TestRedisConnection:
    @pytest.mark.asyncio
    async def test_connection_failure_returns_false(self):
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch("hourstats.core.redis.get_redis_client", return_value=client):
            assert await redis_helpers.test_redis_connection() is False

    @pytest.mark.asyncio
    async def test_connection_success(self):
        client = AsyncMock()
        with patch("hourstats.core.redis.get_redis_client", return_value=client):
            assert await redis_helpers.test_redis_connection() is True
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_initialize_reports_unavailable_redis(self):
        with (
            patch("hourstats.core.redis.test_redis_connection", new_callable=AsyncMock) as ping,
            patch("hourstats.core.redis.initialize_docket", new_callable=AsyncMock) as docket,
        ):
            ping.return_value = False
            status = await redis_helpers.initialize_redis()

        assert status == {
            "redis_connection": "unavailable",
            "docket_infrastructure": "unavailable",
        }
        docket.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_initialize_checks_docket(self):
        with (
            patch("hourstats.core.redis.test_redis_connection", new_callable=AsyncMock) as ping,
            patch("hourstats.core.redis.initialize_docket", new_callable=AsyncMock) as docket,
        ):
            ping.return_value = True
            docket.return_value = True
            status = await redis_helpers.initialize_redis()

        assert status["docket_infrastructure"] == "available"

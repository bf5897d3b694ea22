"""
Test configuration and fixtures for hourstats.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio

# Test environment variables - only set if not already present
test_env = {
    "APP_NAME": "hourstats-test",
    "KEY_PREFIX": "hourstats-test",
    "SCHEDULE_ENABLED": "false",
}

# Set default REDIS_URL for unit tests (will be overridden by redis_container for integration tests)
if not os.environ.get("REDIS_URL"):
    test_env["REDIS_URL"] = "redis://localhost:6379/0"

for _name, _value in test_env.items():
    os.environ.setdefault(_name, _value)

from hourstats.feed.models import FeedItem, FeedPage  # noqa: E402


def pytest_addoption(parser):
    """Add custom pytest command-line options."""
    parser.addoption(
        "--run-api-tests",
        action="store_true",
        default=False,
        help="Run integration tests against a real Redis container",
    )


def pytest_collection_modifyitems(config, items):
    """Add skip markers to tests based on configuration."""
    skip_integration = pytest.mark.skip(reason="Use --run-api-tests to run integration tests")

    for item in items:
        # Require --run-api-tests for integration tests and attach redis container fixture
        if "integration" in item.keywords:
            if not config.getoption("--run-api-tests"):
                item.add_marker(skip_integration)
                continue
            item.fixturenames.append("redis_container")


@pytest.fixture(scope="session")
def redis_container():
    """Start a Redis container for the integration session and point REDIS_URL at it."""
    from testcontainers.redis import RedisContainer

    container = RedisContainer("redis:7-alpine")
    container.start()

    host = container.get_container_host_ip()
    port = container.get_exposed_port(6379)
    old_redis_url = os.environ.get("REDIS_URL")
    os.environ["REDIS_URL"] = f"redis://{host}:{port}/0"

    yield os.environ["REDIS_URL"]

    container.stop()
    if old_redis_url is not None:
        os.environ["REDIS_URL"] = old_redis_url


@pytest_asyncio.fixture
async def redis_client():
    """In-memory async Redis for unit tests."""
    import fakeredis

    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.flushall()
    await client.aclose()


class FakeClock:
    """Wall clock that only moves when told to.

    Starts at the real current time so that absolute expiry times written by the
    stores lie in the future.
    """

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class TickClock:
    """Monotonic clock advancing ``step`` seconds on every read."""

    def __init__(self, step: float = 0.0):
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.value
        self.value += self.step
        return value


class FakeFeed:
    """Newest-first feed paged by numeric offset cursors."""

    def __init__(self, items: List[FeedItem], page_size: int = 10, errors=None):
        self.items = sorted(items, key=lambda item: item.created_at, reverse=True)
        self.page_size = page_size
        self.errors = dict(errors or {})
        self.requests: List[Optional[str]] = []

    async def fetch_page(self, cursor: Optional[str], since: datetime) -> FeedPage:
        self.requests.append(cursor)
        error = self.errors.get(cursor or "")
        if error is not None:
            raise error
        offset = int(cursor) if cursor else 0
        chunk = self.items[offset : offset + self.page_size]
        next_offset = offset + self.page_size
        has_more = next_offset < len(self.items)
        return FeedPage(
            items=chunk,
            next_cursor=str(next_offset) if has_more else None,
            has_more=has_more,
        )


class RecordingPublisher:
    def __init__(self):
        self.published: List[str] = []

    async def publish(self, text: str) -> str:
        self.published.append(text)
        return f"at://did:plc:test/app.bsky.feed.post/{len(self.published)}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tick_clock():
    return TickClock


@pytest.fixture
def make_item(clock):
    """Build a feed item ``minutes_ago`` minutes before the test clock."""

    def _make(index: int, minutes_ago: float, text: str = "", likes: int = 0, **kwargs):
        return FeedItem(
            uri=f"at://did:plc:author{index}/app.bsky.feed.post/{index}",
            author=f"user{index}.bsky.social",
            text=text or f"post number {index}",
            created_at=clock() - timedelta(minutes=minutes_ago),
            likes=likes,
            **kwargs,
        )

    return _make


@pytest.fixture
def feed_factory():
    return FakeFeed


@pytest.fixture
def publisher():
    return RecordingPublisher()

"""Bluesky search feed client and publisher.

The fetch loop only depends on the ``FeedClient`` protocol. ``BlueskyFeedClient``
implements it over the AT Protocol XRPC ``app.bsky.feed.searchPosts`` endpoint
with ``sort=latest``, which returns posts newest first.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from hourstats.core.config import settings
from hourstats.core.errors import SecretNotFoundError
from hourstats.core.secrets import SecretSource, SettingsSecretSource

from .errors import (
    FeedAuthError,
    FeedError,
    FeedUnavailableError,
    PaginationLimitError,
    RateLimitedError,
)
from .models import FeedItem, FeedPage

logger = logging.getLogger(__name__)

ADULT_LABELS = frozenset({"porn", "sexual", "nudity", "graphic-media"})
MAX_POST_LENGTH = 300


class FeedClient(Protocol):
    async def fetch_page(self, cursor: Optional[str], since: datetime) -> FeedPage:
        """Fetch one page of items newer than ``since``, starting at ``cursor``."""
        ...


class Publisher(Protocol):
    async def publish(self, text: str) -> str:
        """Publish ``text`` and return a reference to the published record."""
        ...


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def error_code(response: httpx.Response) -> Optional[str]:
    """The XRPC ``error`` field of a failed response, if any."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        return payload.get("error")
    return None


def is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code in (429, 502):
        return True
    return response.status_code >= 400 and error_code(response) == "RateLimitExceeded"


def is_pagination_limit(response: httpx.Response, cursor: Optional[str]) -> bool:
    return (
        response.status_code == 400
        and bool(cursor)
        and error_code(response) == "InvalidRequest"
    )


class BlueskySession:
    """Authenticated XRPC session shared by the client and the publisher."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        secrets: Optional[SecretSource] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.bluesky_base_url).rstrip("/")
        self.secrets = secrets or SettingsSecretSource()
        self.timeout = timeout or settings.feed_request_timeout_seconds
        self._client = http_client
        self._access_jwt: Optional[str] = None
        self.did: Optional[str] = None

    def get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client (lazy initialization)."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def login(self) -> None:
        """Create a session with the configured handle and app password."""
        try:
            handle = await self.secrets.get("bluesky_handle")
            password = await self.secrets.get("bluesky_password")
        except SecretNotFoundError as e:
            raise FeedAuthError(f"Bluesky credentials not configured: {e}") from e

        response = await self.get_client().post(
            "/com.atproto.server.createSession",
            json={"identifier": handle, "password": password},
        )
        if response.status_code != 200:
            raise FeedAuthError(
                f"Bluesky authentication failed: HTTP {response.status_code}: {response.text}"
            )
        payload = response.json()
        self._access_jwt = payload["accessJwt"]
        self.did = payload.get("did")
        logger.info(f"Authenticated to Bluesky as {handle}")

    async def auth_headers(self) -> Dict[str, str]:
        if self._access_jwt is None:
            await self.login()
        return {"Authorization": f"Bearer {self._access_jwt}"}

    def reset(self) -> None:
        self._access_jwt = None

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self):
        """Support async context manager (no-op, client is lazily initialized)."""
        return self

    async def __aexit__(self, _exc_type, _exc_val, _exc_tb):
        """Support async context manager - cleanup HTTP client."""
        await self.aclose()


class BlueskyFeedClient:
    """``FeedClient`` over ``app.bsky.feed.searchPosts``."""

    def __init__(
        self,
        session: Optional[BlueskySession] = None,
        query: Optional[str] = None,
        lang: Optional[str] = None,
        page_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_wait: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session or BlueskySession()
        self.query = query or settings.feed_query
        self.lang = lang or settings.feed_lang
        self.page_size = page_size or settings.feed_page_size
        self.max_retries = settings.feed_max_retries if max_retries is None else max_retries
        self.retry_wait = settings.feed_rate_limit_wait_seconds if retry_wait is None else retry_wait
        self._sleep = sleep

    async def fetch_page(self, cursor: Optional[str], since: datetime) -> FeedPage:
        params: Dict[str, Any] = {
            "q": self.query,
            "sort": "latest",
            "since": since.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "limit": self.page_size,
        }
        if self.lang:
            params["lang"] = self.lang
        if cursor:
            params["cursor"] = cursor

        payload = await self._search(params, cursor)
        items = self._parse_items(payload.get("posts") or [])
        next_cursor = payload.get("cursor") or None
        return FeedPage(items=items, next_cursor=next_cursor, has_more=bool(next_cursor))

    async def _search(self, params: Dict[str, Any], cursor: Optional[str]) -> Dict[str, Any]:
        reauthenticated = False
        attempt = 0
        while True:
            try:
                response = await self.session.get_client().get(
                    "/app.bsky.feed.searchPosts",
                    params=params,
                    headers=await self.session.auth_headers(),
                )
            except httpx.TimeoutException as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise FeedUnavailableError(f"Feed timed out after {attempt} attempts") from e
                wait = self.retry_wait * attempt
                logger.warning(f"Feed request timed out, retrying in {wait:.0f}s")
                await self._sleep(wait)
                continue

            if response.status_code == 200:
                return response.json()

            if response.status_code == 401 and not reauthenticated:
                logger.info("Bluesky session expired, re-authenticating")
                self.session.reset()
                reauthenticated = True
                continue

            if is_pagination_limit(response, cursor):
                raise PaginationLimitError(f"Feed refused cursor {cursor}: {response.text}")

            if is_rate_limited(response):
                attempt += 1
                if attempt > self.max_retries:
                    raise RateLimitedError(
                        f"Feed rate limited after {self.max_retries} retries: "
                        f"HTTP {response.status_code}"
                    )
                logger.warning(
                    f"Feed rate limited (HTTP {response.status_code}), "
                    f"retry {attempt}/{self.max_retries} in {self.retry_wait:.0f}s"
                )
                await self._sleep(self.retry_wait)
                continue

            if response.status_code >= 500:
                attempt += 1
                if attempt > self.max_retries:
                    raise FeedUnavailableError(
                        f"Feed unavailable: HTTP {response.status_code}: {response.text}"
                    )
                await self._sleep(self.retry_wait * attempt)
                continue

            if response.status_code == 401:
                raise FeedAuthError(f"Feed rejected credentials: {response.text}")
            raise FeedError(f"Feed request failed: HTTP {response.status_code}: {response.text}")

    def _parse_items(self, posts: List[Dict[str, Any]]) -> List[FeedItem]:
        items = []
        for post in posts:
            labels = [label.get("val", "") for label in post.get("labels") or []]
            if ADULT_LABELS.intersection(labels):
                continue

            record = post.get("record") or {}
            created_at = parse_timestamp(record.get("createdAt")) or parse_timestamp(
                post.get("indexedAt")
            )
            if created_at is None:
                logger.warning(f"Skipping post with unparsable timestamp: {post.get('uri')}")
                continue

            items.append(
                FeedItem(
                    uri=post["uri"],
                    author=(post.get("author") or {}).get("handle", "unknown"),
                    text=record.get("text", ""),
                    created_at=created_at,
                    likes=post.get("likeCount", 0) or 0,
                    reposts=post.get("repostCount", 0) or 0,
                    replies=post.get("replyCount", 0) or 0,
                    labels=labels,
                )
            )
        return items


class BlueskyPublisher:
    """``Publisher`` creating ``app.bsky.feed.post`` records."""

    def __init__(self, session: Optional[BlueskySession] = None):
        self.session = session or BlueskySession()

    async def publish(self, text: str) -> str:
        if len(text) > MAX_POST_LENGTH:
            text = text[: MAX_POST_LENGTH - 1] + "…"

        headers = await self.session.auth_headers()
        record = {
            "$type": "app.bsky.feed.post",
            "text": text,
            "createdAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        response = await self.session.get_client().post(
            "/com.atproto.repo.createRecord",
            json={"repo": self.session.did, "collection": "app.bsky.feed.post", "record": record},
            headers=headers,
        )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Failed to publish post: HTTP {e.response.status_code}: {e.response.text}")
            raise FeedError(f"Publish failed: HTTP {e.response.status_code}") from e

        uri = response.json()["uri"]
        logger.info(f"Published summary post {uri}")
        return uri

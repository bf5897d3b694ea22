"""Feed collaborators: paged search client and summary publisher."""

from .client import BlueskyFeedClient, BlueskyPublisher, FeedClient, Publisher
from .errors import (
    FeedAuthError,
    FeedError,
    FeedUnavailableError,
    PaginationLimitError,
    RateLimitedError,
)
from .models import FeedItem, FeedPage

__all__ = [
    "BlueskyFeedClient",
    "BlueskyPublisher",
    "FeedAuthError",
    "FeedClient",
    "FeedError",
    "FeedItem",
    "FeedPage",
    "FeedUnavailableError",
    "PaginationLimitError",
    "Publisher",
    "RateLimitedError",
]

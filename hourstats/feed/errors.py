"""Feed error taxonomy."""


class FeedError(Exception):
    """Base class for feed failures."""


class RateLimitedError(FeedError):
    """The feed kept rate limiting after the bounded retries."""


class PaginationLimitError(FeedError):
    """The feed refused to paginate any deeper."""


class FeedUnavailableError(FeedError):
    """The feed failed or timed out after the bounded retries."""


class FeedAuthError(FeedError):
    """Credentials were missing or rejected."""

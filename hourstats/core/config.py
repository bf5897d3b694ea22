"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE_OPT: str | None = None

TWO_DAYS_IN_SECONDS = 2 * 24 * 60 * 60
FOURTEEN_DAYS_IN_SECONDS = 14 * 24 * 60 * 60
THREE_YEARS_IN_SECONDS = 1095 * 24 * 60 * 60

# Only load .env if it exists (for local development)
_env_path = Path(".env")
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path)
    ENV_FILE_OPT = str(_env_path)


class Settings(BaseSettings):
    """Application configuration.

    Loads settings from environment variables. In local development, these can be
    provided via a .env file. In Docker/production, they should be set directly.
    """

    model_config = SettingsConfigDict(
        # Only hint an env file to pydantic if it actually exists
        env_file=ENV_FILE_OPT,
        env_file_encoding="utf-8",
        extra="ignore",
        # Don't error if .env file is missing (Docker/production use env vars directly)
        env_ignore_empty=True,
    )

    # Application
    app_name: str = "hourstats"
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Redis
    redis_url: SecretStr = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    redis_password: Optional[SecretStr] = Field(default=None, description="Redis password")
    key_prefix: str = Field(default="hourstats", description="Prefix for every stored key")
    scan_count: int = Field(default=500, description="COUNT hint for paginated SCAN reads")

    # Store retries (transient Redis errors)
    store_max_retries: int = Field(default=3, description="Retries for transient store errors")
    store_initial_delay: float = Field(default=0.5, description="First retry delay in seconds")
    store_backoff_factor: float = Field(default=2.0, description="Retry delay multiplier")
    transaction_max_attempts: int = Field(
        default=5, description="Optimistic transaction attempts before giving up"
    )

    # Retention
    run_ttl_seconds: int = Field(default=TWO_DAYS_IN_SECONDS, description="Run state and batch TTL")
    observation_ttl_seconds: int = Field(
        default=FOURTEEN_DAYS_IN_SECONDS, description="Observation TTL"
    )
    daily_ttl_seconds: int = Field(default=THREE_YEARS_IN_SECONDS, description="Daily rollup TTL")

    # Pipeline
    analysis_interval_minutes: int = Field(
        default=30, description="Length of the rolling window analysed by each run"
    )
    top_posts_count: int = Field(default=5, description="Number of top posts in the summary")
    min_engagement_score: float = Field(
        default=10, description="Minimum engagement for a post to rank as a top post"
    )
    dry_run: bool = Field(default=False, description="Suppress publishing")
    post_batch_size: int = Field(default=100, description="Posts stored per batch row")

    # Fetch loop
    fetch_soft_budget_seconds: float = Field(
        default=600, description="Elapsed time after which the fetch loop may stop early"
    )
    fetch_execution_limit_seconds: float = Field(
        default=900, description="Hard execution deadline of a fetch invocation"
    )
    fetch_safety_margin_seconds: float = Field(
        default=60, description="Time reserved before the deadline for the final state write"
    )
    fetch_min_items: int = Field(
        default=100, description="Items required before the soft budget may stop the loop"
    )
    fetch_max_pages: int = Field(default=200, description="Hard cap on pages per invocation")
    fetch_max_invocations: int = Field(
        default=20, description="Fetch invocations per run before the window is closed"
    )
    fetch_prefetch_width: int = Field(
        default=1, description="Speculative page prefetch width (1 disables prefetch)"
    )

    # Feed
    bluesky_base_url: str = Field(
        default="https://bsky.social/xrpc", description="AT Protocol XRPC base URL"
    )
    bluesky_handle: Optional[str] = Field(default=None, description="Bluesky account handle")
    bluesky_password: Optional[SecretStr] = Field(
        default=None, description="Bluesky app password"
    )
    feed_query: str = Field(default="*", description="Search query for the feed")
    feed_lang: str = Field(default="en", description="Language filter for the feed")
    feed_page_size: int = Field(default=100, description="Items requested per page")
    feed_request_timeout_seconds: float = Field(default=30.0, description="Per-request timeout")
    feed_max_retries: int = Field(default=3, description="Retries for rate limits and timeouts")
    feed_rate_limit_wait_seconds: float = Field(
        default=5.0, description="Wait between rate-limited retries"
    )

    # Docket Task Queue
    docket_name: str = Field(default="hourstats_docket", description="Docket queue name")
    task_timeout: int = Field(default=1200, description="Task redelivery timeout in seconds")
    worker_concurrency: int = Field(default=2, description="Concurrent tasks per worker")
    schedule_enabled: bool = Field(
        default=True, description="Run the perpetual scheduler tasks in the worker"
    )


# Global settings instance
settings = Settings()

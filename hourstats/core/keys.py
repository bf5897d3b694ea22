"""
Redis key construction utilities.

Centralizes all Redis key construction to maintain consistency across the codebase.
"""

import re
from typing import Optional

from .config import settings

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def escape_glob(value: str) -> str:
    """Escape SCAN MATCH metacharacters so ``value`` only matches itself."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class RedisKeys:
    """Utility class for constructing Redis keys with consistent naming conventions."""

    BATCH_INDEX_WIDTH = 6

    @staticmethod
    def prefix() -> str:
        return settings.key_prefix

    # ============================================================================
    # Run state
    # ============================================================================

    @staticmethod
    def run_state(run_id: str, stage: str) -> str:
        """Key for the state row of one (run, stage)."""
        return f"{RedisKeys.prefix()}:run:{run_id}:state:{stage}"

    @staticmethod
    def run_state_pattern(run_id: Optional[str] = None) -> str:
        """Match pattern for state rows of one run, or of every run."""
        return f"{RedisKeys.prefix()}:run:{escape_glob(run_id) if run_id else '*'}:state:*"

    # ============================================================================
    # Post batches
    # ============================================================================

    @staticmethod
    def run_batch(run_id: str, index: int) -> str:
        """Key for one post batch."""
        return f"{RedisKeys.prefix()}:run:{run_id}:batch:{index:0{RedisKeys.BATCH_INDEX_WIDTH}d}"

    @staticmethod
    def run_batch_pattern(run_id: str) -> str:
        """Prefix pattern matching every batch of a run."""
        return f"{RedisKeys.prefix()}:run:{escape_glob(run_id)}:batch:*"

    @staticmethod
    def run_batch_index(run_id: str) -> str:
        """Sorted set of persisted batch indices (score == index)."""
        return f"{RedisKeys.prefix()}:run:{run_id}:batches"

    @staticmethod
    def batch_index_from_key(key: str) -> int:
        return int(key.rsplit(":", 1)[1])

    # ============================================================================
    # Observations and daily rollups
    # ============================================================================

    @staticmethod
    def observation(timestamp: int, run_id: str) -> str:
        """Key for one observation row."""
        return f"{RedisKeys.prefix()}:observation:{timestamp}:{run_id}"

    @staticmethod
    def observation_pattern() -> str:
        return f"{RedisKeys.prefix()}:observation:*"

    @staticmethod
    def daily(date: str) -> str:
        """Key for the rollup of one calendar date (YYYY-MM-DD)."""
        return f"{RedisKeys.prefix()}:daily:{date}"

    # ============================================================================
    # Parameters
    # ============================================================================

    @staticmethod
    def pipeline_config() -> str:
        """Hash holding runtime pipeline parameters."""
        return f"{RedisKeys.prefix()}:config"

#!/usr/bin/env python3
"""
Docket worker for processing pipeline stage tasks.
Run with: python -m hourstats.worker
"""

import asyncio
import logging
import sys
from datetime import timedelta

from docket import Worker

from hourstats.core.config import settings
from hourstats.core.docket_tasks import register_pipeline_tasks
from hourstats.core.redis import initialize_redis

# Configure logging
logging.basicConfig(
    level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def main(concurrency: int | None = None):
    """Run the pipeline Docket worker."""

    if not settings.redis_url or not settings.redis_url.get_secret_value():
        logger.error("❌ Redis URL not configured")
        sys.exit(1)

    logger.info("Starting hourstats Docket worker connected to Redis")

    try:
        status = await initialize_redis()
        logger.info(f"Infrastructure status: {status}")

        # Register tasks first
        await register_pipeline_tasks()
        logger.info("✅ Pipeline tasks registered with Docket")

        logger.info("✅ Worker started, waiting for pipeline tasks...")
        logger.info("Press Ctrl+C to stop")

        await Worker.run(
            docket_name=settings.docket_name,
            url=settings.redis_url.get_secret_value(),
            concurrency=concurrency or settings.worker_concurrency,
            redelivery_timeout=timedelta(seconds=settings.task_timeout),
            tasks=["hourstats.core.docket_tasks:PIPELINE_TASK_COLLECTION"],
        )
    except Exception as e:
        logger.error(f"❌ Worker error: {e}")
        raise


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("\n👋 hourstats worker stopped by user")
    except Exception as e:
        logger.error(f"💥 Unexpected worker error: {e}")
        raise

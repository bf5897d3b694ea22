"""Pipeline orchestrator for running every stage of a run in one process."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from hourstats.core.config import settings

from .stages import (
    AggregatorStage,
    AnalyzerStage,
    FetcherStage,
    OrchestratorStage,
    PosterStage,
    StageContext,
)

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Runs the stage drivers in order against the shared store.

    The Docket tasks run the same drivers as separate invocations; this class
    is the local equivalent used by the CLI.
    """

    def __init__(self, context: Optional[StageContext] = None):
        self.ctx = context or StageContext()
        self.orchestrator = OrchestratorStage(self.ctx)
        self.fetcher = FetcherStage(self.ctx)
        self.analyzer = AnalyzerStage(self.ctx)
        self.aggregator = AggregatorStage(self.ctx)
        self.poster = PosterStage(self.ctx)

    async def run_fetch(self, run_id: str, max_invocations: Optional[int] = None) -> Dict[str, Any]:
        """Invoke the fetcher until the run reports no more posts."""
        max_invocations = max_invocations or settings.fetch_max_invocations
        invocations = 0
        result: Dict[str, Any] = {}
        while invocations < max_invocations:
            invocations += 1
            result = await self.fetcher.run(run_id)
            if not result["has_more"]:
                break
        result["invocations"] = invocations
        return result

    async def run_full_pipeline(
        self, run_id: Optional[str] = None, interval_minutes: Optional[int] = None
    ) -> Dict[str, Any]:
        """Run complete pipeline: create, fetch, analyze, aggregate, post."""
        logger.info("Starting full pipeline")

        pipeline_results: Dict[str, Any] = {
            "pipeline_type": "full",
            "started_at": datetime.now(timezone.utc).isoformat(),
            "success": False,
        }

        try:
            created = await self.orchestrator.run(run_id, interval_minutes)
            run_id = created["run_id"]
            pipeline_results["run_id"] = run_id
            pipeline_results["orchestrator"] = created

            pipeline_results["fetcher"] = await self.run_fetch(run_id)
            pipeline_results["analyzer"] = await self.analyzer.run(run_id)
            pipeline_results["aggregator"] = await self.aggregator.run(run_id)
            pipeline_results["poster"] = await self.poster.run(run_id)

            pipeline_results["completed_at"] = datetime.now(timezone.utc).isoformat()
            pipeline_results["success"] = True

            logger.info(
                f"Full pipeline completed for run {run_id}: "
                f"{pipeline_results['fetcher']['total_posts']} posts"
            )

        except Exception as e:
            logger.error(f"Full pipeline failed: {e}")
            pipeline_results["error"] = str(e)
            pipeline_results["completed_at"] = datetime.now(timezone.utc).isoformat()
            raise

        return pipeline_results

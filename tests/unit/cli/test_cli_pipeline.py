"""Unit tests for pipeline CLI commands."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from hourstats.cli.pipeline import pipeline


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def stage_context():
    ctx = MagicMock()
    ctx.aclose = AsyncMock()
    with patch("hourstats.cli.pipeline.StageContext", return_value=ctx) as factory:
        yield factory


def pipeline_results(poster):
    return {
        "run_id": "run-a",
        "success": True,
        "orchestrator": {"cutoff_time": "2024-05-01T11:30:00+00:00"},
        "fetcher": {"total_posts": 120, "invocations": 2},
        "analyzer": {"overall_sentiment": "positive", "net_sentiment_percentage": 32.5},
        "poster": poster,
    }


class TestPipelineRun:
    def test_dry_run_prints_summary(self, cli_runner, stage_context):
        orchestrator = MagicMock()
        orchestrator.return_value.run_full_pipeline = AsyncMock(
            return_value=pipeline_results({"posted": False, "text": "Bluesky mood +10%"})
        )
        with patch("hourstats.cli.pipeline.PipelineOrchestrator", orchestrator):
            result = cli_runner.invoke(pipeline, ["run", "--dry-run", "--interval", "60"])

        assert result.exit_code == 0, result.output
        assert "Pipeline completed" in result.output
        assert "Posts: 120 in 2 fetch invocation(s)" in result.output
        assert "Bluesky mood +10%" in result.output
        stage_context.assert_called_once_with(dry_run=True)
        orchestrator.return_value.run_full_pipeline.assert_awaited_once_with(None, 60)
        stage_context.return_value.aclose.assert_awaited_once()

    def test_skipped_post(self, cli_runner, stage_context):
        orchestrator = MagicMock()
        orchestrator.return_value.run_full_pipeline = AsyncMock(
            return_value=pipeline_results({"posted": False, "skipped": "no posts"})
        )
        with patch("hourstats.cli.pipeline.PipelineOrchestrator", orchestrator):
            result = cli_runner.invoke(pipeline, ["run"])

        assert "Post skipped: no posts" in result.output
        stage_context.assert_called_once_with(dry_run=None)

    def test_failure_exits_non_zero(self, cli_runner, stage_context):
        orchestrator = MagicMock()
        orchestrator.return_value.run_full_pipeline = AsyncMock(side_effect=RuntimeError("boom"))
        with patch("hourstats.cli.pipeline.PipelineOrchestrator", orchestrator):
            result = cli_runner.invoke(pipeline, ["run"])

        assert result.exit_code != 0
        assert "Pipeline failed: boom" in result.output
        stage_context.return_value.aclose.assert_awaited_once()


class TestPipelineCommands:
    def test_fetch(self, cli_runner, stage_context):
        fetcher = MagicMock()
        fetcher.return_value.run = AsyncMock(
            return_value={
                "fetched": 40,
                "total_posts": 140,
                "stop_reason": "time_budget",
                "has_more": True,
            }
        )
        with patch("hourstats.cli.pipeline.FetcherStage", fetcher):
            result = cli_runner.invoke(pipeline, ["fetch", "run-a"])

        assert result.exit_code == 0, result.output
        assert "Fetched 40 posts (total 140)" in result.output
        assert "time_budget" in result.output
        fetcher.return_value.run.assert_awaited_once_with("run-a")

    def test_daily_without_data(self, cli_runner, stage_context):
        daily = MagicMock()
        daily.return_value.run = AsyncMock(
            return_value={"date": "2024-05-01", "computed": False, "reason": "No observations"}
        )
        with patch("hourstats.cli.pipeline.DailyAggregatorStage", daily):
            result = cli_runner.invoke(pipeline, ["daily", "--date", "2024-05-01"])

        assert result.exit_code == 0
        assert "No observations" in result.output
        daily.return_value.run.assert_awaited_once_with("2024-05-01")

    def test_start_enqueues(self, cli_runner):
        with patch("hourstats.core.docket_tasks.enqueue", new_callable=AsyncMock) as enqueue:
            result = cli_runner.invoke(pipeline, ["start", "--interval", "15"])

        assert result.exit_code == 0, result.output
        assert "Run queued" in result.output
        assert enqueue.await_args.kwargs["interval_minutes"] == 15

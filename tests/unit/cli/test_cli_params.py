"""Unit tests for parameter CLI commands."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner
from pydantic import ValidationError

from hourstats.cli.params import params
from hourstats.core.secrets import PipelineConfig


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def redis_client():
    client = MagicMock()
    client.aclose = AsyncMock()
    with patch("hourstats.cli.params.get_redis_client", return_value=client):
        yield client


class TestParamsCLI:
    def test_show(self, cli_runner):
        with patch(
            "hourstats.cli.params.load_pipeline_config",
            new_callable=AsyncMock,
            return_value=PipelineConfig(top_posts_count=3),
        ):
            result = cli_runner.invoke(params, ["show"])

        assert result.exit_code == 0
        assert "top_posts_count: 3" in result.output

    def test_set(self, cli_runner):
        source = MagicMock()
        source.return_value.set = AsyncMock()
        with patch("hourstats.cli.params.RedisParameterSource", source):
            result = cli_runner.invoke(params, ["set", "dry_run", "true"])

        assert result.exit_code == 0
        source.return_value.set.assert_awaited_once_with("dry_run", "true")

    def test_set_rejects_invalid_value(self, cli_runner):
        source = MagicMock()
        source.return_value.set = AsyncMock()
        with patch("hourstats.cli.params.RedisParameterSource", source):
            result = cli_runner.invoke(params, ["set", "top_posts_count", "many"])

        assert result.exit_code == 2
        assert "Invalid value" in result.output
        assert "Traceback" not in result.output
        assert not isinstance(result.exception, ValidationError)
        source.return_value.set.assert_not_awaited()

    def test_set_rejects_unknown_name(self, cli_runner):
        result = cli_runner.invoke(params, ["set", "bluesky_password", "x"])
        assert result.exit_code == 2

    def test_unset(self, cli_runner):
        source = MagicMock()
        source.return_value.delete = AsyncMock(return_value=False)
        with patch("hourstats.cli.params.RedisParameterSource", source):
            result = cli_runner.invoke(params, ["unset", "dry_run"])

        assert "dry_run was not set" in result.output

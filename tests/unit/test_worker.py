"""Unit tests for the Docket worker."""

from unittest.mock import AsyncMock, patch

import pytest

from hourstats.worker import main


@pytest.fixture
def mock_settings():
    with patch("hourstats.worker.settings") as settings:
        settings.redis_url.get_secret_value.return_value = "redis://localhost:6379/0"
        settings.docket_name = "test_docket"
        settings.worker_concurrency = 2
        settings.task_timeout = 600
        yield settings


class TestWorkerSystem:
    """Test the Docket worker system."""

    @pytest.mark.asyncio
    async def test_worker_startup_success(self, mock_settings):
        with (
            patch("hourstats.worker.initialize_redis", new_callable=AsyncMock),
            patch("hourstats.worker.register_pipeline_tasks", new_callable=AsyncMock) as register,
            patch("hourstats.worker.Worker.run", new_callable=AsyncMock) as run,
        ):
            await main(concurrency=5)

        register.assert_awaited_once()
        kwargs = run.await_args.kwargs
        assert kwargs["docket_name"] == "test_docket"
        assert kwargs["concurrency"] == 5
        assert kwargs["tasks"] == ["hourstats.core.docket_tasks:PIPELINE_TASK_COLLECTION"]

    @pytest.mark.asyncio
    async def test_worker_startup_no_redis_url(self):
        with (
            patch("hourstats.worker.settings") as settings,
            patch("sys.exit", side_effect=SystemExit) as mock_exit,
        ):
            settings.redis_url = None

            with pytest.raises(SystemExit):
                await main()

        mock_exit.assert_called_once_with(1)

    @pytest.mark.asyncio
    async def test_worker_task_registration_failure(self, mock_settings):
        with (
            patch("hourstats.worker.initialize_redis", new_callable=AsyncMock),
            patch(
                "hourstats.worker.register_pipeline_tasks",
                side_effect=Exception("Registration failed"),
            ),
            patch("hourstats.worker.Worker.run", new_callable=AsyncMock) as run,
        ):
            with pytest.raises(Exception, match="Registration failed"):
                await main()

        run.assert_not_awaited()

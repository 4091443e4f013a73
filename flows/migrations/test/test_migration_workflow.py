"""Tests for the database migration flow.

The flow function is called through ``.fn`` so no Prefect run context is
needed; configuration and the runner are mocked.
"""

from unittest.mock import Mock, patch

import pytest

from flows.migrations.workflow import migration_flow
from stackmigrate.config import MigrationSettings
from stackmigrate.errors import ExecutionError
from stackmigrate.runner import MigrationRunResult, RunState

pytestmark = pytest.mark.unit


@pytest.fixture
def settings():
    return MigrationSettings(
        database_name="app_db",
        config_file="migrations.json",
        script_dir="sql",
        max_attempts=3,
        min_wait=1,
        max_wait=4,
    )


@pytest.fixture
def mock_runner():
    runner = Mock()
    runner.run.return_value = MigrationRunResult(
        state=RunState.DONE, applied=["T1"], kept=[]
    )
    runner.run_with_retry.return_value = runner.run.return_value
    return runner


@pytest.fixture
def patched_flow(settings, mock_runner):
    with patch("flows.migrations.workflow.ConfigManager") as mock_config_class, patch(
        "flows.migrations.workflow.MigrationRunner"
    ) as mock_runner_class:
        config_manager = mock_config_class.return_value
        config_manager.environment = "test"
        config_manager.get_migration_config.return_value = settings
        mock_runner_class.from_config.return_value = mock_runner
        yield mock_config_class, mock_runner_class


def test_flow_runs_migrations(patched_flow, settings, mock_runner):
    """Test the flow runs one reconciliation and returns its summary."""
    mock_config_class, mock_runner_class = patched_flow

    summary = migration_flow.fn("app_db", environment="test")

    mock_config_class.assert_called_once_with("test")
    mock_runner_class.from_config.assert_called_once_with(
        "app_db", mock_config_class.return_value, settings
    )
    mock_runner.run.assert_called_once_with()
    mock_runner.run_with_retry.assert_not_called()
    mock_runner.close.assert_called_once()
    assert summary["database_name"] == "app_db"
    assert summary["state"] == "done"
    assert summary["applied"] == ["T1"]


def test_flow_with_retry_uses_configured_backoff(patched_flow, mock_runner):
    """Test retry is driven by the database's migration settings."""
    migration_flow.fn("app_db", with_retry=True)

    mock_runner.run_with_retry.assert_called_once_with(
        max_attempts=3, min_wait=1, max_wait=4
    )
    mock_runner.run.assert_not_called()


def test_flow_closes_runner_on_failure(patched_flow, mock_runner):
    """Test the engine is released when the run fails."""
    mock_runner.run.side_effect = ExecutionError(
        "boom", migration_id="T1", direction="apply"
    )

    with pytest.raises(ExecutionError):
        migration_flow.fn("app_db")

    mock_runner.close.assert_called_once()

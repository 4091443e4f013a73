"""Tests for the command line entry point."""

import json
from unittest.mock import patch

import pytest

import main
from stackmigrate.config import MigrationSettings
from stackmigrate.errors import ChecksumMismatchError
from stackmigrate.runner import MigrationRunResult, RunState

pytestmark = pytest.mark.unit


@pytest.fixture
def settings(tmp_path):
    return MigrationSettings(
        database_name="app_db",
        config_file=tmp_path / "migrations.json",
        script_dir=tmp_path,
    )


@pytest.fixture
def patched_main(settings):
    with patch("main.ConfigManager") as mock_config_class, patch(
        "main.MigrationRunner"
    ) as mock_runner_class:
        config_manager = mock_config_class.return_value
        config_manager.environment = "test"
        config_manager.get_migration_config.return_value = settings
        yield mock_config_class, mock_runner_class.from_config.return_value


class TestMigrateCommand:
    """Test the migrate command."""

    def test_success(self, patched_main, capsys):
        _, runner = patched_main
        runner.run.return_value = MigrationRunResult(
            state=RunState.DONE, reverted=["T3"], applied=["T4"], kept=["T1"]
        )

        exit_code = main.main(["migrate", "--database", "app_db", "-e", "test"])

        output = capsys.readouterr().out
        assert exit_code == 0
        assert "Reverted T3" in output
        assert "Applied T4" in output
        runner.close.assert_called_once()

    def test_retry_flag(self, patched_main):
        _, runner = patched_main
        runner.run_with_retry.return_value = MigrationRunResult(state=RunState.DONE)

        assert main.main(["migrate", "-d", "app_db", "--retry"]) == 0

        runner.run_with_retry.assert_called_once_with(
            max_attempts=2, min_wait=2, max_wait=15
        )

    def test_failure_prints_remediation(self, patched_main, capsys):
        _, runner = patched_main
        runner.run.side_effect = ChecksumMismatchError("T1", "aaa", "bbb")

        exit_code = main.main(["migrate", "-d", "app_db"])

        output = capsys.readouterr().out
        assert exit_code == 1
        assert "checksum mismatch for migration T1" in output
        assert "Restore the original script content" in output
        runner.close.assert_called_once()

    def test_unexpected_error_exit_code(self, patched_main, capsys):
        _, runner = patched_main
        runner.run.side_effect = TypeError("immutabledict is not a sequence")

        exit_code = main.main(["migrate", "-d", "app_db"])

        assert exit_code == 1
        assert "TypeError: immutabledict is not a sequence" in capsys.readouterr().out
        runner.close.assert_called_once()

    def test_configuration_error(self, patched_main, capsys):
        mock_config_class, _ = patched_main
        mock_config_class.return_value.get_migration_config.side_effect = ValueError(
            "Migration config file not configured for 'app_db'"
        )

        assert main.main(["migrate", "-d", "app_db"]) == 1
        assert "Configuration error" in capsys.readouterr().out


class TestStatusCommand:
    """Test the status command."""

    def test_prints_status_json(self, patched_main, capsys):
        _, runner = patched_main
        runner.status.return_value = {
            "changelog_table": "changelog",
            "applied": ["T1"],
            "pending": ["T2"],
            "to_revert": [],
            "error": None,
        }

        exit_code = main.main(["status", "-d", "app_db"])

        assert exit_code == 0
        assert json.loads(capsys.readouterr().out)["pending"] == ["T2"]

    def test_error_exit_code(self, patched_main, capsys):
        _, runner = patched_main
        runner.status.return_value = {
            "changelog_table": "changelog",
            "applied": [],
            "pending": [],
            "to_revert": [],
            "error": {"error_code": "LOAD_ERROR"},
        }

        assert main.main(["status", "-d", "app_db"]) == 1


class TestHealthCommand:
    """Test the health command."""

    @pytest.mark.parametrize("status, exit_code", [("healthy", 0), ("unhealthy", 1)])
    def test_health(self, patched_main, capsys, status, exit_code):
        with patch("main.DatabaseManager") as mock_manager_class:
            db_manager = mock_manager_class.return_value.__enter__.return_value
            db_manager.health_check.return_value = {"status": status}

            assert main.main(["health", "-d", "app_db"]) == exit_code

        db_manager.health_check.assert_called_once_with("changelog")

"""Unit tests for CLI commands."""

import pytest
from click.testing import CliRunner

from notifier.cli import cli, get_priority_style, get_status_style
from notifier.models.database import reset_engine
from notifier.models.notification import NotificationPriority, NotificationStatus
from notifier.utils.config import reset_config


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Config file pointing at a throwaway SQLite database."""
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "test-config.yaml"
    config_path.write_text(
        f"""
database:
  url: "sqlite:///{tmp_path / 'cli.db'}"
dispatcher:
  instance_id: cli-test
  log_level: WARNING
"""
    )
    reset_config()
    reset_engine()
    yield str(config_path)
    reset_engine()
    reset_config()


def invoke(runner, config_file, *args):
    return runner.invoke(cli, ["--config", config_file, *args])


# --- Helper Function Tests ---


class TestStyles:
    """Tests for rich style helpers."""

    def test_status_styles(self):
        assert get_status_style(NotificationStatus.FAILED) == "red"
        assert get_status_style(NotificationStatus.DELIVERED) == "green"

    def test_priority_styles(self):
        assert get_priority_style(NotificationPriority.URGENT) == "bold red"
        assert get_priority_style(NotificationPriority.LOW) == "green"


# --- Command Tests ---


class TestCreateCommand:
    """Tests for the create command."""

    def test_create(self, runner, config_file):
        result = invoke(runner, config_file, "create", "user-1", "Standup", "Standup in 5 minutes", "--username", "Alice")

        assert result.exit_code == 0, result.output
        assert "Created notification #1" in result.output
        assert "channels: web" in result.output

    def test_create_with_channels(self, runner, config_file):
        result = invoke(
            runner, config_file,
            "create", "user-1", "Standup", "Standup in 5 minutes",
            "--email", "alice@example.com", "--channel", "email",
        )

        assert result.exit_code == 0, result.output
        assert "channels: email" in result.output

    def test_create_invalid(self, runner, config_file):
        result = invoke(runner, config_file, "create", "user-1", "x" * 101, "Body")

        assert result.exit_code == 1
        assert "title must be at most 100 characters" in result.output


class TestQueryCommands:
    """Tests for list, show and stats."""

    def test_list(self, runner, config_file):
        invoke(runner, config_file, "create", "user-1", "Standup", "Standup in 5 minutes")

        result = invoke(runner, config_file, "list", "--user", "user-1")

        assert result.exit_code == 0, result.output
        assert "Standup" in result.output

    def test_list_empty(self, runner, config_file):
        result = invoke(runner, config_file, "list", "--user", "nobody")

        assert result.exit_code == 0
        assert "No notifications found" in result.output

    def test_show(self, runner, config_file):
        invoke(runner, config_file, "create", "user-1", "Standup", "Standup in 5 minutes", "--username", "Alice")

        result = invoke(runner, config_file, "show", "1")

        assert result.exit_code == 0, result.output
        assert "Notification #1" in result.output
        assert "Alice" in result.output
        assert "Retries: 0/3" in result.output
        assert "will retry" not in result.output

    def test_show_missing(self, runner, config_file):
        result = invoke(runner, config_file, "show", "99")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_stats(self, runner, config_file):
        invoke(runner, config_file, "create", "user-1", "Standup", "Standup in 5 minutes")

        result = invoke(runner, config_file, "stats")

        assert result.exit_code == 0, result.output
        assert "all users" in result.output
        assert "pending" in result.output


class TestDispatchCommands:
    """Tests for sweep and send commands."""

    def test_process_pending(self, runner, config_file):
        invoke(runner, config_file, "create", "user-1", "Standup", "Standup in 5 minutes")

        result = invoke(runner, config_file, "process-pending")

        assert result.exit_code == 0, result.output
        assert "Pending sweep" in result.output

        shown = invoke(runner, config_file, "show", "1")
        assert "sent" in shown.output

    def test_retry_failed_nothing_due(self, runner, config_file):
        result = invoke(runner, config_file, "retry-failed")

        assert result.exit_code == 0, result.output
        assert "Retry sweep" in result.output

    def test_send(self, runner, config_file):
        invoke(runner, config_file, "create", "user-1", "Standup", "Standup in 5 minutes")

        result = invoke(runner, config_file, "send", "1")

        assert result.exit_code == 0, result.output
        assert "Dispatched notification 1" in result.output

        again = invoke(runner, config_file, "send", "1")
        assert "nothing to send" in again.output

    def test_send_missing(self, runner, config_file):
        result = invoke(runner, config_file, "send", "99")

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_reap(self, runner, config_file):
        result = invoke(runner, config_file, "reap")

        assert result.exit_code == 0, result.output
        assert "Removed 0 expired notification(s)" in result.output

    def test_dispatcher_status(self, runner, config_file):
        result = invoke(runner, config_file, "dispatcher", "status")

        assert result.exit_code == 0, result.output
        assert "cli-test" in result.output


class TestInitCommand:
    """Tests for the init command."""

    def test_init_writes_config(self, runner, config_file, tmp_path):
        result = invoke(runner, config_file, "init")

        assert result.exit_code == 0, result.output
        assert (tmp_path / "config.yaml").exists()
        assert "max_retries: 3" in (tmp_path / "config.yaml").read_text()

    def test_init_keeps_existing(self, runner, config_file, tmp_path):
        (tmp_path / "config.yaml").write_text("retry: {}\n")

        result = invoke(runner, config_file, "init")

        assert "already exists" in result.output
        assert (tmp_path / "config.yaml").read_text() == "retry: {}\n"

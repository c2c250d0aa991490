"""Tests for ccmsched.cli."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from ccmsched import __version__
from ccmsched.cli.commands import app
from ccmsched.core.config.schema import Config
from ccmsched.storage.store import SchedulerStore

runner = CliRunner()

_PATCH_CONFIG = "ccmsched.core.config.loader.load_config"
_PATCH_RUNNER = "ccmsched.core.scheduler.runner.create_runner"


@pytest.fixture
def config(tmp_path):
    return Config(database={"path": str(tmp_path / "cli.db")})


def invoke(config, *args):
    with patch(_PATCH_CONFIG, return_value=config):
        return runner.invoke(app, list(args))


def test_cli_help():
    """--help works and shows command names."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("run", "status", "cron", "task", "webhook"):
        assert name in result.output


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_run_uses_server_config(tmp_path):
    config = Config(database={"path": str(tmp_path / "cli.db")}, server={"host": "127.0.0.1", "port": 9123})
    with patch(_PATCH_CONFIG, return_value=config), patch("uvicorn.run") as serve:
        result = runner.invoke(app, ["run"])
        assert result.exit_code == 0, result.output
        serve.assert_called_once_with("ccmsched.api.app:app", host="127.0.0.1", port=9123)

        runner.invoke(app, ["run", "--port", "9999"])
        assert serve.call_args.kwargs["port"] == 9999


# --- cron ---

def test_cron_describe():
    result = runner.invoke(app, ["cron", "describe", "0 9 * * *"])
    assert result.exit_code == 0
    assert "Every day at 9:00 AM" in result.output


def test_cron_validate():
    assert runner.invoke(app, ["cron", "validate", "*/5 * * * *"]).exit_code == 0

    result = runner.invoke(app, ["cron", "validate", "0 9 * *"])
    assert result.exit_code == 1
    assert "Invalid" in result.output


def test_cron_next():
    result = runner.invoke(app, ["cron", "next", "0 9 * * *", "-n", "3"])
    assert result.exit_code == 0
    assert len([line for line in result.output.splitlines() if line.strip()]) == 3

    assert runner.invoke(app, ["cron", "next", "0 0 31 2 *"]).exit_code == 1


# --- task ---

def test_task_add_and_list(config):
    result = invoke(config, "task", "add", "Nightly", "--every", "30", "-s", "/repo/a")
    assert result.exit_code == 0, result.output
    assert "Task created" in result.output

    [task] = SchedulerStore(config.database.path).list_tasks()
    assert task.name == "Nightly"
    assert task.schedule_type == "interval"
    assert task.interval_minutes == 30
    assert task.subject_filter == ["/repo/a"]
    assert task.next_run_at is not None

    result = invoke(config, "task", "list")
    assert result.exit_code == 0
    assert "Nightly" in result.output
    assert task.id in result.output


def test_task_add_threshold(config):
    result = invoke(
        config, "task", "add", "Low score", "--type", "optimize",
        "--metric", "optimization_score", "--operator", "lt", "--value", "60",
    )
    assert result.exit_code == 0, result.output

    [task] = SchedulerStore(config.database.path).list_tasks()
    assert task.schedule_type == "threshold"
    assert task.threshold_value == 60
    assert task.next_run_at is None


def test_task_add_rejects_bad_cron(config):
    result = invoke(config, "task", "add", "Bad", "--cron", "99 * * * *")
    assert result.exit_code == 1
    assert "Cannot create task" in result.output
    assert SchedulerStore(config.database.path).list_tasks() == []


def test_task_add_rejects_incomplete_threshold(config):
    result = invoke(config, "task", "add", "Half", "--metric", "optimization_score")
    assert result.exit_code == 1
    assert "Cannot create task" in result.output


def test_task_list_empty(config):
    result = invoke(config, "task", "list")
    assert result.exit_code == 0
    assert "No scheduled tasks" in result.output


def test_task_remove(config):
    invoke(config, "task", "add", "Doomed")
    [task] = SchedulerStore(config.database.path).list_tasks()

    result = invoke(config, "task", "remove", task.id)
    assert result.exit_code == 0
    assert "Removed task" in result.output

    result = invoke(config, "task", "remove", task.id)
    assert result.exit_code == 1


def test_task_run_missing(config):
    result = invoke(config, "task", "run", "nope")
    assert result.exit_code == 1
    assert "Task not found: nope" in result.output


def test_task_run_without_analyzer_fails(config):
    invoke(config, "task", "add", "Analyze")
    [task] = SchedulerStore(config.database.path).list_tasks()

    result = invoke(config, "task", "run", task.id)
    assert result.exit_code == 1
    assert "No context analyzer configured" in result.output

    [execution] = SchedulerStore(config.database.path).list_executions(task_id=task.id)
    assert execution.status == "failed"
    assert execution.trigger_type == "manual"


def test_task_run_success(config):
    """task run waits for the execution and prints its counters."""
    execution = MagicMock(subjects_processed=2, issues_found=1, tokens_saved=30, duration_ms=12)
    mock_runner = MagicMock()
    mock_runner.trigger_task = AsyncMock(return_value="exec1")
    mock_runner.store.get_execution.return_value = execution

    with patch(_PATCH_CONFIG, return_value=config), patch(_PATCH_RUNNER, return_value=mock_runner):
        result = runner.invoke(app, ["task", "run", "t1"])

    assert result.exit_code == 0, result.output
    assert "exec1" in result.output
    assert "30 tokens saved" in result.output
    mock_runner.trigger_task.assert_awaited_once_with("t1", trigger_type="manual")


def test_task_update_switches_schedule(config):
    invoke(config, "task", "add", "Flexible", "--every", "30")
    store = SchedulerStore(config.database.path)
    [task] = store.list_tasks()

    result = invoke(config, "task", "update", task.id, "--cron", "0 9 * * *", "--name", "Mornings")
    assert result.exit_code == 0, result.output
    assert "Task updated" in result.output

    task = store.get_task(task.id)
    assert task.name == "Mornings"
    assert task.schedule_type == "cron"
    assert task.cron_expression == "0 9 * * *"
    assert task.next_run_at.astimezone().strftime("%H:%M") == "09:00"


def test_task_update_rejects_bad_input(config):
    invoke(config, "task", "add", "Keep")
    [task] = SchedulerStore(config.database.path).list_tasks()

    result = invoke(config, "task", "update", task.id)
    assert result.exit_code == 1
    assert "Nothing to update" in result.output

    result = invoke(config, "task", "update", task.id, "--cron", "0 25 * * *")
    assert result.exit_code == 1
    assert "Cannot update task" in result.output

    result = invoke(config, "task", "update", "nope", "--name", "x")
    assert result.exit_code == 1
    assert "Task not found: nope" in result.output


def test_task_disable_and_enable(config):
    invoke(config, "task", "add", "Toggle", "--every", "15")
    store = SchedulerStore(config.database.path)
    [task] = store.list_tasks()

    result = invoke(config, "task", "disable", task.id)
    assert result.exit_code == 0, result.output
    assert "Task disabled" in result.output
    assert store.get_task(task.id).enabled is False
    assert store.get_task(task.id).next_run_at is None

    result = invoke(config, "task", "enable", task.id)
    assert result.exit_code == 0, result.output
    assert store.get_task(task.id).enabled is True
    assert store.get_task(task.id).next_run_at is not None

    assert invoke(config, "task", "enable", "nope").exit_code == 1


def test_task_refresh(config):
    invoke(config, "task", "add", "A", "--every", "5")
    invoke(config, "task", "add", "B", "--cron", "0 9 * * *")
    invoke(config, "task", "add", "Manual")

    result = invoke(config, "task", "refresh")
    assert result.exit_code == 0, result.output
    assert "Refreshed 2 task(s)" in result.output


# --- webhook ---

def test_webhook_add_and_list(config):
    result = invoke(
        config, "webhook", "add", "ops", "https://discord.test/api/webhooks/1",
        "--provider", "discord", "--event", "task_failed",
    )
    assert result.exit_code == 0, result.output
    assert "Webhook added" in result.output

    [webhook] = SchedulerStore(config.database.path).list_webhooks()
    assert webhook.provider == "discord"
    assert webhook.event_types == ["task_failed"]

    result = invoke(config, "webhook", "list")
    assert result.exit_code == 0
    assert webhook.id in result.output


def test_webhook_add_rejects_bad_url(config):
    result = invoke(config, "webhook", "add", "bad", "ftp://nope")
    assert result.exit_code == 1
    assert "Invalid webhook" in result.output


def test_webhook_test_missing(config):
    result = invoke(config, "webhook", "test", "nope")
    assert result.exit_code == 1
    assert "Webhook not found: nope" in result.output


def test_webhook_disable_and_enable(config):
    invoke(config, "webhook", "add", "ops", "https://hooks.test/ops")
    store = SchedulerStore(config.database.path)
    [webhook] = store.list_webhooks()

    result = invoke(config, "webhook", "disable", webhook.id)
    assert result.exit_code == 0, result.output
    assert store.get_webhook(webhook.id).enabled is False

    invoke(config, "webhook", "enable", webhook.id)
    assert store.get_webhook(webhook.id).enabled is True

    result = invoke(config, "webhook", "disable", "nope")
    assert result.exit_code == 1
    assert "Webhook not found" in result.output


# --- status ---

def test_status_output(config):
    invoke(config, "task", "add", "One", "--every", "5")
    result = invoke(config, "status")
    assert result.exit_code == 0
    assert "ccmsched status" in result.output
    assert "1 enabled / 1" in result.output

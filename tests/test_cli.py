import json

import pytest
from click.testing import CliRunner

from jobqueue.cli import cli


@pytest.fixture
def run(tmp_path, monkeypatch):
    monkeypatch.setenv("JOBQUEUE_DB", str(tmp_path / "cli.db"))
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(cli, list(args))

    return invoke


WELCOME = '{"email": "a@b.io", "first_name": "Ada"}'


def test_enqueue_and_status(run):
    result = run("enqueue", "email", "send-welcome-email", "--payload", WELCOME)
    assert result.exit_code == 0, result.output
    assert "Enqueued" in result.stdout

    result = run("status", "email")
    assert result.exit_code == 0
    stats = json.loads(result.stdout)
    assert stats["waiting"] == 1
    assert stats["name"] == "email"

    result = run("status")
    assert set(json.loads(result.stdout)) == {"email", "enrollment", "payment", "sync"}


def test_enqueue_with_delay_and_list(run):
    run("enqueue", "sync", "force-sync-users", "--delay", "5m", "--priority", "2", "--id", "sync-1")
    result = run("list", "sync", "--state", "delayed")
    assert result.exit_code == 0
    assert "sync-1" in result.stdout
    assert "force-sync-users" in result.stdout

    result = run("show", "sync", "sync-1")
    assert json.loads(result.stdout)["priority"] == 2

    duplicate = run("enqueue", "sync", "force-sync-users", "--id", "sync-1")
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.output


@pytest.mark.parametrize("args", [
    ("enqueue", "nowhere", "x"),
    ("enqueue", "email", "x", "--payload", "[1, 2]"),
    ("enqueue", "email", "x", "--delay", "whenever"),
    ("retry", "email", "missing"),
    ("remove", "email", "missing"),
    ("show", "email", "missing"),
])
def test_errors_exit_non_zero(run, args):
    result = run(*args)
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_pause_and_resume(run):
    assert "Paused email." in run("pause", "email").stdout
    assert json.loads(run("status", "email").stdout)["paused"] is True
    run("resume", "email")
    assert json.loads(run("status", "email").stdout)["paused"] is False


def test_health(run):
    result = run("health")
    assert result.exit_code == 0
    assert json.loads(result.stdout)["healthy"] is True


def test_config_get_set(run):
    result = run("config", "set", "poll_interval_ms", "250")
    assert result.exit_code == 0
    assert json.loads(run("config", "get").stdout)["poll_interval_ms"] == "250"

    bad = run("config", "set", "colour", "7")
    assert bad.exit_code == 1
    assert "Allowed keys" in bad.output
    assert run("config", "set", "poll_interval_ms", "fast").exit_code == 1


def test_schedules_and_clean(run):
    assert "No recurring jobs." in run("schedules").stdout
    result = run("clean", "email", "--grace", "1h")
    assert result.exit_code == 0
    assert "Removed 0 completed job(s) from email." in result.stdout
    retried = run("retry-failed", "email")
    assert json.loads(retried.stdout) == {"total": 0, "retried": 0, "failed": 0}

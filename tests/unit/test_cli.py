"""Tests for the runwire CLI."""

import asyncio

import pytest
from typer.testing import CliRunner

from runwire.cli import app
from runwire.config import TokenConfig
from runwire.security import TokenAuthority

SECRET = "cli-test-secret-0123456789abcdef0123456789"

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("RUNWIRE_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("RUNWIRE_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("RUNWIRE_WORKER_SECRET", SECRET)
    monkeypatch.setenv("RUNWIRE_TRANSPORT", "inmemory")
    return tmp_path


def test_db_init(cli_env):
    result = runner.invoke(app, ["db", "init"])
    assert result.exit_code == 0
    assert "Database initialized" in result.output
    assert (cli_env / "cli.db").exists()


def test_worker_token(cli_env):
    result = runner.invoke(app, ["worker", "token", "--name", "worker-9", "--ttl", "60"])
    assert result.exit_code == 0

    claims = TokenAuthority(TokenConfig(secret=SECRET)).verify_worker_token(result.output.strip())
    assert claims["sub"] == "worker-9"
    assert claims["exp"] - claims["nbf"] == 60


def test_workorders_list_empty(cli_env):
    runner.invoke(app, ["db", "init"])
    result = runner.invoke(app, ["workorders", "list"])
    assert result.exit_code == 0
    assert "No work orders found" in result.output


def test_runs_show_missing(cli_env):
    runner.invoke(app, ["db", "init"])
    result = runner.invoke(app, ["runs", "show", "missing"])
    assert result.exit_code == 1
    assert "Run not found" in result.output


def test_sweep(cli_env):
    runner.invoke(app, ["db", "init"])
    result = runner.invoke(app, ["sweep", "--mark-lost", "--wipe"])
    assert result.exit_code == 0
    assert "Requeued: 0" in result.output
    assert "Lost: 0" in result.output
    assert "Wiped: 0" in result.output


def test_show_seeded_run(cli_env, config, harness, monkeypatch):
    monkeypatch.setenv("RUNWIRE_DATABASE_URL", config.database_url)
    seeded = asyncio.run(harness.seed())
    context, _ = asyncio.run(harness.started(seeded))

    result = runner.invoke(app, ["runs", "show", context.run.id])
    assert result.exit_code == 0
    assert f"Run {context.run.id}: started" in result.output

    result = runner.invoke(app, ["workorders", "list", "--state", "running"])
    assert context.run.work_order_id in result.output

"""Tests for the HealClaw CLI."""

import json
import sys

import pytest
import yaml
from loguru import logger
from typer.testing import CliRunner

from healclaw.cli.main import app
from healclaw.core.history import HistoryStore
from healclaw.core.locks import FileLockProvider
from healclaw.core.workspace import LOCK_DIR_NAME
from healclaw.db import Database
from healclaw.models import HealingRecord

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "healclaw.yaml"
    path.write_text(yaml.safe_dump({
        "db_path": str(tmp_path / "cli.db"),
        "workspace": {"base_dir": str(tmp_path / "ws"), "lock_timeout_seconds": 1},
        "openclaw": {"enabled": False},
        "github": {"enabled": False},
    }))
    return path


def invoke(*args):
    return runner.invoke(app, [str(a) for a in args], catch_exceptions=False)


class TestRunCommand:
    """healclaw run."""

    def test_run_without_collaborators(self, tmp_path, config_file):
        reports = tmp_path / "reports.json"
        reports.write_text(json.dumps([
            {"repo": "acme/api", "platform": "ci-actions", "error_type": "build", "message": "boom"},
            {"message": "no repository"},
        ]))

        result = invoke("run", reports, "--config", config_file)

        assert result.exit_code == 1
        assert "1 failed" in result.output
        records = HistoryStore(Database(tmp_path / "cli.db")).query()
        assert [r.error for r in records] == ["no changes generated"]

    def test_second_run_is_throttled(self, tmp_path, config_file):
        reports = tmp_path / "reports.json"
        reports.write_text(json.dumps([{"repo": "acme/api", "message": "boom"}]))

        invoke("run", reports, "--config", config_file)
        result = invoke("run", reports, "--config", config_file)

        assert result.exit_code == 0
        assert "1 skipped" in result.output

    def test_empty_reports(self, tmp_path, config_file):
        reports = tmp_path / "reports.yaml"
        reports.write_text("[]\n")

        result = invoke("run", reports, "--config", config_file)

        assert result.exit_code == 0
        assert "No error reports" in result.output

    def test_invalid_config(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("healing: {max_concurrent: 0}\n")
        reports = tmp_path / "reports.json"
        reports.write_text("[]")

        result = invoke("run", reports, "--config", bad)

        assert result.exit_code == 1


class TestInspectionCommands:
    """status, history, analyze, cleanup, reset."""

    @pytest.fixture
    def seeded(self, tmp_path, config_file):
        store = HistoryStore(Database(tmp_path / "cli.db"))
        for status in ("success", "failed", "failed"):
            store.append(HealingRecord(
                job_id="heal-1",
                signature="abcdef0123456789",
                repo_key="acme/api",
                status=status,
                duration_ms=1500,
            ))
        return config_file

    def test_history(self, seeded):
        result = invoke("history", "--repo", "acme/api", "--config", seeded)

        assert result.exit_code == 0
        assert "acme/api" in result.output

    def test_history_empty(self, config_file):
        result = invoke("history", "--config", config_file)

        assert "No healing history" in result.output

    def test_analyze(self, seeded):
        result = invoke("analyze", "--config", seeded)

        assert result.exit_code == 0
        assert "Recurring errors" in result.output
        assert "abcdef0123456789" in result.output

    def test_status(self, seeded):
        result = invoke("status", "--config", seeded)

        assert result.exit_code == 0
        assert "3 attempt(s)" in result.output

    def test_cleanup_all(self, tmp_path, config_file):
        (tmp_path / "ws" / "leftover").mkdir(parents=True)

        result = invoke("cleanup", "--all", "--config", config_file)

        assert result.exit_code == 0
        assert not (tmp_path / "ws" / "leftover").exists()

    def test_reset(self, seeded, tmp_path):
        result = invoke("reset", "--yes", "--config", seeded)

        assert result.exit_code == 0
        assert Database(tmp_path / "cli.db").count_heal_records() == 0

    def test_reset_releases_file_leases(self, tmp_path, config_file):
        provider = FileLockProvider(tmp_path / "ws" / LOCK_DIR_NAME)
        assert provider.try_acquire("acme/api", "crashed-job")

        result = invoke("reset", "--yes", "--config", config_file)

        assert result.exit_code == 0
        assert "1 lease(s) released" in result.output
        assert provider.list_locks() == []

    def test_init_writes_config(self, tmp_path):
        path = tmp_path / "new.yaml"

        result = invoke("init", "--config", path)

        assert result.exit_code == 0
        assert path.exists()

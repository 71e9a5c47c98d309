"""Tests for configuration and report loading."""

import json

import pytest
import yaml

from healclaw.config import (
    ConfigError,
    expand_env_vars,
    load_config,
    load_reports,
    save_config,
)
from healclaw.models import HealClawConfig, LockBackend, Platform


class TestLoadConfig:
    """YAML configuration."""

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.healing.max_concurrent == 3
        assert config.healing.cooldown_seconds == 300
        assert config.workspace.lock_backend == LockBackend.FILE

    def test_loads_values(self, tmp_path):
        path = tmp_path / "healclaw.yaml"
        path.write_text(yaml.safe_dump({
            "healing": {"max_concurrent": 5, "branch_prefix": "fix/"},
            "workspace": {"lock_backend": "sqlite", "stale_lock_seconds": 120},
            "safety": {"blocked_repositories": ["acme/secret"]},
        }))

        config = load_config(path)

        assert config.healing.max_concurrent == 5
        assert config.healing.branch_prefix == "fix/"
        assert config.workspace.lock_backend == LockBackend.SQLITE
        assert config.workspace.stale_lock_seconds == 120
        assert config.safety.blocked_repositories == ["acme/secret"]

    def test_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HEALCLAW_TEST_TOKEN", "s3cret")
        path = tmp_path / "healclaw.yaml"
        path.write_text("github:\n  token: ${env:HEALCLAW_TEST_TOKEN}\n")

        assert load_config(path).github.token == "s3cret"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("healing: [unclosed")

        with pytest.raises(ConfigError):
            load_config(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"healing": {"max_concurrent": 0}}))

        with pytest.raises(ConfigError):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigError):
            load_config(path)

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / "out.yaml"
        config = HealClawConfig()
        config.healing.cooldown_seconds = 60

        save_config(config, path)

        assert load_config(path).healing.cooldown_seconds == 60


class TestExpandEnvVars:
    """Environment variable expansion."""

    def test_forms(self, monkeypatch):
        monkeypatch.setenv("HC_VAR", "value")

        assert expand_env_vars("${env:HC_VAR}") == "value"
        assert expand_env_vars("$HC_VAR/x") == "value/x"
        assert expand_env_vars("${env:HC_UNSET_VAR}") == ""


class TestLoadReports:
    """Report files."""

    def test_json_list(self, tmp_path):
        path = tmp_path / "reports.json"
        path.write_text(json.dumps([
            {"repo": "acme/api", "platform": "ci-actions", "error_type": "build", "message": "boom"},
        ]))

        reports = load_reports(path)

        assert len(reports) == 1
        assert reports[0].platform == Platform.CI_ACTIONS
        assert len(reports[0].signature) == 16

    def test_yaml_mapping(self, tmp_path):
        path = tmp_path / "reports.yaml"
        path.write_text(yaml.safe_dump({"reports": [
            {"project": "svc", "message": "x", "signature": "abcdef0123456789"},
        ]}))

        reports = load_reports(path)

        assert reports[0].repo_key == "svc"
        assert reports[0].signature == "abcdef0123456789"

    def test_invalid_entries_skipped(self, tmp_path):
        path = tmp_path / "reports.json"
        path.write_text(json.dumps([
            "not a mapping",
            {"repo": "acme/api", "platform": "mainframe"},
            {"repo": "acme/web"},
        ]))

        reports = load_reports(path)

        assert [r.repo_key for r in reports] == ["acme/web"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_reports(tmp_path / "nope.json")

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "reports.json"
        path.write_text(json.dumps({"reports": "nope"}))

        with pytest.raises(ConfigError):
            load_reports(path)

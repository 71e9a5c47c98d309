"""Shared fixtures for HealClaw tests."""

from datetime import datetime

import pytest

from healclaw.db import Database
from healclaw.models import ErrorReport, Platform


@pytest.fixture
def db(tmp_path):
    """Temporary database."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def make_report():
    """Factory for error reports with computed signatures."""

    def _make(repo="acme/api", message="test failed", **fields):
        fields.setdefault("platform", Platform.CI_ACTIONS)
        fields.setdefault("error_type", "test-failure")
        fields.setdefault("branch", "main")
        fields.setdefault("timestamp", datetime.now())
        return ErrorReport.create(repo=repo, message=message, **fields)

    return _make

"""Tests for the healing orchestrator."""

import asyncio
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from healclaw.core.history import HistoryStore
from healclaw.core.orchestrator import HealingOrchestrator
from healclaw.core.pipeline import NO_CHANGES
from healclaw.core.throttle import SkipReason
from healclaw.core.workspace import META_FILE
from healclaw.models import EventKind, HealClawConfig, JobStatus, LockBackend
from healclaw.notify import NotificationDispatcher


@pytest.fixture
def config(tmp_path):
    config = HealClawConfig()
    config.workspace.base_dir = str(tmp_path / "ws")
    config.workspace.lock_timeout_seconds = 0.2
    config.workspace.lock_poll_interval = 0.01
    return config


@pytest.fixture
def orchestrator(config, db):
    return HealingOrchestrator.from_config(config, db)


class TestExecuteAll:
    """End-to-end runs with the simulated agent and no host."""

    @pytest.mark.asyncio
    async def test_no_changes_generated(self, orchestrator, db, make_report):
        report = make_report(repo="acme/api")

        summary = await orchestrator.execute_all([report])

        assert summary.total == 1
        assert summary.failed == 1
        outcome = summary.outcomes[0]
        assert outcome.job.result.error == NO_CHANGES
        assert not orchestrator.workspace.is_locked("acme/api")
        assert orchestrator.workspace.list_workspaces() == []

        records = HistoryStore(db).query(repo_key="acme/api")
        assert len(records) == 1
        assert records[0].status == "failed"

    @pytest.mark.asyncio
    async def test_dedup_keeps_latest(self, orchestrator, make_report):
        now = datetime.now()
        older = make_report(repo="acme/api", message="old", timestamp=now - timedelta(minutes=5))
        newer = make_report(repo="acme/api", message="new", timestamp=now)

        summary = await orchestrator.execute_all([older, newer])

        assert summary.total == 1
        assert summary.outcomes[0].job.report.message == "new"

    @pytest.mark.asyncio
    async def test_keyless_reports_ignored(self, orchestrator, make_report):
        keyless = make_report(repo=None)

        summary = await orchestrator.execute_all([keyless])

        assert summary.total == 0

    @pytest.mark.asyncio
    async def test_cooldown_skip_without_lock_contention(self, orchestrator, make_report):
        first = make_report(repo="acme/api", message="boom")
        await orchestrator.execute_all([first])

        second = make_report(repo="acme/api", message="boom")
        with patch.object(orchestrator.workspace, "acquire_lock", AsyncMock()) as acquire:
            summary = await orchestrator.execute_all([second])

        acquire.assert_not_awaited()
        assert summary.skipped == 1
        job = summary.outcomes[0].job
        assert job.status == JobStatus.THROTTLED
        assert job.skip_reason == SkipReason.COOLDOWN
        assert summary.outcomes[0].events[0].kind == EventKind.SKIPPED

    @pytest.mark.asyncio
    async def test_blocked_repository_skipped(self, config, db, make_report):
        config.safety.blocked_repositories = ["acme/secret"]
        orchestrator = HealingOrchestrator.from_config(config, db)

        summary = await orchestrator.execute_all([make_report(repo="acme/secret")])

        assert summary.outcomes[0].job.skip_reason == SkipReason.BLOCKED_REPOSITORY

    @pytest.mark.asyncio
    async def test_batches_respect_max_concurrent(self, config, db, make_report):
        config.healing.max_concurrent = 2
        orchestrator = HealingOrchestrator.from_config(config, db)
        running = 0
        peak = 0
        original_run = orchestrator._pipeline.run

        async def tracked_run(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            try:
                return await original_run(job)
            finally:
                running -= 1

        reports = [make_report(repo=f"acme/r{i}") for i in range(5)]
        with patch.object(orchestrator._pipeline, "run", tracked_run):
            summary = await orchestrator.execute_all(reports)

        assert summary.total == 5
        assert peak == 2

    @pytest.mark.asyncio
    async def test_same_batch_jobs_overlap(self, orchestrator, make_report):
        arrived = []
        both_running = asyncio.Event()
        original_run = orchestrator._pipeline.run

        async def rendezvous(job):
            arrived.append(job.lock_key)
            if len(arrived) == 2:
                both_running.set()
            await asyncio.wait_for(both_running.wait(), timeout=2)
            return await original_run(job)

        with patch.object(orchestrator._pipeline, "run", rendezvous):
            summary = await orchestrator.execute_all(
                [make_report(repo="acme/api"), make_report(repo="acme/web")]
            )

        assert sorted(arrived) == ["acme/api", "acme/web"]
        assert summary.failed == 2
        assert all(o.job.result.error == NO_CHANGES for o in summary.outcomes)

    @pytest.mark.asyncio
    async def test_crashed_job_becomes_failed_outcome(self, orchestrator, make_report):
        reports = [make_report(repo="acme/a"), make_report(repo="acme/b")]
        original_run = orchestrator._pipeline.run

        async def flaky_run(job):
            if job.lock_key == "acme/a":
                raise RuntimeError("unexpected")
            return await original_run(job)

        with patch.object(orchestrator._pipeline, "run", flaky_run):
            summary = await orchestrator.execute_all(reports)

        statuses = {o.job.lock_key: o for o in summary.outcomes}
        assert statuses["acme/a"].status == JobStatus.FAILED
        assert statuses["acme/a"].job.result.error == "unexpected"
        assert statuses["acme/b"].job.result.error == NO_CHANGES

    @pytest.mark.asyncio
    async def test_sweeps_stale_workspaces(self, orchestrator, make_report):
        stale = orchestrator.workspace.create_isolated_workspace("old-job", "acme/old")
        meta = json.loads((stale / META_FILE).read_text())
        meta["created_at"] = (datetime.now() - timedelta(hours=3)).isoformat()
        (stale / META_FILE).write_text(json.dumps(meta))

        await orchestrator.execute_all([])

        assert not stale.exists()

    @pytest.mark.asyncio
    async def test_dispatches_events(self, config, db, make_report):
        notifier = AsyncMock()
        config.notify.on_skipped = True
        dispatcher = NotificationDispatcher(config.notify, notifiers=[notifier])
        orchestrator = HealingOrchestrator.from_config(config, db, dispatcher=dispatcher)

        await orchestrator.execute_all([make_report()])
        await orchestrator.execute_all([make_report()])

        kinds = [c.args[0].kind for c in notifier.notify.await_args_list]
        assert kinds == [EventKind.STARTED, EventKind.FAILED, EventKind.SKIPPED]

    @pytest.mark.asyncio
    async def test_sqlite_lease_backend(self, config, db, make_report):
        config.workspace.lock_backend = LockBackend.SQLITE
        orchestrator = HealingOrchestrator.from_config(config, db)

        summary = await orchestrator.execute_all([make_report()])

        assert summary.failed == 1
        assert db.get_all_locks() == []

"""Healing orchestrator.

Turns a list of error reports into healing jobs: deduplicates per
repository, filters through the safety throttle, schedules conflict-free
batches and runs each batch concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from loguru import logger

from healclaw.core.dedup import group_by_repository
from healclaw.core.history import HistoryStore
from healclaw.core.pipeline import HealingPipeline, build_event
from healclaw.core.scheduler import create_batches
from healclaw.core.throttle import SafetyThrottle
from healclaw.core.workspace import WorkspaceManager
from healclaw.models import (
    ErrorReport,
    EventKind,
    HealClawConfig,
    HealingJob,
    HealingResult,
    JobOutcome,
    JobStatus,
    RunSummary,
)

if TYPE_CHECKING:
    from healclaw.db import Database
    from healclaw.github import RepositoryHost
    from healclaw.notify import NotificationDispatcher
    from healclaw.openclaw import FixAgent


class HealingOrchestrator:
    """Runs a set of error reports through the healing pipeline."""

    def __init__(
        self,
        pipeline: "HealingPipeline",
        throttle: "SafetyThrottle",
        workspace: "WorkspaceManager",
        dispatcher: "NotificationDispatcher | None" = None,
        config: HealClawConfig | None = None,
    ):
        self._pipeline = pipeline
        self._throttle = throttle
        self._workspace = workspace
        self._dispatcher = dispatcher
        self._config = config or HealClawConfig()

    @classmethod
    def from_config(
        cls,
        config: HealClawConfig,
        db: "Database",
        fix_agent: "FixAgent | None" = None,
        host: "RepositoryHost | None" = None,
        dispatcher: "NotificationDispatcher | None" = None,
    ) -> "HealingOrchestrator":
        """Wire the throttle, workspace, history and pipeline from config."""
        throttle = SafetyThrottle.from_config(db, config.healing, config.safety)
        workspace = WorkspaceManager.from_config(config.workspace, db)
        pipeline = HealingPipeline(
            workspace,
            throttle,
            HistoryStore(db),
            fix_agent=fix_agent,
            host=host,
            config=config,
        )
        return cls(pipeline, throttle, workspace, dispatcher=dispatcher, config=config)

    @property
    def throttle(self) -> "SafetyThrottle":
        return self._throttle

    @property
    def workspace(self) -> "WorkspaceManager":
        return self._workspace

    async def execute_all(self, reports: Iterable[ErrorReport]) -> RunSummary:
        """Heal every report. Never raises; failures end up in the summary."""
        if self._config.workspace.sweep_on_start:
            try:
                self._workspace.cleanup_stale(self._config.workspace.max_age_seconds)
            except OSError as e:
                logger.warning(f"Stale workspace sweep failed: {e}")

        unique = group_by_repository(list(reports))
        logger.info(f"Processing {len(unique)} error(s) after deduplication")

        outcomes: list[JobOutcome] = []
        runnable: list[HealingJob] = []

        for report in unique:
            job = HealingJob.for_report(report)
            skip, reason = self._throttle.should_skip(report)
            if skip:
                outcomes.append(self._throttled(job, reason))
            else:
                runnable.append(job)

        await self._dispatch(outcomes)

        batches = create_batches(
            runnable, self._config.healing.max_concurrent, key=lambda job: job.lock_key
        )
        for index, batch in enumerate(batches, start=1):
            logger.info(
                f"Running batch {index}/{len(batches)}: "
                f"{', '.join(job.lock_key for job in batch)}"
            )
            results = await asyncio.gather(
                *(self._pipeline.run(job) for job in batch),
                return_exceptions=True,
            )

            batch_outcomes = []
            for job, result in zip(batch, results):
                if isinstance(result, BaseException):
                    batch_outcomes.append(self._crashed(job, result))
                else:
                    batch_outcomes.append(result)

            outcomes.extend(batch_outcomes)
            await self._dispatch(batch_outcomes)

        summary = RunSummary.from_outcomes(outcomes)
        logger.info(
            f"Run complete: {summary.healed} healed, {summary.failed} failed, "
            f"{summary.skipped} skipped of {summary.total}"
        )
        return summary

    def _throttled(self, job: HealingJob, reason: str | None) -> JobOutcome:
        job.status = JobStatus.THROTTLED
        job.skip_reason = reason
        job.finished_at = datetime.now()
        logger.info(f"Skipping {job.lock_key} ({job.report.signature}): {reason}")
        event = build_event(EventKind.SKIPPED, job, f"Skipped: {reason}", reason=reason)
        return JobOutcome(job=job, events=[event])

    def _crashed(self, job: HealingJob, error: BaseException) -> JobOutcome:
        logger.error(f"Job {job.id} crashed: {error!r}")
        job.status = JobStatus.FAILED
        job.finished_at = datetime.now()
        job.result = HealingResult(success=False, error=str(error) or type(error).__name__)
        event = build_event(EventKind.FAILED, job, job.result.error)
        return JobOutcome(job=job, events=[event])

    async def _dispatch(self, outcomes: list[JobOutcome]) -> None:
        if self._dispatcher is None:
            return
        events = [event for outcome in outcomes for event in outcome.events]
        if events:
            await self._dispatcher.dispatch(events)

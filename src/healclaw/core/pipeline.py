"""Healing job pipeline.

Runs one job end to end: lease, throttle bookkeeping, workspace, clone,
fix agent, branch/commit/push, pull request, cleanup and history. Step
failures become a failed job; the pipeline itself does not raise.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from healclaw.core.throttle import SkipReason
from healclaw.github import HostError
from healclaw.models import (
    EventKind,
    HealClawConfig,
    HealingEvent,
    HealingJob,
    HealingRecord,
    HealingResult,
    JobOutcome,
    JobStatus,
)
from healclaw.openclaw import HealingRequest, SimulatedFixAgent

if TYPE_CHECKING:
    from healclaw.core.history import HistoryStore
    from healclaw.core.throttle import SafetyThrottle
    from healclaw.core.workspace import WorkspaceManager
    from healclaw.github import RepositoryHost
    from healclaw.openclaw import FixAgent

NO_CHANGES = "no changes generated"
NO_HOST = "no repository host configured"


def build_event(kind: EventKind, job: HealingJob, message: str, **details: Any) -> HealingEvent:
    """Create a notification event for a job."""
    return HealingEvent(
        kind=kind,
        job_id=job.id,
        repo_key=job.lock_key,
        signature=job.report.signature,
        message=message,
        details=details,
    )


def build_pr_body(job: HealingJob, files_changed: list[str], agent_message: str) -> str:
    report = job.report
    lines = [
        "## Automated fix",
        "",
        f"**Error type:** {report.error_type}",
        f"**Platform:** {report.platform.value}",
        f"**Signature:** `{report.signature}`",
    ]
    if report.workflow:
        lines.append(f"**Workflow:** {report.workflow}")
    if report.log_url:
        lines.append(f"**Logs:** {report.log_url}")
    if report.message:
        lines.extend(["", "### Error", "```", report.message[:1000], "```"])
    lines.extend(["", "### Files changed"])
    lines.extend(f"- `{path}`" for path in files_changed)
    if agent_message:
        lines.extend(["", "### Agent notes", agent_message[:3000]])
    lines.extend(["", "---", "_Please review the changes carefully before merging._"])
    return "\n".join(lines)


class HealingPipeline:
    """Executes healing jobs against injected collaborators.

    The fix agent and repository host are optional. Without a fix agent the
    simulated agent is used; without a host a job that produced changes
    fails with "no repository host configured".
    """

    def __init__(
        self,
        workspace: "WorkspaceManager",
        throttle: "SafetyThrottle",
        history: "HistoryStore",
        fix_agent: "FixAgent | None" = None,
        host: "RepositoryHost | None" = None,
        config: HealClawConfig | None = None,
    ):
        self._workspace = workspace
        self._throttle = throttle
        self._history = history
        self._fix_agent = fix_agent or SimulatedFixAgent()
        self._host = host
        self._config = config or HealClawConfig()

    async def run(self, job: HealingJob) -> JobOutcome:
        """Run one job to a terminal state."""
        report = job.report
        events: list[HealingEvent] = []

        acquired = await self._workspace.acquire_lock(
            job.lock_key,
            timeout_seconds=self._config.workspace.lock_timeout_seconds,
            holder_id=job.id,
        )
        if not acquired:
            job.status = JobStatus.LOCK_TIMEOUT
            job.skip_reason = SkipReason.LOCK_TIMEOUT
            job.finished_at = datetime.now()
            logger.warning(f"Skipping {job.id}: repository {job.lock_key} is busy")
            events.append(build_event(
                EventKind.SKIPPED, job, "Repository lease not acquired in time",
                reason=job.skip_reason,
            ))
            return JobOutcome(job=job, events=events)

        job.status = JobStatus.RUNNING
        job.started_at = datetime.now()
        started = time.monotonic()

        # The lease is released whichever step below fails
        try:
            try:
                self._throttle.record_attempt(report)
                logger.info(f"Healing {job.lock_key} ({report.error_type}, {report.signature}) as {job.id}")
                events.append(build_event(
                    EventKind.STARTED, job, f"Healing {report.error_type} on {job.lock_key}",
                    branch=report.branch, workflow=report.workflow,
                ))
                job.workspace_path = self._workspace.create_isolated_workspace(job.id, job.lock_key)
                result = await self._heal(job)
            except Exception as e:
                logger.error(f"Healing {job.id} failed unexpectedly: {e}")
                result = HealingResult(success=False, error=str(e) or type(e).__name__)
        finally:
            self._workspace.release_lock(job.lock_key, job.id)
            self._workspace.cleanup(job.workspace_path)

        duration_ms = int((time.monotonic() - started) * 1000)
        job.result = result.model_copy(update={"duration_ms": duration_ms})
        job.status = JobStatus.SUCCEEDED if result.success else JobStatus.FAILED
        job.finished_at = datetime.now()

        try:
            self._history.append(HealingRecord.from_job(job))
        except Exception as e:
            logger.error(f"Failed to record history for {job.id}: {e}")
        try:
            self._throttle.record_completion(report)
        except Exception as e:
            logger.error(f"Failed to record throttle completion for {job.id}: {e}")

        if result.success:
            logger.info(f"Healed {job.lock_key} in {duration_ms}ms: {result.pull_request_url or 'no PR'}")
            events.append(build_event(
                EventKind.SUCCEEDED, job, f"Fixed {report.error_type} on {job.lock_key}",
                pull_request=result.pull_request_url,
                files_changed=result.files_changed,
                strategy=result.strategy,
            ))
        else:
            logger.error(f"Healing {job.id} failed: {result.error}")
            events.append(build_event(
                EventKind.FAILED, job, result.error or "healing failed",
                strategy=result.strategy, issue=result.issue_url,
            ))

        return JobOutcome(job=job, events=events)

    async def _heal(self, job: HealingJob) -> HealingResult:
        report = job.report
        host = self._host
        healing = self._config.healing
        github = self._config.github

        repo_dir: Path = job.workspace_path
        base_branch = report.branch
        issue_url = None

        if host is not None:
            if github.auto_create_issue:
                try:
                    issue_url = await host.create_issue(
                        job.lock_key,
                        f"Auto-detected: {report.error_type} in {report.workflow or job.lock_key}",
                        f"{report.message}\n\nSignature: `{report.signature}`",
                    )
                except HostError as e:
                    logger.warning(f"Could not open tracking issue for {job.id}: {e}")

            repo_dir = job.workspace_path / "repo"
            try:
                base_branch = await host.clone(job.lock_key, report.branch, repo_dir)
            except HostError as e:
                return HealingResult(success=False, issue_url=issue_url, error=f"clone failed: {e}")

        timeout = healing.fix_timeout_seconds
        try:
            response = await asyncio.wait_for(
                self._fix_agent.request_fix(HealingRequest(report=report, workspace_path=repo_dir)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return HealingResult(
                success=False, issue_url=issue_url, error=f"fix agent timed out after {timeout}s"
            )
        except Exception as e:
            return HealingResult(success=False, issue_url=issue_url, error=f"fix agent error: {e}")

        files_changed = list(response.files_changed)
        if host is not None:
            try:
                for path in await host.changed_files(repo_dir):
                    if path not in files_changed:
                        files_changed.append(path)
            except HostError as e:
                logger.warning(f"Could not read working tree status for {job.id}: {e}")

        def failed(error: str) -> HealingResult:
            return HealingResult(
                success=False,
                strategy=response.strategy,
                files_changed=files_changed,
                issue_url=issue_url,
                error=error,
            )

        if not files_changed:
            return failed(NO_CHANGES)
        if not response.success:
            return failed(response.message or "fix agent reported failure")
        if host is None:
            return failed(NO_HOST)

        branch = f"{healing.branch_prefix}{report.signature}-{int(time.time() * 1000)}"
        try:
            await host.create_branch(repo_dir, branch)
            await host.commit(repo_dir, f"fix: auto-heal {report.error_type} ({report.signature})")
            await host.push(repo_dir, branch)
        except HostError as e:
            return failed(f"push failed: {e}")

        if not healing.create_pull_request:
            logger.info(f"Pushed {branch} to {job.lock_key} (pull requests disabled)")
            return HealingResult(
                success=True,
                strategy=response.strategy,
                files_changed=files_changed,
                issue_url=issue_url,
            )

        try:
            pr = await host.create_pull_request(
                job.lock_key,
                title=f"Auto-heal: fix {report.error_type}",
                body=build_pr_body(job, files_changed, response.message),
                head=branch,
                base=base_branch or "main",
            )
        except HostError as e:
            return failed(f"PR creation failed: {e}")

        if github.auto_merge:
            try:
                green = await host.poll_checks(job.lock_key, branch, github.checks_timeout_seconds)
                if green and await host.merge(job.lock_key, pr.number, github.merge_method):
                    logger.info(f"Merged PR #{pr.number} on {job.lock_key}")
                else:
                    logger.info(f"Leaving PR #{pr.number} on {job.lock_key} open for review")
            except HostError as e:
                logger.warning(f"Auto-merge of PR #{pr.number} skipped: {e}")

        return HealingResult(
            success=True,
            strategy=response.strategy,
            files_changed=files_changed,
            pull_request_url=pr.url,
            issue_url=issue_url,
        )

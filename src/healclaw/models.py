"""Pydantic models for HealClaw configuration and state."""

from __future__ import annotations

import hashlib
import tempfile
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Longest raw log kept on a report
MAX_RAW_LOG_CHARS = 5000

# Message prefix length that goes into a signature
SIGNATURE_MESSAGE_PREFIX = 100


class Platform(str, Enum):
    """Where a failure was reported from."""

    CI_ACTIONS = "ci-actions"
    DEPLOY_PLATFORM = "deploy-platform"
    OTHER = "other"


class JobStatus(str, Enum):
    """Lifecycle of a healing job."""

    CREATED = "created"
    THROTTLED = "throttled"  # Terminal, skipped before running
    LOCK_TIMEOUT = "lock_timeout"  # Terminal, could not acquire the repository lease
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_skipped(self) -> bool:
        return self in (JobStatus.THROTTLED, JobStatus.LOCK_TIMEOUT)

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.CREATED, JobStatus.RUNNING)


class EventKind(str, Enum):
    """Kind of outbound notification event."""

    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class LockBackend(str, Enum):
    """Backend used for repository leases."""

    FILE = "file"
    SQLITE = "sqlite"
    MEMORY = "memory"


# ============================================================================
# Core data model
# ============================================================================


class ErrorReport(BaseModel):
    """One detected CI/CD failure, normalized by the detection layer.

    The repository key may arrive as ``repo`` or as the alternate ``project``
    identifier; ``repo_key`` checks both.
    """

    repo: str | None = None
    project: str | None = None
    branch: str | None = None
    platform: Platform = Platform.OTHER
    error_type: str = "unknown"
    message: str = ""
    raw_log: str | None = None
    timestamp: datetime | None = None
    signature: str | None = None

    # Extra context carried from detection, used in prompts and PR bodies
    workflow: str | None = None
    run_id: str | None = None
    log_url: str | None = None

    @field_validator("raw_log")
    @classmethod
    def _truncate_log(cls, value: str | None) -> str | None:
        if value is not None and len(value) > MAX_RAW_LOG_CHARS:
            return value[:MAX_RAW_LOG_CHARS]
        return value

    @property
    def repo_key(self) -> str | None:
        """Repository identity (``owner/repo``), or None when unkeyable."""
        return self.repo or self.project or None

    @staticmethod
    def compute_signature(
        platform: Platform | str,
        repo_key: str | None,
        error_type: str | None,
        message: str | None,
    ) -> str:
        """Stable hash identifying a recurring failure."""
        platform_value = platform.value if isinstance(platform, Platform) else platform
        prefix = (message or "")[:SIGNATURE_MESSAGE_PREFIX]
        source = f"{platform_value}:{repo_key}:{error_type}:{prefix}"
        return hashlib.sha256(source.encode()).hexdigest()[:16]

    @classmethod
    def create(cls, **fields: Any) -> "ErrorReport":
        """Build a report and fill in its signature if missing."""
        report = cls(**fields)
        if not report.signature:
            report.signature = cls.compute_signature(
                report.platform, report.repo_key, report.error_type, report.message
            )
        return report


class HealingResult(BaseModel):
    """Outcome of one healing job. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    success: bool
    strategy: str = "unknown"
    files_changed: list[str] = Field(default_factory=list)
    pull_request_url: str | None = None
    issue_url: str | None = None
    duration_ms: int = 0
    error: str | None = None


class HealingJob(BaseModel):
    """One scheduled attempt to fix a specific error report."""

    id: str
    report: ErrorReport
    workspace_path: Path | None = None
    status: JobStatus = JobStatus.CREATED
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: HealingResult | None = None
    skip_reason: str | None = None

    @property
    def lock_key(self) -> str:
        return self.report.repo_key or "unknown"

    @classmethod
    def for_report(cls, report: ErrorReport) -> "HealingJob":
        """Create a job with a process-unique ID."""
        repo = (report.repo_key or "unknown").replace("/", "-")
        return cls(id=f"heal-{repo}-{uuid.uuid4().hex[:12]}", report=report)


class HealingRecord(BaseModel):
    """A persisted healing outcome (one row of the history store)."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    timestamp: datetime = Field(default_factory=datetime.now)
    signature: str
    platform: str = Platform.OTHER.value
    repo_key: str
    branch: str | None = None
    workflow: str | None = None
    error_type: str | None = None
    error_message: str = ""
    status: str  # success, failed
    strategy: str = "unknown"
    files_changed: list[str] = Field(default_factory=list)
    pull_request_url: str | None = None
    issue_url: str | None = None
    duration_ms: int = 0
    error: str | None = None

    @classmethod
    def from_job(cls, job: HealingJob) -> "HealingRecord":
        """Flatten a finished job into a history record."""
        if job.result is None:
            raise ValueError(f"Job '{job.id}' has no result to record")

        report = job.report
        result = job.result
        return cls(
            job_id=job.id,
            timestamp=job.finished_at or datetime.now(),
            signature=report.signature or "",
            platform=report.platform.value,
            repo_key=job.lock_key,
            branch=report.branch,
            workflow=report.workflow,
            error_type=report.error_type,
            error_message=report.message[:500],
            status="success" if result.success else "failed",
            strategy=result.strategy,
            files_changed=list(result.files_changed),
            pull_request_url=result.pull_request_url,
            issue_url=result.issue_url,
            duration_ms=result.duration_ms,
            error=result.error,
        )


class ThrottleEntry(BaseModel):
    """Per-signature throttle ledger row."""

    signature: str
    last_attempt_at: datetime
    attempt_count_within_window: int = 0


class HealingEvent(BaseModel):
    """Notification event emitted by a pipeline step."""

    kind: EventKind
    job_id: str
    repo_key: str
    signature: str | None = None
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


class JobOutcome(BaseModel):
    """Final state of a job plus the events it produced."""

    job: HealingJob
    events: list[HealingEvent] = Field(default_factory=list)

    @property
    def status(self) -> JobStatus:
        return self.job.status


class RunSummary(BaseModel):
    """Aggregated outcome of one orchestrator run."""

    total: int = 0
    healed: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: list[JobOutcome] = Field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: list[JobOutcome]) -> "RunSummary":
        return cls(
            total=len(outcomes),
            healed=sum(1 for o in outcomes if o.status == JobStatus.SUCCEEDED),
            failed=sum(1 for o in outcomes if o.status == JobStatus.FAILED),
            skipped=sum(1 for o in outcomes if o.status.is_skipped),
            outcomes=outcomes,
        )


# ============================================================================
# Configuration
# ============================================================================


class HealingConfig(BaseModel):
    """Healing behaviour and rate limits."""

    max_concurrent: int = Field(default=3, ge=1)  # Jobs per batch
    cooldown_seconds: int = 300
    max_attempts_per_error: int = 3
    attempt_window_seconds: int = 86400  # Rolling window for max_attempts
    branch_prefix: str = "auto-fix/"
    create_pull_request: bool = True
    fix_timeout_seconds: int = 300


class SafetyConfig(BaseModel):
    """Static safety rails."""

    blocked_repositories: list[str] = Field(default_factory=list)


class WorkspaceConfig(BaseModel):
    """Workspace isolation and repository lease settings."""

    base_dir: str | None = None
    lock_backend: LockBackend = LockBackend.FILE
    lock_timeout_seconds: float = 60
    lock_poll_interval: float = 0.5
    stale_lock_seconds: float = 600
    max_age_seconds: float = 3600
    sweep_on_start: bool = True

    def get_base_dir(self) -> Path:
        """Resolve the workspace base directory."""
        if self.base_dir:
            return Path(self.base_dir).expanduser()
        return Path(tempfile.gettempdir()) / "healclaw-workspaces"


class GitHubConfig(BaseModel):
    """Repository host (GitHub) settings."""

    enabled: bool = True
    token: str | None = None
    api_url: str = "https://api.github.com"
    clone_url_template: str = "https://github.com/{repo}.git"
    auto_create_issue: bool = False
    auto_merge: bool = False
    merge_method: str = "squash"
    checks_timeout_seconds: int = 300
    checks_poll_interval: float = 15
    reviewers: list[str] = Field(default_factory=list)
    pr_labels: list[str] = Field(default_factory=lambda: ["auto-fix", "bot"])
    issue_labels: list[str] = Field(default_factory=lambda: ["bug", "auto-detected"])


class OpenClawConfig(BaseModel):
    """Fix agent (OpenClaw gateway / local agent CLI) settings."""

    enabled: bool = True
    gateway_url: str = "http://localhost:18789"
    cli_command: str = "claude"
    timeout_seconds: int = 300


class NotifyConfig(BaseModel):
    """Notification settings."""

    discord_webhook_url: str | None = None
    on_started: bool = True
    on_success: bool = True
    on_failure: bool = True
    on_skipped: bool = False

    def wants(self, kind: EventKind) -> bool:
        """Whether events of this kind should be delivered."""
        return {
            EventKind.STARTED: self.on_started,
            EventKind.SUCCEEDED: self.on_success,
            EventKind.FAILED: self.on_failure,
            EventKind.SKIPPED: self.on_skipped,
        }[kind]


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str | None = None


class HealClawConfig(BaseModel):
    """Main HealClaw configuration."""

    db_path: str | None = None  # Defaults to ~/.healclaw/healclaw.db
    healing: HealingConfig = Field(default_factory=HealingConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    openclaw: OpenClawConfig = Field(default_factory=OpenClawConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

"""Tests for the core data model."""

import hashlib

import pytest

from healclaw.models import (
    MAX_RAW_LOG_CHARS,
    ErrorReport,
    HealingJob,
    HealingRecord,
    HealingResult,
    JobOutcome,
    JobStatus,
    Platform,
    RunSummary,
)


class TestErrorReport:
    """Report normalization and signatures."""

    def test_signature_is_stable(self):
        a = ErrorReport.create(repo="acme/api", platform="ci-actions", error_type="build", message="boom")
        b = ErrorReport.create(repo="acme/api", platform="ci-actions", error_type="build", message="boom")

        expected = hashlib.sha256(b"ci-actions:acme/api:build:boom").hexdigest()[:16]
        assert a.signature == b.signature == expected

    def test_signature_uses_message_prefix(self):
        base = "x" * 100
        a = ErrorReport.create(repo="acme/api", message=base + " at line 1")
        b = ErrorReport.create(repo="acme/api", message=base + " at line 2")

        assert a.signature == b.signature

    def test_explicit_signature_kept(self):
        report = ErrorReport.create(repo="acme/api", signature="0123456789abcdef")

        assert report.signature == "0123456789abcdef"

    def test_project_is_alternate_key(self):
        assert ErrorReport(project="acme/web").repo_key == "acme/web"
        assert ErrorReport(repo="", project="").repo_key is None

    def test_raw_log_truncated(self):
        report = ErrorReport(repo="acme/api", raw_log="y" * (MAX_RAW_LOG_CHARS + 10))

        assert len(report.raw_log) == MAX_RAW_LOG_CHARS

    def test_unknown_platform_rejected(self):
        with pytest.raises(ValueError):
            ErrorReport(repo="acme/api", platform="mainframe")


class TestJobStatus:
    """Status predicates."""

    @pytest.mark.parametrize("status", [JobStatus.THROTTLED, JobStatus.LOCK_TIMEOUT])
    def test_skipped(self, status):
        assert status.is_skipped
        assert status.is_terminal

    @pytest.mark.parametrize("status", [JobStatus.CREATED, JobStatus.RUNNING])
    def test_not_terminal(self, status):
        assert not status.is_terminal


class TestHealingRecord:
    """Flattening jobs into history rows."""

    def test_from_job(self):
        report = ErrorReport.create(repo="acme/api", platform=Platform.CI_ACTIONS, message="boom")
        job = HealingJob.for_report(report)
        job.status = JobStatus.SUCCEEDED
        job.result = HealingResult(success=True, strategy="ai-fix", files_changed=["a.py"])

        record = HealingRecord.from_job(job)

        assert record.status == "success"
        assert record.repo_key == "acme/api"
        assert record.platform == "ci-actions"
        assert record.files_changed == ["a.py"]

    def test_from_job_without_result(self):
        job = HealingJob.for_report(ErrorReport.create(repo="acme/api"))

        with pytest.raises(ValueError):
            HealingRecord.from_job(job)

    def test_job_ids_unique(self):
        report = ErrorReport.create(repo="acme/api")

        assert HealingJob.for_report(report).id != HealingJob.for_report(report).id
        assert HealingJob.for_report(report).id.startswith("heal-acme-api-")


class TestRunSummary:
    """Run aggregation."""

    def test_from_outcomes(self):
        def outcome(status):
            job = HealingJob.for_report(ErrorReport.create(repo="acme/api"))
            job.status = status
            return JobOutcome(job=job)

        summary = RunSummary.from_outcomes([
            outcome(JobStatus.SUCCEEDED),
            outcome(JobStatus.FAILED),
            outcome(JobStatus.THROTTLED),
            outcome(JobStatus.LOCK_TIMEOUT),
        ])

        assert (summary.total, summary.healed, summary.failed, summary.skipped) == (4, 1, 1, 2)

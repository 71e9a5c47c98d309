"""Healing history store and pattern analysis."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

from healclaw.models import HealingRecord

if TYPE_CHECKING:
    from healclaw.db import Database

# Recommendation thresholds
RECENT_FAILURE_THRESHOLD = 5
RECENT_WINDOW = timedelta(hours=24)
LOW_SUCCESS_MIN_ATTEMPTS = 3
LOW_SUCCESS_RATE = 0.3
RECURRING_MIN_COUNT = 2
RECURRING_ALERT_COUNT = 5


@dataclass
class GroupStats:
    """Attempt counts for one repository or platform."""

    total: int = 0
    succeeded: int = 0

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 0.0


@dataclass
class RecurringError:
    """A signature seen more than once."""

    signature: str
    count: int
    repo_key: str
    platform: str
    error_message: str
    last_seen: datetime


@dataclass
class HistoryAnalysis:
    """Aggregate view over the healing history."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    avg_duration_seconds: float | None = None
    min_duration_seconds: float | None = None
    max_duration_seconds: float | None = None
    by_repository: dict[str, GroupStats] = field(default_factory=dict)
    by_platform: dict[str, GroupStats] = field(default_factory=dict)
    by_strategy: dict[str, int] = field(default_factory=dict)
    recurring: list[RecurringError] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 0.0


class HistoryStore:
    """Append-only ledger of healing outcomes backed by SQLite."""

    def __init__(self, db: "Database", clock: Callable[[], datetime] = datetime.now):
        self._db = db
        self._clock = clock

    def append(self, record: HealingRecord) -> None:
        """Persist one healing outcome."""
        self._db.add_heal_record(record)
        logger.debug(f"Recorded {record.status} outcome for {record.repo_key} ({record.signature})")

    def query(
        self,
        signature: str | None = None,
        repo_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[HealingRecord]:
        """Query outcomes, newest first."""
        return self._db.get_heal_records(
            signature=signature,
            repo_key=repo_key,
            since=since,
            until=until,
            status=status,
            limit=limit,
        )

    def count(self) -> int:
        return self._db.count_heal_records()

    def cleanup(self, days: int = 90) -> int:
        """Delete outcomes older than ``days``."""
        deleted = self._db.cleanup_old_heal_records(days)
        if deleted:
            logger.info(f"Deleted {deleted} history records older than {days} days")
        return deleted

    def stats(self) -> dict:
        """Headline counts for status displays."""
        analysis = self.analyze()
        return {
            "total": analysis.total,
            "succeeded": analysis.succeeded,
            "failed": analysis.failed,
            "success_rate": analysis.success_rate,
        }

    def analyze(self) -> HistoryAnalysis:
        """Summarize outcomes and flag repositories that need attention."""
        records = self.query()
        analysis = HistoryAnalysis(total=len(records))
        if not records:
            return analysis

        analysis.succeeded = sum(1 for r in records if r.status == "success")
        analysis.failed = analysis.total - analysis.succeeded

        durations = [r.duration_ms / 1000 for r in records if r.duration_ms > 0]
        if durations:
            analysis.avg_duration_seconds = sum(durations) / len(durations)
            analysis.min_duration_seconds = min(durations)
            analysis.max_duration_seconds = max(durations)

        signatures: dict[str, RecurringError] = {}
        for record in records:
            success = record.status == "success"
            for groups, key in (
                (analysis.by_repository, record.repo_key or "unknown"),
                (analysis.by_platform, record.platform or "unknown"),
            ):
                stats = groups.setdefault(key, GroupStats())
                stats.total += 1
                stats.succeeded += int(success)

            strategy = record.strategy or "unknown"
            analysis.by_strategy[strategy] = analysis.by_strategy.get(strategy, 0) + 1

            entry = signatures.get(record.signature)
            if entry is None:
                signatures[record.signature] = RecurringError(
                    signature=record.signature,
                    count=1,
                    repo_key=record.repo_key,
                    platform=record.platform,
                    error_message=record.error_message,
                    last_seen=record.timestamp,
                )
            else:
                entry.count += 1
                entry.last_seen = max(entry.last_seen, record.timestamp)

        analysis.recurring = sorted(
            (e for e in signatures.values() if e.count >= RECURRING_MIN_COUNT),
            key=lambda e: e.count,
            reverse=True,
        )
        analysis.recommendations = self._recommend(records, analysis)
        return analysis

    def _recommend(self, records: list[HealingRecord], analysis: HistoryAnalysis) -> list[str]:
        recommendations = []
        cutoff = self._clock() - RECENT_WINDOW

        for repo_key in analysis.by_repository:
            recent_failures = sum(
                1 for r in records
                if r.repo_key == repo_key and r.status == "failed" and r.timestamp >= cutoff
            )
            if recent_failures >= RECENT_FAILURE_THRESHOLD:
                recommendations.append(
                    f'Repository "{repo_key}" has failed {recent_failures} times in the last '
                    f"24 hours. Consider manual review of the root cause."
                )

        for repo_key, stats in analysis.by_repository.items():
            if stats.total >= LOW_SUCCESS_MIN_ATTEMPTS and stats.success_rate < LOW_SUCCESS_RATE:
                recommendations.append(
                    f'Repository "{repo_key}" has a low success rate '
                    f"({stats.success_rate:.0%}). The errors may require manual intervention."
                )

        for entry in analysis.recurring:
            if entry.count >= RECURRING_ALERT_COUNT:
                recommendations.append(
                    f"Error {entry.signature} in {entry.repo_key} has occurred {entry.count} "
                    f"times. Consider a permanent fix."
                )

        return recommendations

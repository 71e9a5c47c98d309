"""Safety throttle for HealClaw.

Per-signature cooldown and attempt ceiling, plus a static repository
blocklist. Keeps an in-memory ledger loaded from the database at startup;
every mutation is flushed as an append-only row.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock
from typing import TYPE_CHECKING

from loguru import logger

from healclaw.models import ErrorReport, ThrottleEntry

if TYPE_CHECKING:
    from healclaw.db import Database
    from healclaw.models import HealingConfig, SafetyConfig

SIGNATURE_PATTERN = re.compile(r"^[0-9a-f]{8,64}$")


class SkipReason:
    """Skip reason constants."""

    INVALID_SIGNATURE = "invalid-signature"
    BLOCKED_REPOSITORY = "blocked-repository"
    COOLDOWN = "cooldown"
    MAX_ATTEMPTS = "max-attempts"
    LOCK_TIMEOUT = "lock-timeout"


@dataclass
class _LedgerRow:
    last_attempt_at: datetime
    attempts: list[datetime] = field(default_factory=list)


class SafetyThrottle:
    """Blocks repeated healing of the same failure.

    A signature may start a new job only when its last attempt is at least
    ``cooldown_seconds`` old and it has fewer than ``max_attempts`` counted
    attempts inside the rolling window.
    """

    def __init__(
        self,
        db: "Database",
        cooldown_seconds: float = 300,
        max_attempts: int = 3,
        window_seconds: float = 86400,
        blocked_repositories: list[str] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the throttle.

        Args:
            db: Database holding the throttle ledger
            cooldown_seconds: Minimum time between attempts for a signature
            max_attempts: Attempt ceiling inside the rolling window
            window_seconds: Rolling window length
            blocked_repositories: Repository keys that are never healed
            clock: Time source
        """
        self._db = db
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._max_attempts = max_attempts
        self._window = timedelta(seconds=window_seconds)
        self._blocked = set(blocked_repositories or [])
        self._clock = clock

        self._ledger: dict[str, _LedgerRow] = {}
        self._lock = Lock()

        self._load_from_db()

    @classmethod
    def from_config(
        cls,
        db: "Database",
        healing: "HealingConfig",
        safety: "SafetyConfig",
        clock: Callable[[], datetime] = datetime.now,
    ) -> "SafetyThrottle":
        return cls(
            db,
            cooldown_seconds=healing.cooldown_seconds,
            max_attempts=healing.max_attempts_per_error,
            window_seconds=healing.attempt_window_seconds,
            blocked_repositories=safety.blocked_repositories,
            clock=clock,
        )

    def _load_from_db(self) -> None:
        """Load ledger rows that can still affect a decision."""
        since = self._clock() - max(self._window, self._cooldown)
        rows = self._db.get_throttle_attempts(since=since)

        with self._lock:
            for row in rows:
                attempted_at = datetime.fromisoformat(row["attempted_at"])
                self._apply(row["signature"], attempted_at, bool(row["counted"]))

        logger.debug(f"Loaded {len(rows)} throttle ledger rows for {len(self._ledger)} signatures")

    def _apply(self, signature: str, at: datetime, counted: bool) -> None:
        entry = self._ledger.get(signature)
        if entry is None:
            entry = _LedgerRow(last_attempt_at=at)
            self._ledger[signature] = entry
        entry.last_attempt_at = max(entry.last_attempt_at, at)
        if counted:
            entry.attempts.append(at)
        self._prune(entry, self._clock())

    def _prune(self, entry: _LedgerRow, now: datetime) -> None:
        window_start = now - self._window
        entry.attempts = [a for a in entry.attempts if a > window_start]

    @staticmethod
    def is_valid_signature(signature: str | None) -> bool:
        return bool(signature) and SIGNATURE_PATTERN.match(signature) is not None

    def get_entry(self, signature: str) -> ThrottleEntry | None:
        """Get the current ledger entry for a signature."""
        now = self._clock()
        with self._lock:
            entry = self._ledger.get(signature)
            if entry is None:
                return None
            self._prune(entry, now)
            return ThrottleEntry(
                signature=signature,
                last_attempt_at=entry.last_attempt_at,
                attempt_count_within_window=len(entry.attempts),
            )

    def should_skip(self, report: ErrorReport) -> tuple[bool, str | None]:
        """Check whether a report must not be healed right now.

        Has no side effects.

        Returns:
            Tuple of (skip, reason)
        """
        if not self.is_valid_signature(report.signature):
            return True, SkipReason.INVALID_SIGNATURE

        if report.repo_key in self._blocked:
            return True, SkipReason.BLOCKED_REPOSITORY

        entry = self.get_entry(report.signature)
        if entry is None:
            return False, None

        if self._clock() - entry.last_attempt_at < self._cooldown:
            return True, SkipReason.COOLDOWN

        if entry.attempt_count_within_window >= self._max_attempts:
            return True, SkipReason.MAX_ATTEMPTS

        return False, None

    def record_attempt(self, report: ErrorReport) -> None:
        """Record a job start for the report's signature."""
        self._record(report, counted=True)

    def record_completion(self, report: ErrorReport) -> None:
        """Move the cooldown forward to a job's completion time."""
        self._record(report, counted=False)

    def _record(self, report: ErrorReport, counted: bool) -> None:
        if not self.is_valid_signature(report.signature):
            logger.warning(f"Not recording throttle entry for invalid signature {report.signature!r}")
            return

        now = self._clock()
        with self._lock:
            self._apply(report.signature, now, counted)
            self._db.add_throttle_attempt(report.signature, report.repo_key, now, counted=counted)

        if counted:
            logger.debug(f"Recorded healing attempt for {report.signature} ({report.repo_key})")

    def reset(self) -> int:
        """Forget the in-memory ledger. Returns the number of signatures cleared."""
        with self._lock:
            count = len(self._ledger)
            self._ledger.clear()
            return count

    def get_stats(self) -> dict:
        """Get throttle statistics."""
        with self._lock:
            return {
                "signatures": len(self._ledger),
                "blocked_repositories": sorted(self._blocked),
                "cooldown_seconds": self._cooldown.total_seconds(),
                "max_attempts": self._max_attempts,
                "window_seconds": self._window.total_seconds(),
            }

"""SQLite database for HealClaw history, throttle ledger and leases."""

from __future__ import annotations

import json
import shutil
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator

from loguru import logger

from healclaw.config import DEFAULT_DB_FILE
from healclaw.models import HealingRecord

# Schema version stored in schema_version
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Healing outcomes (append-only)
CREATE TABLE IF NOT EXISTS heal_history (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    signature TEXT NOT NULL,
    platform TEXT,
    repo_key TEXT NOT NULL,
    branch TEXT,
    workflow TEXT,
    error_type TEXT,
    error_message TEXT,
    status TEXT NOT NULL,
    strategy TEXT,
    files_changed TEXT,
    pull_request_url TEXT,
    issue_url TEXT,
    duration_ms INTEGER DEFAULT 0,
    error TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Throttle ledger (append-only, aged out by window)
CREATE TABLE IF NOT EXISTS throttle_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    signature TEXT NOT NULL,
    repo_key TEXT,
    attempted_at TEXT NOT NULL,
    counted INTEGER NOT NULL DEFAULT 1
);

-- Repository leases
CREATE TABLE IF NOT EXISTS repo_locks (
    lock_key TEXT PRIMARY KEY,
    holder_id TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_heal_signature ON heal_history(signature);
CREATE INDEX IF NOT EXISTS idx_heal_timestamp ON heal_history(timestamp);
CREATE INDEX IF NOT EXISTS idx_heal_repo ON heal_history(repo_key);
CREATE INDEX IF NOT EXISTS idx_heal_status ON heal_history(status);
CREATE INDEX IF NOT EXISTS idx_throttle_signature ON throttle_attempts(signature, attempted_at);
"""


class Database:
    """SQLite database manager for HealClaw.

    Every public method opens its own connection and commits before
    returning, so each mutation is durable once the call completes. Calls
    are serialized by a process-wide lock.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize the database."""
        self.db_path = Path(db_path or DEFAULT_DB_FILE)
        self._lock = threading.RLock()
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure the database exists and is up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._init_schema()
        except sqlite3.DatabaseError as e:
            message = str(e).lower()
            if "malformed" not in message and "corrupt" not in message and "not a database" not in message:
                raise

            logger.error(f"Database corruption detected at {self.db_path}: {e}")
            backup_path = self.db_path.with_suffix(".db.corrupt")
            try:
                shutil.move(str(self.db_path), str(backup_path))
                logger.warning(f"Moved corrupted database to {backup_path}")
            except OSError as move_error:
                logger.error(f"Failed to backup corrupted database: {move_error}")
                self.db_path.unlink(missing_ok=True)

            self._init_schema()
            logger.info(f"Created fresh database at {self.db_path}")

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)

            cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
            row = cursor.fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.debug(f"Initialized database at {self.db_path}")

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        with self._lock:
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    # =========================================================================
    # Healing History Methods
    # =========================================================================

    def add_heal_record(self, record: HealingRecord) -> None:
        """Append a healing outcome."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO heal_history (
                    id, job_id, timestamp, signature, platform, repo_key,
                    branch, workflow, error_type, error_message, status,
                    strategy, files_changed, pull_request_url, issue_url,
                    duration_ms, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.job_id,
                    record.timestamp.isoformat(),
                    record.signature,
                    record.platform,
                    record.repo_key,
                    record.branch,
                    record.workflow,
                    record.error_type,
                    record.error_message,
                    record.status,
                    record.strategy,
                    json.dumps(record.files_changed),
                    record.pull_request_url,
                    record.issue_url,
                    record.duration_ms,
                    record.error,
                ),
            )

    def get_heal_records(
        self,
        signature: str | None = None,
        repo_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[HealingRecord]:
        """Query healing outcomes, newest first."""
        query = "SELECT * FROM heal_history WHERE 1=1"
        params: list = []

        if signature:
            query += " AND signature = ?"
            params.append(signature)
        if repo_key:
            query += " AND repo_key = ?"
            params.append(repo_key)
        if since:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())
        if until:
            query += " AND timestamp < ?"
            params.append(until.isoformat())
        if status:
            query += " AND status = ?"
            params.append(status)

        query += " ORDER BY timestamp DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_record(row) for row in rows]

    def count_heal_records(self) -> int:
        """Count all healing outcomes."""
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM heal_history").fetchone()[0]

    def cleanup_old_heal_records(self, days: int = 90) -> int:
        """Delete outcomes older than the given number of days."""
        cutoff = datetime.now() - timedelta(days=days)
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM heal_history WHERE timestamp < ?",
                (cutoff.isoformat(),),
            )
            return cursor.rowcount

    def _row_to_record(self, row: sqlite3.Row) -> HealingRecord:
        """Convert a database row to a HealingRecord."""
        files_changed: list[str] = []
        if row["files_changed"]:
            try:
                files_changed = json.loads(row["files_changed"])
            except json.JSONDecodeError:
                logger.warning(f"Invalid files_changed for record {row['id']}")

        return HealingRecord(
            id=row["id"],
            job_id=row["job_id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            signature=row["signature"],
            platform=row["platform"] or "other",
            repo_key=row["repo_key"],
            branch=row["branch"],
            workflow=row["workflow"],
            error_type=row["error_type"],
            error_message=row["error_message"] or "",
            status=row["status"],
            strategy=row["strategy"] or "unknown",
            files_changed=files_changed,
            pull_request_url=row["pull_request_url"],
            issue_url=row["issue_url"],
            duration_ms=row["duration_ms"] or 0,
            error=row["error"],
        )

    # =========================================================================
    # Throttle Ledger Methods
    # =========================================================================

    def add_throttle_attempt(
        self,
        signature: str,
        repo_key: str | None,
        attempted_at: datetime,
        counted: bool = True,
    ) -> None:
        """Append a throttle ledger row.

        ``counted`` rows count towards the attempt ceiling; uncounted rows
        only move the cooldown forward.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO throttle_attempts (signature, repo_key, attempted_at, counted)
                VALUES (?, ?, ?, ?)
                """,
                (signature, repo_key, attempted_at.isoformat(), 1 if counted else 0),
            )

    def get_throttle_attempts(self, since: datetime) -> list[dict]:
        """Get ledger rows newer than ``since``, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT signature, repo_key, attempted_at, counted
                FROM throttle_attempts
                WHERE attempted_at >= ?
                ORDER BY attempted_at ASC
                """,
                (since.isoformat(),),
            ).fetchall()
            return [dict(row) for row in rows]

    # =========================================================================
    # Repository Lease Methods
    # =========================================================================

    def insert_lock(self, lock_key: str, holder_id: str, acquired_at: datetime) -> bool:
        """Insert a lease row; fails if one already exists."""
        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO repo_locks (lock_key, holder_id, acquired_at) VALUES (?, ?, ?)",
                    (lock_key, holder_id, acquired_at.isoformat()),
                )
                return True
            except sqlite3.IntegrityError:
                return False

    def delete_lock(self, lock_key: str, holder_id: str | None = None) -> bool:
        """Delete a lease row (only the holder's, when given)."""
        with self._connect() as conn:
            if holder_id is None:
                cursor = conn.execute("DELETE FROM repo_locks WHERE lock_key = ?", (lock_key,))
            else:
                cursor = conn.execute(
                    "DELETE FROM repo_locks WHERE lock_key = ? AND holder_id = ?",
                    (lock_key, holder_id),
                )
            return cursor.rowcount > 0

    def get_lock(self, lock_key: str) -> dict | None:
        """Get a lease row."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM repo_locks WHERE lock_key = ?", (lock_key,)
            ).fetchone()
            return dict(row) if row else None

    def get_all_locks(self) -> list[dict]:
        """Get all lease rows."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM repo_locks ORDER BY acquired_at").fetchall()
            return [dict(row) for row in rows]

    # =========================================================================
    # Maintenance
    # =========================================================================

    def reset(self) -> None:
        """Clear history, throttle ledger and leases."""
        with self._connect() as conn:
            conn.execute("DELETE FROM heal_history")
            conn.execute("DELETE FROM throttle_attempts")
            conn.execute("DELETE FROM repo_locks")
        logger.info(f"Reset database at {self.db_path}")

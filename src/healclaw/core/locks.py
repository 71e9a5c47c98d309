"""Repository leases for HealClaw.

A lease is an exclusive, time-bounded claim on a repository. Providers
implement an atomic create-or-fail primitive; the staleness policy
(reclaiming leases abandoned by crashed holders) lives in LockManager so it
can be tested without touching the filesystem.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from healclaw.db import Database

# Leases older than this are considered abandoned (10 minutes)
DEFAULT_STALE_AFTER_SECONDS = 600

# Seconds between acquisition attempts while contended
DEFAULT_POLL_INTERVAL = 0.5


def sanitize_key(key: str) -> str:
    """Make a repository key safe for use in file names."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", key)


@dataclass
class LockInfo:
    """Information about a lease."""

    key: str
    holder_id: str | None
    acquired_at: datetime

    @property
    def age_seconds(self) -> float:
        """Seconds since the lease was acquired."""
        return (datetime.now() - self.acquired_at).total_seconds()

    def is_stale(self, stale_after_seconds: float) -> bool:
        return self.age_seconds >= stale_after_seconds


class LockProvider(ABC):
    """Abstract base class for lease providers."""

    @abstractmethod
    def try_acquire(self, key: str, holder_id: str) -> bool:
        """Atomically create the lease for ``key``.

        Returns:
            True if the lease was created, False if one already exists
        """
        pass

    @abstractmethod
    def release(self, key: str, holder_id: str | None = None) -> bool:
        """Delete the lease for ``key``. Idempotent.

        When ``holder_id`` is given, a lease held by someone else is left
        in place.

        Returns:
            True if no lease for this holder remains
        """
        pass

    @abstractmethod
    def get_lock_info(self, key: str) -> LockInfo | None:
        """Get lease information, or None if unlocked."""
        pass

    @abstractmethod
    def force_release(self, key: str) -> None:
        """Remove a lease regardless of its holder."""
        pass

    @abstractmethod
    def list_locks(self) -> list[LockInfo]:
        """List all current leases."""
        pass

    def is_locked(self, key: str) -> bool:
        return self.get_lock_info(key) is not None


class FileLockProvider(LockProvider):
    """File-based lease provider.

    Each lease is a file created with O_CREAT | O_EXCL, so exactly one of
    several concurrent acquirers succeeds. The file holds JSON with the
    holder ID and acquisition time.
    """

    def __init__(self, lock_dir: Path):
        """Initialize with lock directory.

        Args:
            lock_dir: Directory to store lease files
        """
        self._lock_dir = Path(lock_dir)
        self._lock_dir.mkdir(parents=True, exist_ok=True)

    @property
    def lock_dir(self) -> Path:
        return self._lock_dir

    def lock_file(self, key: str) -> Path:
        """Get the lease file path for a key."""
        return self._lock_dir / f"{sanitize_key(key)}.lock"

    def try_acquire(self, key: str, holder_id: str) -> bool:
        lock_file = self.lock_file(key)
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        payload = {
            "holderId": holder_id,
            "acquiredAt": datetime.now().isoformat(),
            "repoKey": key,
            "pid": os.getpid(),
        }
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f)
        return True

    def _read(self, lock_file: Path) -> dict | None:
        """Read lease content; None when absent, {} when unreadable."""
        try:
            content = lock_file.read_text()
        except FileNotFoundError:
            return None
        try:
            data = json.loads(content)
            return data if isinstance(data, dict) else {}
        except json.JSONDecodeError:
            # Holder may still be writing, or crashed mid-write
            return {}

    def release(self, key: str, holder_id: str | None = None) -> bool:
        lock_file = self.lock_file(key)
        data = self._read(lock_file)
        if data is None:
            return True

        if holder_id is not None and data.get("holderId") not in (None, holder_id):
            logger.warning(f"Not releasing lease for '{key}': held by {data.get('holderId')}")
            return False

        lock_file.unlink(missing_ok=True)
        return True

    def get_lock_info(self, key: str) -> LockInfo | None:
        lock_file = self.lock_file(key)
        data = self._read(lock_file)
        if data is None:
            return None

        acquired_at = None
        if data.get("acquiredAt"):
            try:
                acquired_at = datetime.fromisoformat(data["acquiredAt"])
            except ValueError:
                pass
        if acquired_at is None:
            try:
                acquired_at = datetime.fromtimestamp(lock_file.stat().st_mtime)
            except FileNotFoundError:
                return None

        return LockInfo(
            key=data.get("repoKey") or key,
            holder_id=data.get("holderId"),
            acquired_at=acquired_at,
        )

    def force_release(self, key: str) -> None:
        self.lock_file(key).unlink(missing_ok=True)

    def list_locks(self) -> list[LockInfo]:
        locks = []
        for lock_file in sorted(self._lock_dir.glob("*.lock")):
            info = self.get_lock_info(lock_file.stem)
            if info is not None:
                locks.append(info)
        return locks

    def remove_all(self) -> int:
        """Remove every lease file."""
        count = 0
        for lock_file in self._lock_dir.glob("*.lock"):
            try:
                lock_file.unlink()
                count += 1
            except OSError as e:
                logger.warning(f"Failed to remove lease file {lock_file}: {e}")
        return count


class SQLiteLockProvider(LockProvider):
    """SQLite-based lease provider.

    Uses the primary key of the ``repo_locks`` table as the
    create-or-fail primitive.
    """

    def __init__(self, db: "Database"):
        self._db = db

    def try_acquire(self, key: str, holder_id: str) -> bool:
        return self._db.insert_lock(key, holder_id, datetime.now())

    def release(self, key: str, holder_id: str | None = None) -> bool:
        row = self._db.get_lock(key)
        if row is None:
            return True
        if holder_id is not None and row["holder_id"] != holder_id:
            logger.warning(f"Not releasing lease for '{key}': held by {row['holder_id']}")
            return False
        self._db.delete_lock(key, holder_id)
        return True

    def get_lock_info(self, key: str) -> LockInfo | None:
        row = self._db.get_lock(key)
        if row is None:
            return None
        return LockInfo(
            key=key,
            holder_id=row["holder_id"],
            acquired_at=datetime.fromisoformat(row["acquired_at"]),
        )

    def force_release(self, key: str) -> None:
        self._db.delete_lock(key)

    def list_locks(self) -> list[LockInfo]:
        return [
            LockInfo(
                key=row["lock_key"],
                holder_id=row["holder_id"],
                acquired_at=datetime.fromisoformat(row["acquired_at"]),
            )
            for row in self._db.get_all_locks()
        ]


class MemoryLockProvider(LockProvider):
    """In-process lease provider."""

    def __init__(self):
        self._locks: dict[str, LockInfo] = {}
        self._lock = Lock()

    def try_acquire(self, key: str, holder_id: str) -> bool:
        with self._lock:
            if key in self._locks:
                return False
            self._locks[key] = LockInfo(key=key, holder_id=holder_id, acquired_at=datetime.now())
            return True

    def release(self, key: str, holder_id: str | None = None) -> bool:
        with self._lock:
            info = self._locks.get(key)
            if info is None:
                return True
            if holder_id is not None and info.holder_id != holder_id:
                return False
            del self._locks[key]
            return True

    def get_lock_info(self, key: str) -> LockInfo | None:
        with self._lock:
            return self._locks.get(key)

    def force_release(self, key: str) -> None:
        with self._lock:
            self._locks.pop(key, None)

    def list_locks(self) -> list[LockInfo]:
        with self._lock:
            return list(self._locks.values())

    def set_acquired_at(self, key: str, acquired_at: datetime) -> None:
        """Backdate a lease (used to simulate abandoned holders)."""
        with self._lock:
            if key in self._locks:
                self._locks[key].acquired_at = acquired_at


class LockManager:
    """High-level lease manager with polling and stale reclamation.

    Wraps a LockProvider: on contention, a lease older than
    ``stale_after_seconds`` is removed and acquisition retried immediately;
    otherwise the manager polls every ``poll_interval`` seconds until the
    timeout elapses.
    """

    def __init__(
        self,
        provider: LockProvider,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        default_timeout: float = 60,
    ):
        """Initialize the lock manager.

        Args:
            provider: Lease provider implementation
            stale_after_seconds: Age after which a lease may be reclaimed
            poll_interval: Seconds between attempts while contended
            default_timeout: Default acquisition timeout in seconds
        """
        self._provider = provider
        self._stale_after = stale_after_seconds
        self._poll_interval = poll_interval
        self._default_timeout = default_timeout

        # Default holder ID for this instance
        self._holder_id = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"

    @property
    def provider(self) -> LockProvider:
        return self._provider

    @property
    def holder_id(self) -> str:
        return self._holder_id

    def try_acquire(self, key: str, holder_id: str | None = None) -> bool:
        """Single acquisition attempt, reclaiming a stale lease once."""
        holder = holder_id or self._holder_id
        if self._provider.try_acquire(key, holder):
            return True

        info = self._provider.get_lock_info(key)
        if info is not None and info.is_stale(self._stale_after):
            logger.warning(
                f"Removing stale lease for '{key}' "
                f"(holder {info.holder_id}, age {info.age_seconds:.0f}s)"
            )
            self._provider.force_release(key)
            return self._provider.try_acquire(key, holder)

        return False

    async def acquire(
        self,
        key: str,
        timeout_seconds: float | None = None,
        holder_id: str | None = None,
    ) -> bool:
        """Acquire the lease for ``key``, waiting up to the timeout.

        Returns:
            True if acquired, False on timeout
        """
        timeout = self._default_timeout if timeout_seconds is None else timeout_seconds
        deadline = time.monotonic() + timeout

        while True:
            if self.try_acquire(key, holder_id):
                logger.debug(f"Lease acquired for '{key}'")
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self._poll_interval, remaining))

        logger.warning(f"Timed out after {timeout}s waiting for lease on '{key}'")
        return False

    def release(self, key: str, holder_id: str | None = None) -> bool:
        """Release the lease for ``key``. Idempotent."""
        released = self._provider.release(key, holder_id or self._holder_id)
        if released:
            logger.debug(f"Lease released for '{key}'")
        return released

    def is_locked(self, key: str) -> bool:
        return self._provider.is_locked(key)

    @asynccontextmanager
    async def lock(self, key: str, timeout_seconds: float | None = None):
        """Context manager for acquiring and releasing a lease.

        Usage:
            async with lock_manager.lock("owner/repo"):
                # Do work while holding the lease
                pass
        """
        acquired = await self.acquire(key, timeout_seconds)

        if not acquired:
            raise LockAcquisitionError(f"Failed to acquire lease for '{key}'")

        try:
            yield
        finally:
            self.release(key)


class LockAcquisitionError(Exception):
    """Raised when lease acquisition fails."""
    pass

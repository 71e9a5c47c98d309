"""Isolated workspaces and repository leases for healing jobs."""

from __future__ import annotations

import json
import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from healclaw.core.locks import (
    FileLockProvider,
    LockManager,
    LockProvider,
    MemoryLockProvider,
    SQLiteLockProvider,
    sanitize_key,
)
from healclaw.models import LockBackend

if TYPE_CHECKING:
    from healclaw.db import Database
    from healclaw.models import WorkspaceConfig

META_FILE = ".workspace-meta.json"
LOCK_DIR_NAME = ".locks"


class WorkspaceManager:
    """Creates per-job working directories and guards repositories with leases.

    Workspaces live under a private base directory and are never reused.
    Each carries a metadata record so a later sweep can find directories
    leaked by crashed runs.
    """

    def __init__(
        self,
        base_dir: Path,
        lock_manager: LockManager | None = None,
        default_lock_timeout: float = 60,
    ):
        """Initialize the workspace manager.

        Args:
            base_dir: Directory under which workspaces are created
            lock_manager: Lease manager; defaults to file leases in
                ``<base_dir>/.locks``
            default_lock_timeout: Acquisition timeout when none is given
        """
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self._default_lock_timeout = default_lock_timeout
        self._locks = lock_manager or LockManager(FileLockProvider(self._base_dir / LOCK_DIR_NAME))

    @classmethod
    def from_config(cls, config: "WorkspaceConfig", db: "Database | None" = None) -> "WorkspaceManager":
        """Build a manager with the configured lease backend."""
        base_dir = config.get_base_dir()

        provider: LockProvider
        if config.lock_backend == LockBackend.SQLITE:
            if db is None:
                raise ValueError("SQLite lease backend requires a database")
            provider = SQLiteLockProvider(db)
        elif config.lock_backend == LockBackend.MEMORY:
            provider = MemoryLockProvider()
        else:
            provider = FileLockProvider(base_dir / LOCK_DIR_NAME)

        lock_manager = LockManager(
            provider,
            stale_after_seconds=config.stale_lock_seconds,
            poll_interval=config.lock_poll_interval,
            default_timeout=config.lock_timeout_seconds,
        )
        return cls(base_dir, lock_manager, default_lock_timeout=config.lock_timeout_seconds)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def lock_manager(self) -> LockManager:
        return self._locks

    # =========================================================================
    # Workspaces
    # =========================================================================

    def create_isolated_workspace(self, job_id: str, repo_key: str) -> Path:
        """Create a fresh workspace directory for a job.

        Returns:
            Absolute path to the new workspace
        """
        stem = f"{sanitize_key(repo_key)}_{sanitize_key(job_id)}"

        while True:
            path = self._base_dir / f"{stem}_{int(time.time() * 1000)}"
            try:
                path.mkdir(parents=True, exist_ok=False)
                break
            except FileExistsError:
                # Same job and repo within the same millisecond
                time.sleep(0.001)

        meta = {
            "job_id": job_id,
            "repo_key": repo_key,
            "created_at": datetime.now().isoformat(),
            "pid": os.getpid(),
        }
        (path / META_FILE).write_text(json.dumps(meta, indent=2))

        logger.debug(f"Created workspace: {path}")
        return path.resolve()

    def read_metadata(self, path: Path) -> dict | None:
        """Read a workspace's metadata record."""
        meta_path = Path(path) / META_FILE
        try:
            return json.loads(meta_path.read_text())
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable workspace metadata {meta_path}: {e}")
            return None

    def list_workspaces(self) -> list[Path]:
        """List workspace directories."""
        if not self._base_dir.exists():
            return []
        return sorted(
            entry for entry in self._base_dir.iterdir()
            if entry.is_dir() and entry.name != LOCK_DIR_NAME
        )

    def cleanup(self, path: Path | str | None) -> None:
        """Remove a workspace directory. Idempotent."""
        if path is None:
            return

        path = Path(path)
        if not path.exists():
            return

        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning(f"Workspace {path} could not be fully removed")
        else:
            logger.debug(f"Cleaned up workspace: {path}")

    def _created_at(self, path: Path) -> float:
        """Workspace creation time as epoch seconds."""
        meta = self.read_metadata(path)
        if meta and meta.get("created_at"):
            try:
                return datetime.fromisoformat(meta["created_at"]).timestamp()
            except ValueError:
                pass
        return path.stat().st_mtime

    def cleanup_stale(self, max_age_seconds: float = 3600) -> int:
        """Remove workspaces older than ``max_age_seconds``.

        Returns:
            Number of workspaces removed
        """
        now = time.time()
        cleaned = 0

        for path in self.list_workspaces():
            try:
                age = now - self._created_at(path)
            except OSError as e:
                logger.warning(f"Skipping workspace {path}: {e}")
                continue

            if age > max_age_seconds:
                self.cleanup(path)
                if not path.exists():
                    cleaned += 1
                    logger.info(f"Removed stale workspace: {path.name} (age {age:.0f}s)")

        if cleaned:
            logger.info(f"Cleaned up {cleaned} stale workspace(s)")
        return cleaned

    def emergency_cleanup(self) -> tuple[int, int]:
        """Remove every workspace and every lease.

        Returns:
            Tuple of (workspaces removed, leases removed)
        """
        logger.warning("Emergency cleanup: removing all workspaces and leases")

        workspaces = 0
        for path in self.list_workspaces():
            self.cleanup(path)
            if not path.exists():
                workspaces += 1

        leases = self.release_all_locks()

        logger.info(f"Removed {workspaces} workspace(s) and {leases} lease(s)")
        return workspaces, leases

    # =========================================================================
    # Repository leases
    # =========================================================================

    def release_all_locks(self) -> int:
        """Force-release every repository lease. Returns the number removed."""
        provider = self._locks.provider
        released = 0
        for info in provider.list_locks():
            provider.force_release(info.key)
            released += 1
        return released

    async def acquire_lock(
        self,
        repo_key: str,
        timeout_seconds: float | None = None,
        holder_id: str | None = None,
    ) -> bool:
        """Acquire the lease for a repository.

        Returns:
            True if acquired, False if it could not be acquired in time
        """
        timeout = self._default_lock_timeout if timeout_seconds is None else timeout_seconds
        return await self._locks.acquire(repo_key, timeout, holder_id=holder_id)

    def release_lock(self, repo_key: str, holder_id: str | None = None) -> None:
        """Release the lease for a repository. Idempotent."""
        self._locks.release(repo_key, holder_id)

    def is_locked(self, repo_key: str) -> bool:
        return self._locks.is_locked(repo_key)

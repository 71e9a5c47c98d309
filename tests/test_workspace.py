"""Tests for isolated workspaces."""

import json
import os
import time
from datetime import datetime, timedelta

import pytest

from healclaw.core.locks import LockManager, MemoryLockProvider, SQLiteLockProvider
from healclaw.core.workspace import LOCK_DIR_NAME, META_FILE, WorkspaceManager
from healclaw.models import LockBackend, WorkspaceConfig


@pytest.fixture
def manager(tmp_path):
    return WorkspaceManager(tmp_path / "ws")


class TestCreateWorkspace:
    """Workspace creation."""

    def test_creates_unique_directories(self, manager):
        first = manager.create_isolated_workspace("job-1", "acme/api")
        second = manager.create_isolated_workspace("job-1", "acme/api")

        assert first != second
        assert first.is_dir() and second.is_dir()
        assert first.is_absolute()
        assert first.parent == manager.base_dir.resolve()

    def test_name_and_metadata(self, manager):
        path = manager.create_isolated_workspace("heal-1", "acme/api")

        assert path.name.startswith("acme_api_heal-1_")
        meta = json.loads((path / META_FILE).read_text())
        assert meta["job_id"] == "heal-1"
        assert meta["repo_key"] == "acme/api"
        assert meta["pid"] == os.getpid()
        assert manager.read_metadata(path)["job_id"] == "heal-1"

    def test_list_excludes_lease_directory(self, manager):
        manager.create_isolated_workspace("j", "r")

        names = [p.name for p in manager.list_workspaces()]

        assert len(names) == 1
        assert LOCK_DIR_NAME not in names


class TestCleanup:
    """Workspace removal."""

    def test_cleanup_is_idempotent(self, manager):
        path = manager.create_isolated_workspace("j", "r")
        (path / "repo").mkdir()
        (path / "repo" / "file.txt").write_text("x")

        manager.cleanup(path)
        manager.cleanup(path)
        manager.cleanup(None)

        assert not path.exists()

    def test_cleanup_stale_uses_metadata_age(self, manager):
        old = manager.create_isolated_workspace("old", "r")
        fresh = manager.create_isolated_workspace("fresh", "r")
        meta = json.loads((old / META_FILE).read_text())
        meta["created_at"] = (datetime.now() - timedelta(hours=2)).isoformat()
        (old / META_FILE).write_text(json.dumps(meta))

        removed = manager.cleanup_stale(max_age_seconds=3600)

        assert removed == 1
        assert not old.exists()
        assert fresh.exists()

    def test_cleanup_stale_falls_back_to_mtime(self, manager):
        orphan = manager.base_dir / "orphan"
        orphan.mkdir()
        past = time.time() - 7200
        os.utime(orphan, (past, past))

        assert manager.cleanup_stale(max_age_seconds=3600) == 1
        assert not orphan.exists()

    @pytest.mark.asyncio
    async def test_emergency_cleanup(self, manager):
        manager.create_isolated_workspace("a", "r1")
        manager.create_isolated_workspace("b", "r2")
        await manager.acquire_lock("r1", timeout_seconds=0)

        workspaces, leases = manager.emergency_cleanup()

        assert (workspaces, leases) == (2, 1)
        assert manager.list_workspaces() == []
        assert not manager.is_locked("r1")


class TestWorkspaceLeases:
    """Lease delegation."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, manager):
        assert await manager.acquire_lock("acme/api", timeout_seconds=0, holder_id="j1")
        assert manager.is_locked("acme/api")
        assert not await manager.acquire_lock("acme/api", timeout_seconds=0, holder_id="j2")

        manager.release_lock("acme/api", "j1")

        assert not manager.is_locked("acme/api")

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, manager):
        await manager.acquire_lock("acme/api", timeout_seconds=0, holder_id="j1")
        manager.release_lock("acme/api", "j1")
        manager.release_lock("acme/api", "j1")

        assert not manager.is_locked("acme/api")

    def test_default_lease_backend_is_file(self, manager):
        assert (manager.base_dir / LOCK_DIR_NAME).is_dir()


class TestFromConfig:
    """Backend selection."""

    def test_sqlite_backend(self, tmp_path, db):
        config = WorkspaceConfig(base_dir=str(tmp_path / "ws"), lock_backend=LockBackend.SQLITE)

        manager = WorkspaceManager.from_config(config, db)

        assert isinstance(manager.lock_manager.provider, SQLiteLockProvider)

    def test_sqlite_backend_requires_database(self, tmp_path):
        config = WorkspaceConfig(base_dir=str(tmp_path / "ws"), lock_backend=LockBackend.SQLITE)

        with pytest.raises(ValueError):
            WorkspaceManager.from_config(config)

    def test_memory_backend(self, tmp_path):
        config = WorkspaceConfig(base_dir=str(tmp_path / "ws"), lock_backend=LockBackend.MEMORY)

        manager = WorkspaceManager.from_config(config)

        assert isinstance(manager.lock_manager.provider, MemoryLockProvider)

    def test_custom_lock_manager(self, tmp_path):
        locks = LockManager(MemoryLockProvider())

        manager = WorkspaceManager(tmp_path / "ws", lock_manager=locks)

        assert manager.lock_manager is locks

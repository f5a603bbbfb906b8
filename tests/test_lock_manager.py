"""
Lock Manager Tests

Test Categories:
1. Acquire/Release Tests
2. Contention Tests
3. Stale Lock Tests
4. Context Manager Tests
"""

import logging
import os
import subprocess
import sys

import pytest

from forge_controller.errors import LockContention
from forge_controller.lock_manager import LockHandle, LockManager


@pytest.fixture
def manager(forge_paths):
    return LockManager(forge_paths)


@pytest.fixture
def dead_pid():
    """PID of a child process that has exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


# =============================================================================
# 1. Acquire/Release Tests
# =============================================================================

class TestAcquireRelease:
    """Basic lock lifecycle."""

    def test_acquire_writes_own_pid(self, manager, forge_paths):
        handle = manager.acquire("build")
        assert handle.path == forge_paths.state_dir / "build.lock"
        assert handle.pid == os.getpid()
        assert handle.path.read_text().strip() == str(os.getpid())

    def test_scopes_use_separate_files(self, manager, forge_paths):
        build = manager.acquire("build")
        improve = manager.acquire("improve")
        assert build.path.name == "build.lock"
        assert improve.path.name == "forge-loop.lock"
        assert build.path.exists() and improve.path.exists()

    def test_release_deletes_file(self, manager):
        handle = manager.acquire("build")
        manager.release(handle)
        assert not handle.path.exists()

    def test_release_is_noop_when_file_missing(self, manager):
        handle = manager.acquire("build")
        handle.path.unlink()
        manager.release(handle)
        assert not handle.path.exists()

    def test_release_leaves_foreign_lock(self, manager):
        handle = manager.acquire("build")
        handle.path.write_text("999999\n")
        manager.release(handle)
        assert handle.path.exists()

    def test_acquire_after_release_succeeds(self, manager):
        manager.release(manager.acquire("improve"))
        handle = manager.acquire("improve")
        assert handle.path.exists()


# =============================================================================
# 2. Contention Tests
# =============================================================================

class TestContention:
    """A live owner blocks acquisition with no side effects."""

    def test_live_owner_raises(self, forge_paths):
        lock_file = forge_paths.lock_file("build")
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text(f"{os.getppid()}\n")

        with pytest.raises(LockContention) as exc_info:
            LockManager(forge_paths).acquire("build")

        assert exc_info.value.owner_pid == os.getppid()
        assert lock_file.read_text().strip() == str(os.getppid())

    def test_second_manager_in_same_process_contends(self, forge_paths):
        first = LockManager(forge_paths)
        first.acquire("improve")
        with pytest.raises(LockContention):
            LockManager(forge_paths).acquire("improve")

    def test_contention_on_one_scope_does_not_block_other(self, forge_paths):
        LockManager(forge_paths).acquire("build")
        handle = LockManager(forge_paths).acquire("improve")
        assert isinstance(handle, LockHandle)


# =============================================================================
# 3. Stale Lock Tests
# =============================================================================

class TestStaleLock:
    """Dead or unreadable owners are reclaimed with a warning."""

    def test_dead_pid_reclaimed_with_warning(self, forge_paths, dead_pid, caplog):
        lock_file = forge_paths.lock_file("build")
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text(f"{dead_pid}\n")

        with caplog.at_level(logging.WARNING, logger="lock_manager"):
            handle = LockManager(forge_paths).acquire("build")

        assert handle.path.read_text().strip() == str(os.getpid())
        assert any("Stale lockfile" in r.getMessage() for r in caplog.records)

    def test_empty_lock_file_reclaimed(self, forge_paths, caplog):
        lock_file = forge_paths.lock_file("improve")
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text("")

        with caplog.at_level(logging.WARNING, logger="lock_manager"):
            handle = LockManager(forge_paths).acquire("improve")

        assert handle.path.read_text().strip() == str(os.getpid())
        assert any("Stale lockfile" in r.getMessage() for r in caplog.records)

    def test_garbage_lock_file_reclaimed(self, forge_paths):
        lock_file = forge_paths.lock_file("build")
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text("not-a-pid\n")

        handle = LockManager(forge_paths).acquire("build")
        assert handle.path.read_text().strip() == str(os.getpid())


# =============================================================================
# 4. Context Manager Tests
# =============================================================================

class TestHold:
    """hold() releases on every exit path."""

    def test_released_on_normal_exit(self, manager):
        with manager.hold("build") as handle:
            assert handle.path.exists()
        assert not handle.path.exists()

    def test_released_on_exception(self, manager, forge_paths):
        with pytest.raises(RuntimeError):
            with manager.hold("build"):
                raise RuntimeError("boom")
        assert not forge_paths.lock_file("build").exists()

    def test_released_on_system_exit(self, manager, forge_paths):
        with pytest.raises(SystemExit):
            with manager.hold("improve"):
                raise SystemExit(143)
        assert not forge_paths.lock_file("improve").exists()

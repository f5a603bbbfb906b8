"""
Lock Manager - PID-Aware Mutual Exclusion

One lock file per driver scope, holding the owning process id.

Acquire:
1. Lock file exists and its PID is alive -> LockContention (no side effects)
2. Lock file exists and its PID is dead (or unreadable) -> warn, delete, continue
3. Create the file exclusively and write our PID

Release deletes the file if it still names our PID. `hold()` wraps
acquire/release so release runs on every exit path, including exceptions
and SystemExit raised from a signal handler.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import psutil

from .errors import LockContention
from .paths import ForgePaths

logger = logging.getLogger("lock_manager")


@dataclass(frozen=True)
class LockHandle:
    """A held lock: the scope it covers, its file, and the owning PID."""
    scope: str
    path: Path
    pid: int


class LockManager:
    """Filesystem lock manager scoped per driver kind."""

    def __init__(self, paths: Optional[ForgePaths] = None, pid: Optional[int] = None):
        self._paths = paths or ForgePaths()
        self._pid = pid if pid is not None else os.getpid()

    def lock_path(self, scope: str) -> Path:
        return self._paths.lock_file(scope)

    def acquire(self, scope: str) -> LockHandle:
        """
        Claim the lock for `scope`.

        Raises:
            LockContention: another live process owns the lock
        """
        path = self.lock_path(scope)
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists():
            owner = _read_pid(path)
            if owner is not None and _pid_alive(owner):
                logger.error(f"Another forge process is already running (PID: {owner})")
                logger.error(f"Lock file: {path}")
                raise LockContention(path, owner)
            logger.warning(
                f"Stale lockfile found (PID {owner if owner is not None else '?'} "
                f"no longer running), cleaning up: {path}"
            )
            try:
                path.unlink()
            except FileNotFoundError:
                pass

        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            # Lost a race against another acquirer between unlink and create
            owner = _read_pid(path) or 0
            raise LockContention(path, owner)

        with os.fdopen(fd, "w") as f:
            f.write(f"{self._pid}\n")
            f.flush()
            os.fsync(f.fileno())

        logger.info(f"Lock acquired: {path} (PID: {self._pid})")
        return LockHandle(scope=scope, path=path, pid=self._pid)

    def release(self, handle: LockHandle) -> None:
        """Delete the lock file if it still exists and still belongs to `handle`."""
        if not handle.path.exists():
            return
        owner = _read_pid(handle.path)
        if owner is not None and owner != handle.pid:
            logger.warning(
                f"Lock {handle.path} now owned by PID {owner}, not releasing"
            )
            return
        try:
            handle.path.unlink()
        except FileNotFoundError:
            return
        logger.info(f"Lock released: {handle.path}")

    @contextmanager
    def hold(self, scope: str) -> Iterator[LockHandle]:
        """Hold the scope lock for the duration of the block."""
        handle = self.acquire(scope)
        try:
            yield handle
        finally:
            self.release(handle)


def _read_pid(path: Path) -> Optional[int]:
    try:
        text = path.read_text().strip()
    except OSError:
        return None
    try:
        pid = int(text.splitlines()[0]) if text else None
    except ValueError:
        return None
    if pid is not None and pid <= 0:
        return None
    return pid


def _pid_alive(pid: int) -> bool:
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.Error:
        # Exists but not inspectable (e.g. another user's process)
        return True

"""Advisory per-instance locks backed by ``fcntl.flock``.

Each instance gets ``<runtime_dir>/<name>.lock``. The lock is held on an open
file description, so it disappears with the process even after a crash; the
file itself is left behind with the last holder's metadata for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out per-instance file locks under *root*."""

    def __init__(self, root: Path, default_timeout: float = 2.0) -> None:
        """Store the lock directory and the default acquisition timeout."""
        self.root = Path(root).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file used for instance *name*."""
        return self.root / f"{name}.lock"

    def snapshot_lock_path(self, name: str) -> Path:
        """Return the lock file used for snapshot *name*."""
        return self.root / "snapshots" / f"{name}.lock"

    def instance_lock(
        self, name: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Hold the lock for instance *name* for the duration of the block."""
        return self._hold(self.lock_path(name), timeout)

    def snapshot_lock(
        self, name: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Hold the lock serialising writers of snapshot *name*."""
        return self._hold(self.snapshot_lock_path(name), timeout)

    @contextmanager
    def _hold(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)

        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            wait_ms = _acquire(fd, path, limit)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _acquire(fd: int, path: Path, timeout: float) -> int:
    started = time.monotonic()
    deadline = started + max(timeout, 0.0)
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            if time.monotonic() >= deadline:
                holder = _read_holder(path)
                detail = f" (held by pid {holder})" if holder else ""
                raise LockTimeoutError(
                    f"Timed out after {timeout:g}s waiting for lock {path}{detail}."
                ) from None
            time.sleep(_POLL_INTERVAL)
            continue
        return int((time.monotonic() - started) * 1000)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": time.time(),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


def _read_holder(path: Path) -> int | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    pid = data.get("pid") if isinstance(data, dict) else None
    return pid if isinstance(pid, int) else None


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]

"""File-based locks serialising reconciliation of a site.

Each site has a lock file ``<runtime_dir>/<site>.lock`` held with ``flock``.
Lock files persist after release and carry JSON metadata about the last holder.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import SiteSyncError

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


class LockTimeoutError(SiteSyncError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(frozen=True)
class LockHandle:
    """An acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out per-site locks under *lock_dir*."""

    def __init__(self, lock_dir: Path, default_timeout: float = 30.0) -> None:
        self.lock_dir = Path(lock_dir).expanduser()
        self.default_timeout = default_timeout

    def path_for(self, name: str) -> Path:
        if not name or "/" in name or name in {".", ".."}:
            raise ValueError(f"invalid lock name: {name!r}")
        return self.lock_dir / f"{name}.lock"

    @contextmanager
    def site_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for site *name*."""
        with self._acquire(self.path_for(name), timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}"
                        ) from None
                    time.sleep(POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            if wait_ms:
                LOGGER.debug("Acquired %s after %dms", path, wait_ms)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, data, 0)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]

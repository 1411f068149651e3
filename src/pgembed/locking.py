"""File locks guarding shared on-disk state.

Locks are advisory ``fcntl.flock`` locks on files under a lock root. Each lock
file records the holder's pid and the lock path as JSON for diagnostics; the
file is left behind after release. Acquisition polls a non-blocking lock so a
timeout can be enforced from coroutines (:meth:`FileLock.acquire_async`)
without blocking the event loop.
"""
from __future__ import annotations

import asyncio
import json
import os
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import IO

from .errors import PgEmbedError

if os.name == "nt":  # pragma: no cover - exercised on Windows only
    import msvcrt

    def _try_lock(handle: IO[str]) -> bool:
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    def _unlock(handle: IO[str]) -> None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _try_lock(handle: IO[str]) -> bool:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    def _unlock(handle: IO[str]) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


POLL_INTERVAL = 0.05
_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(PgEmbedError):
    """Raised when a lock cannot be acquired before the timeout."""


class FileLock:
    """A single exclusive lock file."""

    def __init__(self, path: Path, *, poll_interval: float = POLL_INTERVAL) -> None:
        """Bind the lock to *path*; nothing is opened until acquisition."""
        self.path = path
        self.poll_interval = poll_interval
        self.wait_ms = 0
        self._handle: IO[str] | None = None

    @property
    def locked(self) -> bool:
        """Return whether this object currently holds the lock."""
        return self._handle is not None

    def try_acquire(self) -> bool:
        """Attempt to take the lock once without waiting."""
        if self._handle is not None:
            raise RuntimeError(f"Lock {self.path} is already held by this object.")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        if not _try_lock(handle):
            handle.close()
            return False
        self._handle = handle
        self._write_metadata(handle)
        return True

    async def acquire_async(self, timeout: float) -> None:
        """Poll until the lock is held or *timeout* elapses."""
        started = time.monotonic()
        while not self.try_acquire():
            if time.monotonic() - started >= timeout:
                raise self._timeout_error(timeout)
            await asyncio.sleep(self.poll_interval)
        self.wait_ms = int((time.monotonic() - started) * 1000)

    def release(self) -> None:
        """Release the lock if held."""
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _unlock(handle)
        finally:
            handle.close()

    def _write_metadata(self, handle: IO[str]) -> None:
        payload = {"pid": os.getpid(), "path": str(self.path), "acquired_at": time.time()}
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(payload, sort_keys=True))
        handle.flush()

    def _timeout_error(self, timeout: float) -> LockTimeoutError:
        return LockTimeoutError(
            f"Timed out after {timeout:.1f}s waiting for lock {self.path}.",
            context={"path": str(self.path), "timeout": timeout, "holder": _read_holder(self.path)},
        )


class LockManager:
    """Hand out named locks rooted at a single directory."""

    def __init__(self, root: Path, *, default_timeout: float = 300.0) -> None:
        """Create a manager for locks under *root*."""
        self.root = root
        self.default_timeout = default_timeout

    def path_for(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = _SAFE_NAME.sub("_", name).strip("._") or "lock"
        return self.root / f"{safe}.lock"

    def lock(self, name: str) -> FileLock:
        """Return an unacquired lock for *name*."""
        return FileLock(self.path_for(name))

    def archive_lock(self, slug: str) -> FileLock:
        """Return the lock guarding the cache entry *slug*."""
        return self.lock(slug)

    @asynccontextmanager
    async def acquire_async(
        self, name: str, *, timeout: float | None = None
    ) -> AsyncIterator[FileLock]:
        """Hold the lock for *name* for the duration of the block."""
        handle = self.lock(name)
        await handle.acquire_async(self.default_timeout if timeout is None else timeout)
        try:
            yield handle
        finally:
            handle.release()


def _read_holder(path: Path) -> object:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


__all__ = ["FileLock", "LockManager", "LockTimeoutError"]

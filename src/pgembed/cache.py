"""On-disk cache of downloaded PostgreSQL archives.

Layout::

    <root>/
        .locks/<slug>.lock
        <slug>/<slug>.tar.gz
        <slug>/.complete

An entry is only served once its ``.complete`` marker exists and the archive
size matches the size recorded in it. Fetches for a key are serialised across
processes and coroutines by the per-key file lock; whoever wins fetches, the
others find the finished entry once they get the lock.
"""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .archive import ArchiveKey
from .locking import LockManager
from .providers.base import ArchiveProvider, StreamingArchiveProvider
from .state import read_yaml, write_yaml_atomic

LOGGER = logging.getLogger(__name__)

MARKER_NAME = ".complete"
LOCKS_DIR = ".locks"
_MIB = 1024 * 1024
_DAY = 86400


@dataclass(frozen=True, slots=True)
class Checkout:
    """A cache entry held for use, with how long the lock took to obtain."""

    path: Path
    lock_wait_ms: int


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """One cache directory as found on disk."""

    slug: str
    path: Path
    complete: bool
    size: int = 0
    sha256: str | None = None
    platform: str | None = None
    architecture: str | None = None
    version: str | None = None
    last_used: float = 0.0

    @property
    def archive(self) -> Path:
        """Return the archive file path."""
        return self.path / f"{self.slug}.tar.gz"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "slug": self.slug,
            "path": str(self.path),
            "complete": self.complete,
            "size": self.size,
            "sha256": self.sha256,
            "version": self.version,
            "platform": self.platform,
            "architecture": self.architecture,
            "last_used": datetime.fromtimestamp(self.last_used, UTC).isoformat(),
        }


class ArchiveCache:
    """Content cache keyed by :class:`ArchiveKey`."""

    def __init__(
        self,
        root: Path,
        *,
        lock_timeout: float = 300.0,
        max_size_mb: int | None = None,
        max_age_days: int | None = None,
    ) -> None:
        """Create a cache rooted at *root*; limits of ``None`` disable eviction."""
        self.root = root
        self.lock_timeout = lock_timeout
        self.max_size_mb = max_size_mb
        self.max_age_days = max_age_days
        self.locks = LockManager(root / LOCKS_DIR, default_timeout=lock_timeout)

    def entry_dir(self, key: ArchiveKey) -> Path:
        """Return the directory holding *key*."""
        return self.root / key.slug

    def archive_path(self, key: ArchiveKey) -> Path:
        """Return where the archive for *key* lives."""
        return self.entry_dir(key) / key.asset_name

    def lookup(self, key: ArchiveKey) -> Path | None:
        """Return the archive path for *key* if a complete entry exists."""
        entry = self._read_entry(self.entry_dir(key))
        if entry is None or not entry.complete:
            return None
        return self.archive_path(key)

    async def get_or_fetch(self, key: ArchiveKey, provider: ArchiveProvider) -> Path:
        """Return a complete archive for *key*, fetching it at most once."""
        async with self.checkout(key, provider) as held:
            return held.path

    @asynccontextmanager
    async def checkout(
        self, key: ArchiveKey, provider: ArchiveProvider
    ) -> AsyncIterator[Checkout]:
        """Hold the entry for *key* for the duration of the block.

        The entry is fetched first when missing or incomplete. While the block
        runs the entry lock stays held, so :meth:`prune` cannot evict it.
        """
        async with self.locks.acquire_async(key.slug, timeout=self.lock_timeout) as lock:
            archive = self.lookup(key)
            if archive is None:
                archive = await self._fetch(key, provider)
            elif lock.wait_ms:
                LOGGER.debug("%s fetched by another holder after %dms", key.slug, lock.wait_ms)
            self._touch(key)
            yield Checkout(path=archive, lock_wait_ms=lock.wait_ms)
        self._prune_quietly(keep=key.slug)

    async def _fetch(self, key: ArchiveKey, provider: ArchiveProvider) -> Path:
        entry_dir = self.entry_dir(key)
        if entry_dir.exists():
            LOGGER.info("Discarding incomplete cache entry %s", entry_dir)
            shutil.rmtree(entry_dir)
        entry_dir.mkdir(parents=True)
        archive = self.archive_path(key)

        if isinstance(provider, StreamingArchiveProvider):
            digest = await provider.download(key, archive)
        else:
            data = await provider.fetch(key)
            digest = hashlib.sha256(data).hexdigest()
            _write_bytes_atomic(archive, data)

        write_yaml_atomic(
            entry_dir / MARKER_NAME,
            {
                **key.to_dict(),
                "sha256": digest,
                "size": archive.stat().st_size,
                "completed_at": datetime.now(UTC).isoformat(),
            },
        )
        LOGGER.info("Cached %s", archive)
        return archive

    def entries(self) -> list[CacheEntry]:
        """Return every entry directory, complete or not."""
        if not self.root.is_dir():
            return []
        found: list[CacheEntry] = []
        for child in sorted(self.root.iterdir()):
            if child.name.startswith(".") or not child.is_dir():
                continue
            entry = self._read_entry(child)
            if entry is not None:
                found.append(entry)
        return found

    def cached_versions(self, platform: str, architecture: str) -> list[Version]:
        """Return versions with a complete entry for the platform."""
        versions: list[Version] = []
        for entry in self.entries():
            if not entry.complete or entry.version is None:
                continue
            if entry.platform != platform or entry.architecture != architecture:
                continue
            try:
                versions.append(Version(entry.version))
            except InvalidVersion:
                continue
        return versions

    def prune(self, *, keep: str | None = None, now: float | None = None) -> list[CacheEntry]:
        """Evict stale, oversized and abandoned entries; return what was removed.

        Entries whose lock is held and the entry named *keep* are never
        removed. Oldest entries go first when the size limit is exceeded.
        """
        current = time.time() if now is None else now
        removed: list[CacheEntry] = []
        survivors: list[CacheEntry] = []

        for entry in self.entries():
            if entry.slug == keep:
                survivors.append(entry)
                continue
            expired = (
                self.max_age_days is not None
                and current - entry.last_used > self.max_age_days * _DAY
            )
            if (not entry.complete or expired) and self._remove(entry):
                removed.append(entry)
            elif entry.complete:
                survivors.append(entry)

        if self.max_size_mb is not None:
            budget = self.max_size_mb * _MIB
            total = sum(entry.size for entry in survivors)
            for entry in sorted(survivors, key=lambda item: item.last_used):
                if total <= budget:
                    break
                if entry.slug == keep:
                    continue
                if self._remove(entry):
                    removed.append(entry)
                    total -= entry.size
        return removed

    def _prune_quietly(self, *, keep: str) -> None:
        try:
            removed = self.prune(keep=keep)
        except OSError as exc:
            LOGGER.warning("Cache eviction skipped: %s", exc)
            return
        for entry in removed:
            LOGGER.info("Evicted cache entry %s", entry.slug)

    def _remove(self, entry: CacheEntry) -> bool:
        lock = self.locks.archive_lock(entry.slug)
        if not lock.try_acquire():
            return False
        try:
            shutil.rmtree(entry.path, ignore_errors=True)
        finally:
            lock.release()
        return True

    def _touch(self, key: ArchiveKey) -> None:
        try:
            os.utime(self.entry_dir(key) / MARKER_NAME)
        except OSError:
            LOGGER.debug("Unable to update access time for %s", key.slug)

    def _read_entry(self, path: Path) -> CacheEntry | None:
        if not path.is_dir():
            return None
        slug = path.name
        marker_path = path / MARKER_NAME
        marker = read_yaml(marker_path)
        archive = path / f"{slug}.tar.gz"
        try:
            actual_size = archive.stat().st_size
        except OSError:
            actual_size = -1
        if marker is None:
            return CacheEntry(slug=slug, path=path, complete=False, size=max(actual_size, 0))

        recorded = marker.get("size")
        complete = isinstance(recorded, int) and recorded == actual_size
        try:
            last_used = marker_path.stat().st_mtime
        except OSError:
            last_used = 0.0
        return CacheEntry(
            slug=slug,
            path=path,
            complete=complete,
            size=max(actual_size, 0),
            sha256=_str_or_none(marker.get("sha256")),
            platform=_str_or_none(marker.get("platform")),
            architecture=_str_or_none(marker.get("architecture")),
            version=_str_or_none(marker.get("version")),
            last_used=last_used,
        )


def _write_bytes_atomic(path: Path, data: bytes) -> None:
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


def _str_or_none(value: object) -> str | None:
    return None if value is None else str(value)


__all__ = ["ArchiveCache", "CacheEntry", "Checkout"]

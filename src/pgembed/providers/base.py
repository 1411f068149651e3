"""Archive provider protocols."""
from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from packaging.version import Version

from ..archive import ArchiveKey


@runtime_checkable
class ArchiveProvider(Protocol):
    """Anything that can produce the archive bytes for a key."""

    async def fetch(self, key: ArchiveKey) -> bytes:
        """Return the verified archive bytes for *key*."""
        ...


@runtime_checkable
class StreamingArchiveProvider(ArchiveProvider, Protocol):
    """Provider able to stream an archive straight to disk."""

    async def download(self, key: ArchiveKey, destination: Path) -> str:
        """Write the verified archive for *key* to *destination*.

        Returns the SHA-256 digest of the written file. Nothing is left at
        *destination* when verification fails.
        """
        ...

    async def list_versions(self) -> list[Version]:
        """Return every published version."""
        ...


@runtime_checkable
class PinnedArchiveProvider(ArchiveProvider, Protocol):
    """Provider that serves exactly one version."""

    @property
    def version(self) -> Version:
        """Return the single version this provider serves."""
        ...


__all__ = ["ArchiveProvider", "PinnedArchiveProvider", "StreamingArchiveProvider"]

"""Archive providers for pgembed."""
from __future__ import annotations

from .base import ArchiveProvider, PinnedArchiveProvider, StreamingArchiveProvider
from .embedded import EmbeddedArchiveProvider
from .registry import Asset, Release, ReleaseRegistry
from .remote import RemoteArchiveProvider

__all__ = [
    "ArchiveProvider",
    "Asset",
    "EmbeddedArchiveProvider",
    "PinnedArchiveProvider",
    "Release",
    "ReleaseRegistry",
    "RemoteArchiveProvider",
    "StreamingArchiveProvider",
]

"""Archive provider backed by the remote release registry."""
from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path

from packaging.version import Version

from ..archive import (
    CHECKSUM_SUFFIX,
    SIGNATURE_SUFFIX,
    ArchiveKey,
    parse_digest,
    verify_digest,
    verify_signature,
)
from ..errors import IntegrityMismatch, UnsupportedPlatform
from .registry import Asset, Release, ReleaseRegistry

LOGGER = logging.getLogger(__name__)


class RemoteArchiveProvider:
    """Download archives published as GitHub release assets.

    Every archive is checked against the ``.sha256`` asset published beside
    it. When a public key is configured and the release carries a ``.sig``
    asset, the detached signature is verified as well.
    """

    def __init__(self, registry: ReleaseRegistry, *, public_key: bytes | None = None) -> None:
        """Wrap *registry*; *public_key* is a PEM encoded signing key."""
        self.registry = registry
        self.public_key = public_key

    def __repr__(self) -> str:
        return f"RemoteArchiveProvider({self.registry.releases_url!r})"

    async def list_versions(self) -> list[Version]:
        """Return every published version."""
        return await self.registry.list_versions()

    async def fetch(self, key: ArchiveKey) -> bytes:
        """Return the verified archive bytes for *key*."""
        archive, checksum, signature = await self._assets(key)
        payload = await self.registry.fetch_bytes(archive.url)
        expected = await self._expected_digest(checksum)
        verify_digest(hashlib.sha256(payload).hexdigest(), expected, source=archive.name)
        await self._verify_signature(payload, signature)
        return payload

    async def download(self, key: ArchiveKey, destination: Path) -> str:
        """Stream the archive for *key* to *destination* after verification."""
        archive, checksum, signature = await self._assets(key)
        expected = await self._expected_digest(checksum)

        partial = destination.with_name(f"{destination.name}.part")
        try:
            actual = await self.registry.download_to(archive.url, partial)
            verify_digest(actual, expected, source=archive.name)
            if signature is not None and self.public_key is not None:
                await self._verify_signature(partial.read_bytes(), signature)
            os.replace(partial, destination)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        LOGGER.info("Downloaded %s (%s)", archive.name, actual)
        return actual

    async def _assets(self, key: ArchiveKey) -> tuple[Asset, Asset, Asset | None]:
        release = await self.registry.get_release(key.version)
        return _select_assets(release, key)

    async def _expected_digest(self, checksum: Asset) -> str:
        body = await self.registry.fetch_bytes(checksum.url)
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IntegrityMismatch(
                f"Checksum file {checksum.name} is not valid UTF-8 text.",
                context={"checksum": checksum.name},
            ) from exc
        return parse_digest(text)

    async def _verify_signature(self, payload: bytes, signature: Asset | None) -> None:
        if signature is None or self.public_key is None:
            return
        blob = await self.registry.fetch_bytes(signature.url)
        verify_signature(payload, blob, self.public_key)


def _select_assets(release: Release, key: ArchiveKey) -> tuple[Asset, Asset, Asset | None]:
    name = key.asset_name
    archive = release.assets.get(name)
    if archive is None:
        raise UnsupportedPlatform(
            f"PostgreSQL {key.version} has no archive for {key.target}.",
            context={"version": str(key.version), "target": key.target, "asset": name},
        )
    checksum = release.assets.get(f"{name}{CHECKSUM_SUFFIX}")
    if checksum is None:
        raise IntegrityMismatch(
            f"No checksum published for {name}.",
            context={"asset": name, "release": release.tag},
        )
    return archive, checksum, release.assets.get(f"{name}{SIGNATURE_SUFFIX}")


__all__ = ["RemoteArchiveProvider"]

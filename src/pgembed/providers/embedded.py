"""Archive provider serving bytes supplied by the caller."""
from __future__ import annotations

import re
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..archive import ArchiveKey
from ..errors import ConfigError, UnsupportedPlatform, VersionNotFound

_ARCHIVE_NAME = re.compile(r"^postgresql-(?P<version>\d+(?:\.\d+)*)-(?P<target>[^/]+?)\.tar\.\w+$")


class EmbeddedArchiveProvider:
    """Serve a single archive that ships with the application.

    The provider never touches the network or the archive cache. When a
    ``target`` is given, keys for other targets are rejected.
    """

    def __init__(self, data: bytes, version: Version, *, target: str | None = None) -> None:
        """Serve *data* as PostgreSQL *version*."""
        self._data = data
        self._version = version
        self.target = target

    def __repr__(self) -> str:
        return f"EmbeddedArchiveProvider(version={str(self._version)!r}, target={self.target!r})"

    @classmethod
    def from_path(cls, path: Path, *, version: Version | str | None = None) -> EmbeddedArchiveProvider:
        """Load an archive file, inferring version and target from its name if needed."""
        match = _ARCHIVE_NAME.match(path.name)
        if version is None:
            if match is None:
                raise ConfigError(
                    f"Cannot infer the PostgreSQL version from '{path.name}'; pass it explicitly.",
                    context={"path": str(path)},
                )
            version = match.group("version")
        try:
            parsed = version if isinstance(version, Version) else Version(str(version))
        except InvalidVersion as exc:
            raise ConfigError(f"Invalid archive version '{version}'.") from exc
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ConfigError(
                f"Unable to read archive {path}: {exc}", context={"path": str(path)}
            ) from exc
        return cls(data, parsed, target=match.group("target") if match else None)

    @property
    def version(self) -> Version:
        """Return the single version served."""
        return self._version

    async def fetch(self, key: ArchiveKey) -> bytes:
        """Return the embedded bytes when *key* matches."""
        if key.version != self._version:
            raise VersionNotFound(
                f"Embedded archive provides PostgreSQL {self._version}, not {key.version}.",
                context={"requested": str(key.version), "available": str(self._version)},
            )
        if self.target is not None and key.target != self.target:
            raise UnsupportedPlatform(
                f"Embedded archive targets {self.target}, not {key.target}.",
                context={"requested": key.target, "available": self.target},
            )
        return self._data


__all__ = ["EmbeddedArchiveProvider"]

"""Unpack PostgreSQL archives into private installation directories."""
from __future__ import annotations

import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path

from packaging.version import Version

from .archive import extract_archive
from .errors import InstallationIncomplete

LOGGER = logging.getLogger(__name__)

REQUIRED_BINARIES = ("initdb", "postgres")


def executable_name(name: str) -> str:
    """Return the platform specific file name for executable *name*."""
    return f"{name}.exe" if os.name == "nt" else name


@dataclass(frozen=True, slots=True)
class Installation:
    """An extracted PostgreSQL distribution."""

    path: Path
    version: Version

    @property
    def bin_dir(self) -> Path:
        """Return the directory holding the executables."""
        return self.path / "bin"

    def binary(self, name: str) -> Path:
        """Return the path to executable *name*."""
        return self.bin_dir / executable_name(name)

    @property
    def initdb(self) -> Path:
        """Return the ``initdb`` path."""
        return self.binary("initdb")

    @property
    def postgres(self) -> Path:
        """Return the ``postgres`` path."""
        return self.binary("postgres")

    def verify(self) -> None:
        """Raise :class:`InstallationIncomplete` when a required binary is missing."""
        missing = [
            name
            for name in REQUIRED_BINARIES
            if not self.binary(name).is_file() or not os.access(self.binary(name), os.X_OK)
        ]
        if missing:
            raise InstallationIncomplete(
                f"Installation at {self.path} is missing executables: {', '.join(missing)}.",
                context={"path": str(self.path), "missing": missing, "version": str(self.version)},
            )


class Installer:
    """Extract archives into unique directories under ``install_root``."""

    def __init__(self, install_root: Path) -> None:
        """Install below *install_root*."""
        self.install_root = install_root.expanduser()

    def install(self, archive: Path | bytes, version: Version) -> Installation:
        """Extract *archive* and return the verified installation.

        A failed installation leaves its directory in place for inspection;
        the directory is never reused.
        """
        self.install_root.mkdir(parents=True, exist_ok=True)
        target = Path(tempfile.mkdtemp(prefix=f"postgresql-{version}-", dir=str(self.install_root)))
        LOGGER.info("Installing PostgreSQL %s into %s", version, target)

        extract_archive(archive, target)
        _ensure_owner_exec(target / "bin")

        installation = Installation(path=target, version=version)
        installation.verify()
        return installation


def _ensure_owner_exec(bin_dir: Path) -> None:
    if not bin_dir.is_dir():
        return
    for entry in bin_dir.iterdir():
        if entry.is_file() and not entry.is_symlink():
            mode = entry.stat().st_mode
            if not mode & stat.S_IXUSR:
                entry.chmod(mode | stat.S_IXUSR)


__all__ = ["Installation", "Installer", "executable_name"]

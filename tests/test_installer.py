"""Tests for archive extraction and installation."""
from __future__ import annotations

import hashlib
import io
import os
import sys
import tarfile
from pathlib import Path

import pytest
from conftest import FAKE_VERSION, build_archive
from packaging.version import Version

from pgembed.archive import (
    ArchiveKey,
    extract_archive,
    parse_digest,
    verify_digest,
)
from pgembed.errors import InstallationIncomplete, IntegrityMismatch, UnsupportedPlatform
from pgembed.installer import Installation, Installer

VERSION = Version(FAKE_VERSION)


def _tarball(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def test_archive_key_names_follow_release_layout() -> None:
    """Slugs and asset names embed the version and target triple."""
    key = ArchiveKey("linux", "x86_64", Version("16.4.0"))

    assert key.target == "x86_64-unknown-linux-gnu"
    assert key.slug == "postgresql-16.4.0-x86_64-unknown-linux-gnu"
    assert key.asset_name == "postgresql-16.4.0-x86_64-unknown-linux-gnu.tar.gz"
    assert ArchiveKey("linux-musl", "aarch64", VERSION).target == "aarch64-unknown-linux-musl"
    assert ArchiveKey("darwin", "aarch64", VERSION).target == "aarch64-apple-darwin"


def test_unknown_platform_is_unsupported() -> None:
    """Combinations without published archives raise UnsupportedPlatform."""
    with pytest.raises(UnsupportedPlatform):
        _ = ArchiveKey("freebsd", "x86_64", VERSION).target


def test_digest_helpers() -> None:
    """Checksum files are parsed and compared case-insensitively."""
    actual = hashlib.sha256(b"abc").hexdigest()
    body = f"{actual.upper()}  postgresql.tar.gz\n"

    verify_digest(actual, parse_digest(body), source="blob")
    with pytest.raises(IntegrityMismatch):
        verify_digest(actual, "f" * 64, source="blob")
    with pytest.raises(IntegrityMismatch):
        parse_digest("no digest here")


def test_extract_strips_top_level_directory(tmp_path: Path) -> None:
    """Members land directly in the destination."""
    data = _tarball({"pg/bin/tool": b"#!", "pg/share/x.txt": b"x"})

    extract_archive(data, tmp_path / "out")

    assert (tmp_path / "out" / "bin" / "tool").read_bytes() == b"#!"
    assert (tmp_path / "out" / "share" / "x.txt").exists()


def test_extract_accepts_archive_path(tmp_path: Path) -> None:
    """Archives can be extracted from disk as well as from memory."""
    source = tmp_path / "archive.tar.gz"
    source.write_bytes(_tarball({"pg/bin/tool": b"#!"}))

    extract_archive(source, tmp_path / "out")

    assert (tmp_path / "out" / "bin" / "tool").exists()


@pytest.mark.parametrize("name", ["pg/../../escape.txt", "/etc/evil"])
def test_extract_rejects_unsafe_members(tmp_path: Path, name: str) -> None:
    """Traversal and absolute members abort extraction."""
    data = _tarball({"pg/bin/tool": b"#!", name: b"x"})

    with pytest.raises(InstallationIncomplete, match="unsafe"):
        extract_archive(data, tmp_path / "out")

    assert not (tmp_path / "escape.txt").exists()


def test_extract_rejects_corrupt_archive(tmp_path: Path) -> None:
    """Unreadable archives raise InstallationIncomplete."""
    with pytest.raises(InstallationIncomplete):
        extract_archive(b"not a tarball", tmp_path / "out")


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX executables only")
def test_install_produces_verified_installation(tmp_path: Path, fake_archive: bytes) -> None:
    """Installing yields executable initdb and postgres binaries."""
    installation = Installer(tmp_path / "installs").install(fake_archive, VERSION)

    assert installation.path.parent == tmp_path / "installs"
    assert installation.path.name.startswith(f"postgresql-{FAKE_VERSION}-")
    assert installation.version == VERSION
    assert os.access(installation.initdb, os.X_OK)
    assert os.access(installation.postgres, os.X_OK)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX executables only")
def test_install_uses_fresh_directory_each_time(tmp_path: Path, fake_archive: bytes) -> None:
    """Installations never reuse a previous directory."""
    installer = Installer(tmp_path / "installs")

    first = installer.install(fake_archive, VERSION)
    second = installer.install(fake_archive, VERSION)

    assert first.path != second.path


def test_install_without_postgres_binary_is_incomplete(tmp_path: Path) -> None:
    """Archives missing a required binary fail verification."""
    archive = build_archive(include_postgres=False)

    with pytest.raises(InstallationIncomplete) as excinfo:
        Installer(tmp_path / "installs").install(archive, VERSION)

    assert excinfo.value.context["missing"] == ["postgres"]


def test_verify_reports_missing_binaries(tmp_path: Path) -> None:
    """An empty directory is not a usable installation."""
    with pytest.raises(InstallationIncomplete, match="initdb, postgres"):
        Installation(path=tmp_path, version=VERSION).verify()

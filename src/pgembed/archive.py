"""Archive identity, integrity checks and safe extraction."""
from __future__ import annotations

import io
import platform as _platform
import re
import tarfile
from dataclasses import dataclass
from glob import glob
from pathlib import Path, PurePosixPath

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from packaging.version import Version

from .errors import InstallationIncomplete, IntegrityMismatch, UnsupportedPlatform

ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".sha256"
SIGNATURE_SUFFIX = ".sig"

_DIGEST = re.compile(r"\b[0-9a-fA-F]{64}\b")

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "i386": "i686",
    "i686": "i686",
    "x86": "i686",
    "armv7l": "armv7",
    "ppc64le": "powerpc64le",
    "s390x": "s390x",
}

_TARGETS = {
    ("linux", "x86_64"): "x86_64-unknown-linux-{libc}",
    ("linux", "aarch64"): "aarch64-unknown-linux-{libc}",
    ("linux", "i686"): "i686-unknown-linux-{libc}",
    ("linux", "armv7"): "armv7-unknown-linux-{libc}eabihf",
    ("linux", "powerpc64le"): "powerpc64le-unknown-linux-{libc}",
    ("linux", "s390x"): "s390x-unknown-linux-{libc}",
    ("darwin", "x86_64"): "x86_64-apple-darwin",
    ("darwin", "aarch64"): "aarch64-apple-darwin",
    ("windows", "x86_64"): "x86_64-pc-windows-msvc",
}


def current_platform() -> str:
    """Return the normalised operating system name of this host."""
    system = _platform.system().lower()
    if system.startswith("win"):
        return "windows"
    if system == "linux" and _is_musl():
        return "linux-musl"
    return system


def current_architecture() -> str:
    """Return the normalised CPU architecture of this host."""
    machine = _platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def _is_musl() -> bool:
    libc, _ = _platform.libc_ver()
    if libc == "glibc":
        return False
    return bool(glob("/lib/ld-musl-*"))


@dataclass(frozen=True, slots=True)
class ArchiveKey:
    """Identify one binary archive: operating system, CPU and version."""

    platform: str
    architecture: str
    version: Version

    @classmethod
    def for_host(cls, version: Version) -> ArchiveKey:
        """Return the key for *version* on the running host."""
        return cls(current_platform(), current_architecture(), version)

    @property
    def target(self) -> str:
        """Return the target triple used in published asset names."""
        system, _, libc = self.platform.partition("-")
        template = _TARGETS.get((system, self.architecture))
        if template is None:
            raise UnsupportedPlatform(
                f"No PostgreSQL archives are published for {self.platform}/{self.architecture}.",
                context={"platform": self.platform, "architecture": self.architecture},
            )
        return template.format(libc=libc or "gnu")

    @property
    def slug(self) -> str:
        """Return the file-system friendly identifier for the key."""
        return f"postgresql-{self.version}-{self.target}"

    @property
    def asset_name(self) -> str:
        """Return the archive file name."""
        return f"{self.slug}{ARCHIVE_SUFFIX}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "platform": self.platform,
            "architecture": self.architecture,
            "version": str(self.version),
            "target": self.target,
        }


def parse_digest(text: str) -> str:
    """Return the first SHA-256 hex digest found in a checksum file body."""
    match = _DIGEST.search(text)
    if match is None:
        raise IntegrityMismatch(
            "Checksum file does not contain a SHA-256 digest.",
            context={"checksum": text[:200]},
        )
    return match.group(0).lower()


def verify_digest(actual: str, expected: str, *, source: str) -> None:
    """Raise :class:`IntegrityMismatch` when the digests differ."""
    if actual.lower() != expected.lower():
        raise IntegrityMismatch(
            f"Checksum mismatch for {source}.",
            context={"source": source, "expected": expected, "actual": actual},
        )


def verify_signature(payload: bytes, signature: bytes, public_key_pem: bytes) -> None:
    """Verify a detached signature over *payload*.

    Ed25519, RSA (PKCS#1 v1.5, SHA-256) and ECDSA (SHA-256) keys are accepted.
    """
    try:
        key = serialization.load_pem_public_key(public_key_pem)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise IntegrityMismatch(f"Unable to load signing public key: {exc}") from exc

    try:
        if isinstance(key, ed25519.Ed25519PublicKey):
            key.verify(signature, payload)
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
        else:
            raise IntegrityMismatch(f"Unsupported signing key type: {type(key).__name__}.")
    except InvalidSignature as exc:
        raise IntegrityMismatch("Archive signature verification failed.") from exc


def extract_archive(source: Path | bytes, destination: Path) -> None:
    """Extract a compressed tarball into *destination*.

    The archive's top-level directory is stripped. Members that are absolute
    or climb out of the destination are rejected.
    """
    try:
        if isinstance(source, bytes):
            opener = tarfile.open(fileobj=io.BytesIO(source), mode="r:*")
        else:
            opener = tarfile.open(source, mode="r:*")
        with opener as archive:
            members = [_strip_member(member) for member in archive.getmembers()]
            archive.extractall(
                destination,
                members=[member for member in members if member is not None],
                filter="data",
            )
    except tarfile.FilterError as exc:
        raise InstallationIncomplete(
            f"Archive contains an unsafe member: {exc}",
            context={"destination": str(destination)},
        ) from exc
    except tarfile.TarError as exc:
        raise InstallationIncomplete(
            f"Unable to read PostgreSQL archive: {exc}",
            context={"destination": str(destination)},
        ) from exc


def _strip_member(member: tarfile.TarInfo) -> tarfile.TarInfo | None:
    name = _strip_path(member.name)
    if name is None:
        return None
    changes: dict[str, str] = {"name": name}
    if member.islnk():
        linkname = _strip_path(member.linkname)
        if linkname is None:
            return None
        changes["linkname"] = linkname
    return member.replace(**changes, deep=False)


def _strip_path(raw: str) -> str | None:
    path = PurePosixPath(raw)
    if path.is_absolute():
        raise tarfile.AbsolutePathError(tarfile.TarInfo(raw))
    if ".." in path.parts:
        raise tarfile.OutsideDestinationError(tarfile.TarInfo(raw), raw)
    parts = [part for part in path.parts if part != "."]
    if len(parts) <= 1:
        return None
    return "/".join(parts[1:])


__all__ = [
    "ArchiveKey",
    "current_architecture",
    "current_platform",
    "extract_archive",
    "parse_digest",
    "verify_digest",
    "verify_signature",
]

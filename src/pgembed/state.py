"""Small YAML documents persisted next to cache entries and instances."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import ConfigError

MANIFEST_NAME = "instance.yml"


def read_yaml(path: Path) -> dict[str, object] | None:
    """Return the mapping stored at *path*, or ``None`` when missing or unreadable."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return None
    return data if isinstance(data, dict) else None


def write_yaml_atomic(path: Path, payload: Mapping[str, object]) -> None:
    """Atomically write *payload* to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(dict(payload), handle, sort_keys=False)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


@dataclass(frozen=True, slots=True)
class InstanceManifest:
    """What a working directory holds: installed version and its paths."""

    version: str
    installation_dir: Path
    data_dir: Path

    @classmethod
    def load(cls, workdir: Path) -> InstanceManifest | None:
        """Read the manifest from *workdir* if present."""
        path = workdir / MANIFEST_NAME
        data = read_yaml(path)
        if data is None:
            return None
        try:
            return cls(
                version=str(data["version"]),
                installation_dir=Path(str(data["installation_dir"])),
                data_dir=Path(str(data["data_dir"])),
            )
        except KeyError as exc:
            raise ConfigError(
                f"Instance manifest {path} is missing '{exc.args[0]}'.",
                context={"path": str(path)},
            ) from exc

    def save(self, workdir: Path) -> None:
        """Persist the manifest into *workdir*."""
        write_yaml_atomic(
            workdir / MANIFEST_NAME,
            {
                "version": self.version,
                "installation_dir": str(self.installation_dir),
                "data_dir": str(self.data_dir),
            },
        )


__all__ = ["InstanceManifest", "read_yaml", "write_yaml_atomic"]

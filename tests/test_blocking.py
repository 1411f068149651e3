"""Tests for the blocking PostgreSQL facade."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from conftest import FAKE_VERSION, FakeServer
from packaging.version import Version

from pgembed import Status
from pgembed.blocking import PostgreSQL
from pgembed.config import PathsConfig, ServerConfig, Settings, TimeoutsConfig
from pgembed.errors import InstanceDestroyed, StartupTimeout
from pgembed.providers import EmbeddedArchiveProvider
from pgembed.supervisor import tcp_probe

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fake binaries are sh scripts")


def _postgresql(tmp_path: Path, fake_archive: bytes, **kwargs: object) -> PostgreSQL:
    settings = Settings(
        server=ServerConfig(password="pw"),
        paths=PathsConfig(cache_dir=tmp_path / "cache"),
        timeouts=TimeoutsConfig(start=15.0, stop=5.0, readiness_interval=0.05),
    )
    return PostgreSQL(
        settings,
        provider=EmbeddedArchiveProvider(fake_archive, Version(FAKE_VERSION)),
        probe=tcp_probe,
        **kwargs,  # type: ignore[arg-type]
    )


def test_context_manager_runs_full_lifecycle(
    tmp_path: Path, fake_archive: bytes, fake_server: FakeServer
) -> None:
    """with-block sets up, starts and destroys the instance."""
    with _postgresql(tmp_path, fake_archive, connect=fake_server.connect) as postgresql:
        assert postgresql.status is Status.STARTED
        assert postgresql.port is not None
        postgresql.create_database("app")
        assert postgresql.database_exists("app") is True
        postgresql.drop_database("app")
        workdir = postgresql.workdir

    assert postgresql.status is Status.DESTROYED
    assert workdir is not None
    assert not workdir.exists()


def test_explicit_calls_and_close(tmp_path: Path, fake_archive: bytes) -> None:
    """Each method drives the engine synchronously; close is idempotent."""
    postgresql = _postgresql(tmp_path, fake_archive)

    postgresql.setup()
    assert postgresql.version == Version(FAKE_VERSION)
    postgresql.start()
    assert postgresql.url().endswith(f":{postgresql.port}/postgres")
    postgresql.stop()
    assert postgresql.status is Status.STOPPED

    postgresql.close()
    postgresql.close()

    assert postgresql.status is Status.DESTROYED
    with pytest.raises(InstanceDestroyed):
        postgresql.start()
    postgresql.close()


def test_refuses_to_run_inside_event_loop(tmp_path: Path, fake_archive: bytes) -> None:
    """Calling the blocking facade from a coroutine raises RuntimeError."""
    postgresql = _postgresql(tmp_path, fake_archive)

    async def misuse() -> None:
        postgresql.setup()

    with pytest.raises(RuntimeError, match="event loop"):
        asyncio.run(misuse())

    assert postgresql.status is Status.UNINITIALIZED
    postgresql.close()


def test_failed_entry_closes_instance(tmp_path: Path, fake_archive: bytes) -> None:
    """A start failure inside ``with`` destroys the instance and closes the loop."""

    async def never_ready(host: str, port: int) -> bool:
        return False

    settings = Settings(
        server=ServerConfig(password="pw"),
        paths=PathsConfig(cache_dir=tmp_path / "cache"),
        timeouts=TimeoutsConfig(start=0.5, stop=5.0, readiness_interval=0.05),
    )
    postgresql = PostgreSQL(
        settings,
        provider=EmbeddedArchiveProvider(fake_archive, Version(FAKE_VERSION)),
        probe=never_ready,
    )

    with pytest.raises(StartupTimeout):
        with postgresql:
            raise AssertionError("body must not run")

    assert postgresql.status is Status.DESTROYED
    assert postgresql.workdir is not None
    assert not postgresql.workdir.exists()
    assert postgresql._loop is None

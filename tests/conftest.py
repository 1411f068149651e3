"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import os
import sys
import tarfile
import textwrap
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import asyncpg
import pytest

from pgembed.locking import FileLock, LockManager

FAKE_VERSION = "16.4.0"

FAKE_INITDB = textwrap.dedent(
    """
    import os
    import sys
    from pathlib import Path

    args = sys.argv[1:]
    data = Path(args[args.index("-D") + 1])
    pwfile = next(arg.split("=", 1)[1] for arg in args if arg.startswith("--pwfile="))
    if os.environ.get("FAKE_INITDB_FAIL"):
        print("initdb: error: could not create directory", file=sys.stderr)
        sys.exit(1)
    if not Path(pwfile).read_text().strip():
        print("initdb: error: empty password file", file=sys.stderr)
        sys.exit(1)
    data.mkdir(parents=True, exist_ok=True)
    (data / "PG_VERSION").write_text("16\\n")
    (data / "postgresql.conf").write_text("# fake cluster\\n")
    with (data / "initdb.calls").open("a") as handle:
        handle.write(" ".join(args) + "\\n")
    """
)

FAKE_POSTGRES = textwrap.dedent(
    """
    import os
    import signal
    import socket
    import sys
    from pathlib import Path

    args = sys.argv[1:]
    data = Path(args[args.index("-D") + 1])
    port = None
    for line in (data / "pgembed.conf").read_text().splitlines():
        key, _, value = line.partition("=")
        if key.strip() == "port":
            port = int(value.strip().strip("'"))
    if os.environ.get("FAKE_POSTGRES_EXIT"):
        print("FATAL:  could not load configuration", flush=True)
        sys.exit(3)


    def _stop(signum, frame):
        print("received fast shutdown request", flush=True)
        sys.exit(0)


    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", port))
    server.listen(16)
    server.settimeout(0.1)
    print("database system is ready to accept connections", flush=True)
    while True:
        try:
            connection, _ = server.accept()
        except TimeoutError:
            continue
        connection.close()
    """
)


def _wrapper(script: str) -> str:
    return f'#!/bin/sh\nexec "{sys.executable}" "$(dirname "$0")/../share/{script}" "$@"\n'


def _add_file(archive: tarfile.TarFile, name: str, content: str, mode: int) -> None:
    payload = content.encode("utf-8")
    info = tarfile.TarInfo(name)
    info.size = len(payload)
    info.mode = mode
    archive.addfile(info, io.BytesIO(payload))


def build_archive(
    *,
    version: str = FAKE_VERSION,
    include_postgres: bool = True,
    extra: dict[str, str] | None = None,
) -> bytes:
    """Return a gzip tarball shaped like a published PostgreSQL archive."""
    top = f"postgresql-{version}-test"
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        directory = tarfile.TarInfo(top)
        directory.type = tarfile.DIRTYPE
        directory.mode = 0o755
        archive.addfile(directory)
        _add_file(archive, f"{top}/bin/initdb", _wrapper("fake_initdb.py"), 0o755)
        if include_postgres:
            _add_file(archive, f"{top}/bin/postgres", _wrapper("fake_postgres.py"), 0o755)
        _add_file(archive, f"{top}/share/fake_initdb.py", FAKE_INITDB, 0o644)
        _add_file(archive, f"{top}/share/fake_postgres.py", FAKE_POSTGRES, 0o644)
        for name, content in (extra or {}).items():
            _add_file(archive, name, content, 0o644)
    return buffer.getvalue()


@contextmanager
def held_lock(manager: LockManager, name: str) -> Iterator[FileLock]:
    """Hold the lock for *name* the way another process would."""
    lock = manager.lock(name)
    assert lock.try_acquire(), f"{name} is already locked"
    try:
        yield lock
    finally:
        lock.release()


@pytest.fixture(scope="session")
def fake_archive() -> bytes:
    """Archive with working fake ``initdb`` and ``postgres`` executables."""
    return build_archive()


class FakeConnection:
    """In-memory stand-in for an ``asyncpg`` connection."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.closed = False

    async def fetchval(self, query: str, *args: Any) -> Any:
        self.server.queries.append((query, args))
        return 1 if args and args[0] in self.server.databases else None

    async def execute(self, statement: str) -> str:
        self.server.queries.append((statement, ()))
        verb, _, rest = statement.partition(" DATABASE ")
        name = rest[1:-1].replace('""', '"')
        if verb == "CREATE":
            if name in self.server.databases:
                raise asyncpg.DuplicateDatabaseError(f'database "{name}" already exists')
            self.server.databases.add(name)
            return "CREATE DATABASE"
        if name not in self.server.databases:
            raise asyncpg.InvalidCatalogNameError(f'database "{name}" does not exist')
        self.server.databases.discard(name)
        return "DROP DATABASE"

    async def close(self) -> None:
        self.closed = True


class FakeServer:
    """Records connections made by the admin facade."""

    def __init__(self) -> None:
        self.databases: set[str] = {"postgres", "template0", "template1"}
        self.queries: list[tuple[str, tuple[Any, ...]]] = []
        self.connect_kwargs: list[dict[str, Any]] = []

    async def connect(self, **kwargs: Any) -> FakeConnection:
        self.connect_kwargs.append(kwargs)
        return FakeConnection(self)


@pytest.fixture
def fake_server() -> FakeServer:
    """Fresh fake database server."""
    return FakeServer()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


__all__ = ["FAKE_VERSION", "FakeServer", "build_archive"]

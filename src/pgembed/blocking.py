"""Blocking :class:`PostgreSQL` facade for synchronous callers.

Each instance owns a private event loop and drives the asynchronous engine
with ``run_until_complete``. It must not be used from inside a running event
loop; use :class:`pgembed.engine.PostgreSQL` there instead.
"""
from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from pathlib import Path
from types import TracebackType
from typing import Any, TypeVar

from packaging.version import Version

from . import engine
from .cache import ArchiveCache
from .config import Settings
from .database import Connect
from .providers import ArchiveProvider
from .supervisor import ReadinessProbe, Status

T = TypeVar("T")


class PostgreSQL:
    """Synchronous wrapper around :class:`pgembed.engine.PostgreSQL`."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        provider: ArchiveProvider | None = None,
        cache: ArchiveCache | None = None,
        probe: ReadinessProbe | None = None,
        connect: Connect | None = None,
    ) -> None:
        """Create the wrapped instance; the private loop is created on first use."""
        self._inner = engine.PostgreSQL(
            settings, provider=provider, cache=cache, probe=probe, connect=connect
        )
        self._loop: asyncio.AbstractEventLoop | None = None

    def __repr__(self) -> str:
        return repr(self._inner).replace("PostgreSQL(", "PostgreSQL(blocking, ", 1)

    @property
    def settings(self) -> Settings:
        """Return the instance settings."""
        return self._inner.settings

    @property
    def status(self) -> Status:
        """Return the lifecycle status."""
        return self._inner.status

    @property
    def version(self) -> Version | None:
        """Return the installed version, once set up."""
        return self._inner.version

    @property
    def port(self) -> int | None:
        """Return the listening port while started."""
        return self._inner.port

    @property
    def pid(self) -> int | None:
        """Return the server process id while started."""
        return self._inner.pid

    @property
    def workdir(self) -> Path | None:
        """Return the working directory, once known."""
        return self._inner.workdir

    def url(self, database: str = "postgres") -> str:
        """Return a connection URL for *database*."""
        return self._inner.url(database)

    def setup(self) -> None:
        """See :meth:`pgembed.engine.PostgreSQL.setup`."""
        self._run(self._inner.setup())

    def start(self) -> None:
        """See :meth:`pgembed.engine.PostgreSQL.start`."""
        self._run(self._inner.start())

    def stop(self) -> None:
        """See :meth:`pgembed.engine.PostgreSQL.stop`."""
        self._run(self._inner.stop())

    def destroy(self) -> None:
        """See :meth:`pgembed.engine.PostgreSQL.destroy`."""
        self._run(self._inner.destroy())

    def create_database(self, name: str) -> None:
        """Create database *name*."""
        self._run(self._inner.create_database(name))

    def drop_database(self, name: str) -> None:
        """Drop database *name*."""
        self._run(self._inner.drop_database(name))

    def database_exists(self, name: str) -> bool:
        """Return whether database *name* exists."""
        return self._run(self._inner.database_exists(name))

    def close(self) -> None:
        """Destroy the instance and close the private loop."""
        try:
            if self._inner.status is not Status.DESTROYED:
                self._run(self._inner.destroy())
        finally:
            loop, self._loop = self._loop, None
            if loop is not None and not loop.is_closed():
                loop.run_until_complete(loop.shutdown_asyncgens())
                loop.close()

    def __enter__(self) -> PostgreSQL:
        try:
            self.setup()
            self.start()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def _run(self, coroutine: Coroutine[Any, Any, T]) -> T:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            coroutine.close()
            raise RuntimeError(
                "The blocking PostgreSQL facade cannot run inside an event loop; "
                "use pgembed.engine.PostgreSQL instead."
            )
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.new_event_loop()
        return self._loop.run_until_complete(coroutine)


__all__ = ["PostgreSQL"]

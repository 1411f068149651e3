"""Asynchronous :class:`PostgreSQL` facade.

Typical use::

    async with PostgreSQL() as postgresql:
        await postgresql.create_database("app")
        dsn = postgresql.url("app")

``setup()`` resolves the requested version, fetches and installs the archive
and initialises the data directory. ``start()``/``stop()`` drive the server
process and ``destroy()`` tears everything down, removing the working
directory of ephemeral instances.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from types import TracebackType

from packaging.version import InvalidVersion, Version

from .archive import ArchiveKey, current_architecture, current_platform
from .cache import ArchiveCache
from .config import Settings
from .database import Connect, DatabaseAdmin
from .errors import (
    ConfigError,
    InstallationIncomplete,
    InstanceDestroyed,
    NotInitialized,
    NotStarted,
    RegistryUnavailable,
    VersionNotFound,
)
from .installer import Installation, Installer
from .logging import OperationScope, StructuredLogger
from .providers import (
    ArchiveProvider,
    EmbeddedArchiveProvider,
    PinnedArchiveProvider,
    ReleaseRegistry,
    RemoteArchiveProvider,
    StreamingArchiveProvider,
)
from .state import InstanceManifest
from .supervisor import ClusterSupervisor, ReadinessProbe, Status
from .version import VersionResolver, VersionSpec, parse_spec

LOGGER = logging.getLogger(__name__)

INSTALLATIONS_DIR = "installations"
DATA_DIR = "data"


def build_provider(settings: Settings) -> ArchiveProvider:
    """Return the archive provider described by *settings*."""
    download = settings.download
    if download.archive_path is not None:
        return EmbeddedArchiveProvider.from_path(download.archive_path)
    public_key: bytes | None = None
    if download.public_key is not None:
        try:
            public_key = download.public_key.read_bytes()
        except OSError as exc:
            raise ConfigError(
                f"Unable to read signing key {download.public_key}: {exc}",
                context={"path": str(download.public_key)},
            ) from exc
    registry = ReleaseRegistry(
        settings.releases_url,
        token=download.github_token,
        retries=download.retries,
        backoff=download.backoff,
        timeout=download.timeout,
    )
    return RemoteArchiveProvider(registry, public_key=public_key)


def build_cache(settings: Settings) -> ArchiveCache:
    """Return the archive cache described by *settings*."""
    return ArchiveCache(
        settings.paths.cache_dir,
        lock_timeout=settings.timeouts.lock,
        max_size_mb=settings.cache.max_size_mb,
        max_age_days=settings.cache.max_age_days,
    )


async def resolve_version(
    spec: str | VersionSpec,
    provider: ArchiveProvider,
    cache: ArchiveCache | None = None,
) -> Version:
    """Resolve *spec* using whatever the provider can list."""
    parsed = parse_spec(spec)
    if isinstance(provider, PinnedArchiveProvider):
        pinned = provider.version
        if parsed.kind != "latest" and not parsed.matches(pinned):
            raise VersionNotFound(
                f"The bundled archive provides PostgreSQL {pinned}, which does not match "
                f"'{parsed}'.",
                context={"spec": str(parsed), "available": str(pinned)},
            )
        return pinned

    async def list_versions() -> list[Version]:
        if isinstance(provider, StreamingArchiveProvider):
            return await provider.list_versions()
        raise RegistryUnavailable(f"{provider!r} cannot list versions.")

    platform, architecture = current_platform(), current_architecture()
    resolver = VersionResolver(
        list_versions,
        cached_versions=(
            (lambda: cache.cached_versions(platform, architecture)) if cache is not None else None
        ),
    )
    return await resolver.resolve(parsed)


class PostgreSQL:
    """One managed PostgreSQL instance."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        provider: ArchiveProvider | None = None,
        cache: ArchiveCache | None = None,
        probe: ReadinessProbe | None = None,
        connect: Connect | None = None,
    ) -> None:
        """Create an instance; nothing touches disk or network until ``setup()``."""
        self._settings = settings or Settings()
        self._provider = provider
        self._cache = cache
        self._probe = probe
        self._connect = connect
        self._operations = StructuredLogger(self._settings.paths.log_dir)
        self._workdir: Path | None = self._settings.paths.installation_dir
        self._supervisor: ClusterSupervisor | None = None
        self._destroyed = False

    def __repr__(self) -> str:
        return f"PostgreSQL(status={self.status.value!r}, workdir={str(self._workdir)!r})"

    # Properties -------------------------------------------------------
    @property
    def settings(self) -> Settings:
        """Return the instance settings."""
        return self._settings

    @property
    def status(self) -> Status:
        """Return the lifecycle status after a liveness check."""
        if self._supervisor is not None:
            return self._supervisor.status
        return Status.DESTROYED if self._destroyed else Status.UNINITIALIZED

    @property
    def version(self) -> Version | None:
        """Return the installed version, once set up."""
        installation = self._supervisor.installation if self._supervisor else None
        return installation.version if installation else None

    @property
    def port(self) -> int | None:
        """Return the listening port while started."""
        return self._supervisor.port if self._supervisor else None

    @property
    def pid(self) -> int | None:
        """Return the server process id while started."""
        return self._supervisor.pid if self._supervisor else None

    @property
    def workdir(self) -> Path | None:
        """Return the working directory, once known."""
        return self._workdir

    @property
    def data_dir(self) -> Path | None:
        """Return the data directory, once known."""
        return self._supervisor.data_dir if self._supervisor else None

    def url(self, database: str = "postgres") -> str:
        """Return a connection URL for *database*."""
        return self._settings.url(database, port=self.port or self._settings.server.port)

    # Lifecycle --------------------------------------------------------
    async def setup(self) -> None:
        """Install PostgreSQL and initialise the data directory.

        Calling it again after success is a no-op.
        """
        self._ensure_alive("setup")
        if self._supervisor is not None:
            await self._supervisor.initialize()
            return

        with self._operations.operation(
            "setup", args={"version": self._settings.version}
        ) as op:
            workdir = self._prepare_workdir()
            data_dir = self._settings.paths.data_dir or workdir / DATA_DIR
            supervisor = ClusterSupervisor(
                workdir=workdir,
                data_dir=data_dir,
                server=self._settings.server,
                timeouts=self._settings.timeouts,
                probe=self._probe,
                connect=self._connect,
            )
            installation = self._reuse_installation(workdir, op)
            if installation is None:
                installation = await self._install(workdir, op)
                InstanceManifest(
                    version=str(installation.version),
                    installation_dir=installation.path,
                    data_dir=data_dir,
                ).save(workdir)
            supervisor.attach(installation)
            self._supervisor = supervisor
            await supervisor.initialize()
            op.add_step("initdb", detail=str(data_dir))
            op.success(
                f"PostgreSQL {installation.version} ready in {workdir}.",
                changed=1,
                context={"workdir": str(workdir), "version": str(installation.version)},
            )

    async def start(self) -> None:
        """Start the server and wait until it accepts connections."""
        supervisor = self._require_setup("start")
        with self._operations.operation("start", target={"workdir": str(self._workdir)}) as op:
            port = await supervisor.start()
            op.success(f"PostgreSQL listening on port {port}.", context={"port": port})

    async def stop(self) -> None:
        """Stop the server; a no-op when it is not running."""
        self._ensure_alive("stop")
        if self._supervisor is None:
            return
        with self._operations.operation("stop", target={"workdir": str(self._workdir)}) as op:
            await self._supervisor.stop()
            op.success("PostgreSQL stopped.")

    async def destroy(self) -> None:
        """Stop the server and remove ephemeral files."""
        if self._destroyed:
            return
        with self._operations.operation("destroy", target={"workdir": str(self._workdir)}) as op:
            try:
                if self._supervisor is not None:
                    await self._supervisor.destroy()
            finally:
                self._destroyed = True
                if self._settings.temporary and self._workdir is not None:
                    shutil.rmtree(self._workdir, ignore_errors=True)
                    op.add_step("remove-workdir", detail=str(self._workdir))
            op.success("Instance destroyed.")

    # Databases --------------------------------------------------------
    async def create_database(self, name: str) -> None:
        """Create database *name*."""
        await self._admin("create_database").create_database(name)

    async def drop_database(self, name: str) -> None:
        """Drop database *name*."""
        await self._admin("drop_database").drop_database(name)

    async def database_exists(self, name: str) -> bool:
        """Return whether database *name* exists."""
        return await self._admin("database_exists").database_exists(name)

    # Context manager --------------------------------------------------
    async def __aenter__(self) -> PostgreSQL:
        try:
            await self.setup()
            await self.start()
        except BaseException:
            await self.destroy()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.destroy()

    # Internal helpers -------------------------------------------------
    def _ensure_alive(self, operation: str) -> None:
        if self._destroyed:
            raise InstanceDestroyed(
                f"Cannot {operation}: the instance has been destroyed.",
                context={"operation": operation},
            )

    def _require_setup(self, operation: str) -> ClusterSupervisor:
        self._ensure_alive(operation)
        if self._supervisor is None:
            raise NotInitialized(
                f"Cannot {operation}: run setup() first.", context={"operation": operation}
            )
        return self._supervisor

    def _admin(self, operation: str) -> DatabaseAdmin:
        self._ensure_alive(operation)
        supervisor = self._supervisor
        if supervisor is not None:
            supervisor.check(operation)
        port = supervisor.port if supervisor is not None else None
        if port is None:
            raise NotStarted(
                f"Cannot {operation}: the server is not running.",
                context={"operation": operation, "status": self.status.value},
            )
        server = self._settings.server
        return DatabaseAdmin(
            host=server.host,
            port=port,
            username=server.username,
            password=server.password,
            connect=self._connect,
        )

    def _prepare_workdir(self) -> Path:
        if self._workdir is None:
            self._workdir = Path(tempfile.mkdtemp(prefix="pgembed-"))
        else:
            self._workdir.mkdir(parents=True, exist_ok=True)
        return self._workdir

    def _reuse_installation(self, workdir: Path, op: OperationScope) -> Installation | None:
        manifest = InstanceManifest.load(workdir)
        if manifest is None:
            return None
        try:
            version = Version(manifest.version)
        except InvalidVersion:
            return None
        spec = parse_spec(self._settings.version)
        if spec.kind != "latest" and not spec.matches(version):
            LOGGER.info("Installed PostgreSQL %s does not satisfy '%s'", version, spec)
            return None
        installation = Installation(path=manifest.installation_dir, version=version)
        try:
            installation.verify()
        except InstallationIncomplete:
            LOGGER.warning("Recorded installation %s is unusable; reinstalling", installation.path)
            return None
        op.add_step("reuse-installation", detail=str(installation.path))
        return installation

    async def _install(self, workdir: Path, op: OperationScope) -> Installation:
        provider = self._provider or build_provider(self._settings)
        cache = self._cache or build_cache(self._settings)
        version = await resolve_version(self._settings.version, provider, cache)
        op.add_step("resolve", detail=str(version))

        key = ArchiveKey.for_host(version)
        installer = Installer(workdir / INSTALLATIONS_DIR)
        if isinstance(provider, StreamingArchiveProvider):
            async with cache.checkout(key, provider) as held:
                op.set_lock_wait_ms(held.lock_wait_ms)
                op.add_step("fetch", detail=key.slug)
                installation = await asyncio.to_thread(installer.install, held.path, version)
        else:
            archive = await provider.fetch(key)
            op.add_step("fetch", detail=key.slug)
            installation = await asyncio.to_thread(installer.install, archive, version)
        op.add_step("install", detail=str(installation.path))
        return installation


__all__ = ["PostgreSQL", "build_cache", "build_provider", "resolve_version"]

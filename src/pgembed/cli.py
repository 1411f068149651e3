"""Typer-powered command line for ``pgembed``.

Commands:

* ``pgembed versions [SPEC]``: list published versions (optionally filtered).
* ``pgembed resolve SPEC``: print the version a specifier resolves to.
* ``pgembed fetch [SPEC]``: download an archive into the cache.
* ``pgembed cache list`` / ``pgembed cache prune``: inspect and evict cache entries.
* ``pgembed config show``: print the merged configuration.
* ``pgembed run``: run a server in the foreground until interrupted.
"""
from __future__ import annotations

import asyncio
import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from packaging.version import Version
from rich.console import Console
from rich.table import Table

from . import __version__
from .archive import ArchiveKey
from .cache import ArchiveCache
from .config import Settings, load_settings
from .database import InvalidDatabaseName
from .engine import PostgreSQL, build_cache, build_provider, resolve_version
from .errors import (
    ConfigError,
    DatabaseAlreadyExists,
    DatabaseNotFound,
    DownloadFailed,
    IntegrityMismatch,
    InvalidVersionSpec,
    PgEmbedError,
    RegistryUnavailable,
    UnsupportedPlatform,
    VersionNotFound,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers import ArchiveProvider, PinnedArchiveProvider, StreamingArchiveProvider
from .version import parse_spec

console = Console()

VALIDATION_ERRORS = (
    ConfigError,
    InvalidVersionSpec,
    InvalidDatabaseName,
    DatabaseAlreadyExists,
    DatabaseNotFound,
)
PROVIDER_ERRORS = (
    VersionNotFound,
    RegistryUnavailable,
    DownloadFailed,
    IntegrityMismatch,
    UnsupportedPlatform,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to pgembed's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision and run local PostgreSQL servers without a system install.

        Archives are downloaded once into a shared cache and unpacked into
        private working directories.
        """
    ).strip(),
)
cache_app = typer.Typer(help="Inspect and evict cached PostgreSQL archives.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(cache_app, name="cache")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    settings: Settings
    logger: StructuredLogger
    cache: ArchiveCache
    _provider: ArchiveProvider | None = None

    @property
    def provider(self) -> ArchiveProvider:
        """Return the configured archive provider, built on first use."""
        if self._provider is None:
            self._provider = build_provider(self.settings)
        return self._provider


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["timeouts"] = {"lock": lock_timeout_override}
    try:
        settings = load_settings(config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    runtime = RuntimeContext(
        settings=settings,
        logger=StructuredLogger(settings.paths.log_dir),
        cache=build_cache(settings),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the pgembed version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override cache lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"pgembed {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: PgEmbedError) -> ExitCode:
    if isinstance(exc, VALIDATION_ERRORS):
        return ExitCode.VALIDATION
    if isinstance(exc, PROVIDER_ERRORS):
        return ExitCode.PROVIDER
    return ExitCode.ENVIRONMENT


def _fail(op: OperationScope, exc: PgEmbedError) -> NoReturn:
    _command_error(op, str(exc), rc=_exit_code_for(exc))


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges (secrets redacted)."""
    runtime = _get_runtime(ctx)
    data = runtime.settings.to_dict()

    with runtime.logger.operation(
        "config show", args={"json": json_output}, target={"kind": "config"}
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.")


@app.command("versions")
def versions(
    ctx: typer.Context,
    spec: str = typer.Argument("*", help="Only list versions matching this specifier."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List published PostgreSQL versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "versions", args={"spec": spec, "json": json_output}, target={"kind": "registry"}
    ) as op:
        try:
            parsed = parse_spec(spec)
            available = asyncio.run(_list_versions(runtime.provider))
        except PgEmbedError as exc:
            _fail(op, exc)

        matching = sorted(
            (version for version in available if parsed.matches(version)), reverse=True
        )
        if json_output:
            console.print_json(data={"versions": [str(version) for version in matching]})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Version", style="bold")
            if not matching:
                table.add_row("(none)")
            for version in matching:
                table.add_row(str(version))
            console.print(table)
        op.success(f"Listed {len(matching)} version(s).", context={"count": len(matching)})


async def _list_versions(provider: ArchiveProvider) -> list[Version]:
    if isinstance(provider, PinnedArchiveProvider):
        return [provider.version]
    if isinstance(provider, StreamingArchiveProvider):
        return await provider.list_versions()
    raise RegistryUnavailable(f"{provider!r} cannot list versions.")


@app.command("resolve")
def resolve(
    ctx: typer.Context,
    spec: str = typer.Argument(..., help="Version specifier, e.g. 16, ^16.2, >=15,<17."),
) -> None:
    """Print the newest version matching SPEC."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("resolve", args={"spec": spec}) as op:
        try:
            version = asyncio.run(resolve_version(spec, runtime.provider, runtime.cache))
        except PgEmbedError as exc:
            _fail(op, exc)
        console.print(str(version))
        op.success(f"Resolved '{spec}' to {version}.", context={"version": str(version)})


@app.command("fetch")
def fetch(
    ctx: typer.Context,
    spec: str | None = typer.Argument(None, help="Version specifier (defaults to config)."),
) -> None:
    """Download the archive for SPEC into the cache."""
    runtime = _get_runtime(ctx)
    requested = spec or runtime.settings.version
    with runtime.logger.operation(
        "fetch", args={"spec": requested}, target={"cache": str(runtime.cache.root)}
    ) as op:
        try:
            path = asyncio.run(_fetch(runtime, requested, op))
        except PgEmbedError as exc:
            _fail(op, exc)
        console.print(f"[green]Cached[/green] {path}")
        op.success(f"Cached {path.name}.", changed=1, context={"path": str(path)})


async def _fetch(runtime: RuntimeContext, spec: str, op: OperationScope) -> Path:
    version = await resolve_version(spec, runtime.provider, runtime.cache)
    op.add_step("resolve", detail=str(version))
    key = ArchiveKey.for_host(version)
    async with runtime.cache.checkout(key, runtime.provider) as held:
        op.set_lock_wait_ms(held.lock_wait_ms)
        return held.path


@cache_app.command("list")
def cache_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List cached archives."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cache list", args={"json": json_output}, target={"cache": str(runtime.cache.root)}
    ) as op:
        entries = runtime.cache.entries()
        if json_output:
            console.print_json(data={"entries": [entry.to_dict() for entry in entries]})
            op.success("Reported cache entries as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Archive", style="bold")
        table.add_column("Version")
        table.add_column("Size (MiB)", justify="right")
        table.add_column("Status")
        if not entries:
            table.add_row("(none)", "", "", "")
        for entry in entries:
            table.add_row(
                entry.slug,
                entry.version or "-",
                f"{entry.size / (1024 * 1024):.1f}",
                "[green]complete[/green]" if entry.complete else "[yellow]incomplete[/yellow]",
            )
        console.print(table)
        op.success(f"Reported {len(entries)} cache entries.")


@cache_app.command("prune")
def cache_prune(ctx: typer.Context) -> None:
    """Evict stale, oversized and incomplete cache entries."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cache prune", target={"cache": str(runtime.cache.root)}
    ) as op:
        try:
            removed = runtime.cache.prune()
        except OSError as exc:
            _command_error(op, f"Cache eviction failed: {exc}", rc=ExitCode.ENVIRONMENT)
        for entry in removed:
            console.print(f"Removed {entry.slug}")
        console.print(f"[green]Removed {len(removed)} cache entries.[/green]")
        op.success(
            f"Removed {len(removed)} cache entries.",
            changed=len(removed),
            context={"removed": [entry.slug for entry in removed]},
        )


@app.command("run")
def run(
    ctx: typer.Context,
    port: int | None = typer.Option(
        None, "--port", min=0, max=65535, help="Preferred listening port."
    ),
    directory: Path | None = typer.Option(
        None,
        "--dir",
        file_okay=False,
        help="Persistent working directory (defaults to a temporary one).",
    ),
    databases: list[str] | None = typer.Option(
        None, "--database", "-d", help="Create this database after start (repeatable)."
    ),
    check: bool = typer.Option(
        False, "--check", help="Start, print the connection URL and shut down immediately."
    ),
) -> None:
    """Run a PostgreSQL server in the foreground until interrupted."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    if port is not None:
        settings = replace(settings, server=replace(settings.server, port=port))
    if directory is not None:
        settings = replace(settings, paths=replace(settings.paths, installation_dir=directory))

    with runtime.logger.operation(
        "run",
        args={"port": port, "dir": directory, "databases": databases or [], "check": check},
    ) as op:
        try:
            asyncio.run(_serve(settings, runtime, list(databases or []), wait=not check))
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted; server stopped.[/yellow]")
            op.warning("Interrupted by user.")
            raise typer.Exit(code=ExitCode.INTERRUPTED) from None
        except PgEmbedError as exc:
            _fail(op, exc)
        op.success("Server stopped.")


async def _serve(
    settings: Settings, runtime: RuntimeContext, databases: list[str], *, wait: bool
) -> None:
    postgresql = PostgreSQL(settings, provider=runtime.provider, cache=runtime.cache)
    try:
        await postgresql.setup()
        await postgresql.start()
        for name in databases:
            if not await postgresql.database_exists(name):
                await postgresql.create_database(name)
        console.print(f"PostgreSQL {postgresql.version} listening on port {postgresql.port}")
        for name in databases or ["postgres"]:
            console.print(f"  {postgresql.url(name)}")
        if wait:
            console.print("Press Ctrl+C to stop.")
            await asyncio.Event().wait()
    finally:
        await postgresql.destroy()


__all__ = ["app"]

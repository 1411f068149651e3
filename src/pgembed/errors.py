"""Error taxonomy shared by every pgembed component.

Each error carries a ``context`` mapping with the details needed to diagnose a
failure without re-running in verbose mode (archive key, path, URL, exit code,
captured stderr tail, ...). The message is kept human readable; the context is
meant for structured logs and programmatic inspection.
"""
from __future__ import annotations

from collections.abc import Mapping


class PgEmbedError(RuntimeError):
    """Base class for all pgembed failures."""

    def __init__(self, message: str, *, context: Mapping[str, object] | None = None) -> None:
        """Store *message* and an optional diagnostic *context*."""
        super().__init__(message)
        self.context: dict[str, object] = dict(context or {})


class ConfigError(PgEmbedError):
    """Raised when configuration parsing fails."""


class InvalidVersionSpec(PgEmbedError, ValueError):
    """Raised when a version specifier cannot be parsed."""


class VersionNotFound(PgEmbedError):
    """Raised when no published release satisfies a version specifier."""


class RegistryUnavailable(PgEmbedError):
    """Raised when the release registry cannot be reached and no fallback exists."""


class DownloadFailed(PgEmbedError):
    """Raised when an archive download fails after all retries."""


class IntegrityMismatch(PgEmbedError):
    """Raised when a downloaded archive fails checksum or signature validation."""


class UnsupportedPlatform(PgEmbedError):
    """Raised when no archive is published for the requesting platform."""


class InstallationIncomplete(PgEmbedError):
    """Raised when an extracted archive lacks required executables."""


class ClusterInitFailed(PgEmbedError):
    """Raised when ``initdb`` fails to create the data cluster."""


class LifecycleError(PgEmbedError):
    """Raised when an operation is invoked in the wrong lifecycle state."""


class NotInitialized(LifecycleError):
    """Raised when starting an instance that has not been set up."""


class NotStarted(LifecycleError):
    """Raised when a database operation requires a running server."""


class InstanceDestroyed(LifecycleError):
    """Raised when operating on an instance that has been destroyed."""


class StartupTimeout(PgEmbedError):
    """Raised when the server does not accept connections in time."""


class ProcessExitedUnexpectedly(PgEmbedError):
    """Raised when the server process exits without being asked to."""

    @property
    def exit_code(self) -> int | None:
        """Return the captured process exit code, if any."""
        value = self.context.get("exit_code")
        return value if isinstance(value, int) else None

    @property
    def stderr_tail(self) -> str:
        """Return the last captured server output lines."""
        return str(self.context.get("stderr_tail", ""))


class DatabaseAlreadyExists(PgEmbedError):
    """Raised when creating a database whose name is taken."""


class DatabaseNotFound(PgEmbedError):
    """Raised when dropping a database that does not exist."""


class DatabaseInUse(PgEmbedError):
    """Raised when dropping a database that other sessions are connected to."""


class DatabaseOperationFailed(PgEmbedError):
    """Raised when the server rejects an administrative statement."""


class ServerConnectionError(PgEmbedError):
    """Raised when the running server cannot be reached by the admin client."""


__all__ = [
    "ClusterInitFailed",
    "ConfigError",
    "DatabaseAlreadyExists",
    "DatabaseInUse",
    "DatabaseNotFound",
    "DatabaseOperationFailed",
    "DownloadFailed",
    "InstallationIncomplete",
    "InstanceDestroyed",
    "IntegrityMismatch",
    "InvalidVersionSpec",
    "LifecycleError",
    "NotInitialized",
    "NotStarted",
    "PgEmbedError",
    "ProcessExitedUnexpectedly",
    "RegistryUnavailable",
    "ServerConnectionError",
    "StartupTimeout",
    "UnsupportedPlatform",
    "VersionNotFound",
]

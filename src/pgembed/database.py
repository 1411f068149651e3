"""Administrative database operations against a running server."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import asyncpg

from .errors import (
    DatabaseAlreadyExists,
    DatabaseInUse,
    DatabaseNotFound,
    DatabaseOperationFailed,
    PgEmbedError,
    ServerConnectionError,
)

LOGGER = logging.getLogger(__name__)

MAX_IDENTIFIER_BYTES = 63
MAINTENANCE_DATABASE = "postgres"
CONNECT_TIMEOUT = 10.0

Connect = Callable[..., Awaitable[Any]]


class InvalidDatabaseName(PgEmbedError, ValueError):
    """Raised when a database name cannot be used as an identifier."""


def validate_name(name: str) -> str:
    """Return *name* if it is a usable database identifier."""
    if not name:
        raise InvalidDatabaseName("Database name must not be empty.")
    if "\x00" in name:
        raise InvalidDatabaseName("Database name must not contain NUL characters.")
    if len(name.encode("utf-8")) > MAX_IDENTIFIER_BYTES:
        raise InvalidDatabaseName(
            f"Database name exceeds {MAX_IDENTIFIER_BYTES} bytes.",
            context={"name": name},
        )
    return name


def quote_identifier(name: str) -> str:
    """Quote *name* as an SQL identifier."""
    return '"' + validate_name(name).replace('"', '""') + '"'


class DatabaseAdmin:
    """Create, drop and look up databases as the superuser."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        connect: Connect | None = None,
    ) -> None:
        """Target the server at *host*:*port*; *connect* replaces ``asyncpg.connect``."""
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self._connect = connect or asyncpg.connect

    async def database_exists(self, name: str) -> bool:
        """Return whether database *name* exists."""
        validate_name(name)
        async with self._connection() as connection:
            row = await self._call(
                connection.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", name)
            )
        return row is not None

    async def create_database(self, name: str) -> None:
        """Create database *name*."""
        statement = f"CREATE DATABASE {quote_identifier(name)}"
        async with self._connection() as connection:
            exists = await self._call(
                connection.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", name)
            )
            if exists is not None:
                raise DatabaseAlreadyExists(
                    f"Database '{name}' already exists.", context={"database": name}
                )
            try:
                await self._call(connection.execute(statement))
            except asyncpg.DuplicateDatabaseError as exc:
                raise DatabaseAlreadyExists(
                    f"Database '{name}' already exists.", context={"database": name}
                ) from exc
        LOGGER.info("Created database %s", name)

    async def drop_database(self, name: str) -> None:
        """Drop database *name*."""
        statement = f"DROP DATABASE {quote_identifier(name)}"
        async with self._connection() as connection:
            try:
                await self._call(connection.execute(statement))
            except asyncpg.InvalidCatalogNameError as exc:
                raise DatabaseNotFound(
                    f"Database '{name}' does not exist.", context={"database": name}
                ) from exc
            except asyncpg.ObjectInUseError as exc:
                raise DatabaseInUse(
                    f"Database '{name}' is being accessed by other users.",
                    context={"database": name},
                ) from exc
        LOGGER.info("Dropped database %s", name)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        try:
            connection = await asyncio.wait_for(
                self._connect(
                    host=self.host,
                    port=self.port,
                    user=self.username,
                    password=self._password,
                    database=MAINTENANCE_DATABASE,
                ),
                timeout=CONNECT_TIMEOUT,
            )
        except (
            OSError,
            asyncio.TimeoutError,
            asyncpg.InterfaceError,
            asyncpg.PostgresError,
        ) as exc:
            raise self._connection_error(exc) from exc
        try:
            yield connection
        finally:
            try:
                await connection.close()
            except (OSError, asyncpg.InterfaceError):
                LOGGER.debug("Ignoring error while closing admin connection", exc_info=True)

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (OSError, asyncpg.InterfaceError) as exc:
            raise self._connection_error(exc) from exc
        except (
            asyncpg.DuplicateDatabaseError,
            asyncpg.InvalidCatalogNameError,
            asyncpg.ObjectInUseError,
        ):
            raise
        except asyncpg.PostgresError as exc:
            raise DatabaseOperationFailed(
                f"PostgreSQL rejected the statement: {exc}",
                context={"sqlstate": getattr(exc, "sqlstate", None)},
            ) from exc

    def _connection_error(self, exc: BaseException) -> ServerConnectionError:
        detail = str(exc) or type(exc).__name__
        return ServerConnectionError(
            f"Unable to reach PostgreSQL at {self.host}:{self.port}: {detail}",
            context={"host": self.host, "port": self.port},
        )


__all__ = ["DatabaseAdmin", "InvalidDatabaseName", "quote_identifier", "validate_name"]

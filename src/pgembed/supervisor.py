"""PostgreSQL cluster lifecycle: initdb, spawn, readiness, shutdown.

The supervisor is a small state machine. Each status is backed by an
immutable state value and transitions replace it wholesale; only
:class:`Started` holds a live :class:`ServerProcess` and the listening port.

Liveness is checked before every operation and whenever :attr:`status` is
read. A server that exits while started moves the instance to ``FAILED`` and
every operation except :meth:`ClusterSupervisor.destroy` re-raises the
recorded :class:`ProcessExitedUnexpectedly`.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Any, ClassVar

import asyncpg

from .config import ServerConfig, TimeoutsConfig
from .errors import (
    ClusterInitFailed,
    InstanceDestroyed,
    NotInitialized,
    ProcessExitedUnexpectedly,
    StartupTimeout,
)
from .installer import Installation
from .ports import probe_address, select_port

LOGGER = logging.getLogger(__name__)

GENERATED_CONF = "pgembed.conf"
INCLUDE_LINE = f"include_if_exists '{GENERATED_CONF}'"
SERVER_LOG = Path("log") / "postgresql.log"
PASSWORD_FILE = ".pgpass"
TAIL_LINES = 20
PROBE_TIMEOUT = 5.0

ReadinessProbe = Callable[[str, int], Awaitable[bool]]


class Status(str, Enum):
    """Lifecycle status of a managed instance."""

    UNINITIALIZED = "uninitialized"
    INSTALLED = "installed"
    INITIALIZED = "initialized"
    STARTED = "started"
    STOPPED = "stopped"
    FAILED = "failed"
    DESTROYED = "destroyed"


# State values -------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Uninitialized:
    status: ClassVar[Status] = Status.UNINITIALIZED


@dataclass(frozen=True, slots=True)
class Installed:
    installation: Installation
    status: ClassVar[Status] = Status.INSTALLED


@dataclass(frozen=True, slots=True)
class Initialized:
    installation: Installation
    status: ClassVar[Status] = Status.INITIALIZED


@dataclass(frozen=True, slots=True)
class Started:
    installation: Installation
    process: ServerProcess
    port: int
    status: ClassVar[Status] = Status.STARTED


@dataclass(frozen=True, slots=True)
class Stopped:
    installation: Installation
    status: ClassVar[Status] = Status.STOPPED


@dataclass(frozen=True, slots=True)
class Failed:
    error: ProcessExitedUnexpectedly
    installation: Installation | None = None
    status: ClassVar[Status] = Status.FAILED


@dataclass(frozen=True, slots=True)
class Destroyed:
    status: ClassVar[Status] = Status.DESTROYED


State = Uninitialized | Installed | Initialized | Started | Stopped | Failed | Destroyed


# Server process ----------------------------------------------------------
class ServerProcess:
    """A spawned ``postgres`` process and its output log."""

    def __init__(
        self,
        popen: subprocess.Popen[bytes],
        log_path: Path,
        log_offset: int,
        log_handle: IO[bytes],
    ) -> None:
        """Wrap an already spawned process."""
        self._popen = popen
        self.log_path = log_path
        self.log_offset = log_offset
        self._log_handle: IO[bytes] | None = log_handle

    @classmethod
    def spawn(
        cls,
        command: Sequence[str],
        *,
        log_path: Path,
        env: Mapping[str, str] | None = None,
    ) -> ServerProcess:
        """Start *command* with output appended to *log_path*."""
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handle = log_path.open("ab")
        offset = handle.seek(0, os.SEEK_END)
        kwargs: dict[str, Any] = {}
        if os.name == "nt":  # pragma: no cover - Windows only
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        try:
            popen = subprocess.Popen(  # noqa: S603 - binaries come from our installation
                list(command),
                stdin=subprocess.DEVNULL,
                stdout=handle,
                stderr=subprocess.STDOUT,
                env=dict(env) if env is not None else None,
                **kwargs,
            )
        except OSError:
            handle.close()
            raise
        LOGGER.debug("Spawned %s (pid %d)", command[0], popen.pid)
        return cls(popen, log_path, offset, handle)

    @property
    def pid(self) -> int:
        """Return the process id."""
        return self._popen.pid

    @property
    def returncode(self) -> int | None:
        """Poll the process and return its exit code, if it has exited."""
        return self._popen.poll()

    @property
    def running(self) -> bool:
        """Return whether the process is still alive."""
        return self.returncode is None

    def tail(self, lines: int = TAIL_LINES) -> str:
        """Return the last *lines* of output written during this run."""
        try:
            with self.log_path.open("rb") as handle:
                handle.seek(self.log_offset)
                data = handle.read()
        except OSError:
            return ""
        text = data.decode("utf-8", errors="replace")
        return "\n".join(text.splitlines()[-lines:])

    async def stop(self, timeout: float) -> int | None:
        """Ask the server to shut down, killing it after *timeout*."""
        if self.running:
            try:
                if os.name == "nt":  # pragma: no cover - Windows only
                    self._popen.terminate()
                else:
                    # SIGINT requests a fast shutdown
                    self._popen.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
            deadline = time.monotonic() + timeout
            while self.running and time.monotonic() < deadline:
                await asyncio.sleep(0.05)
            if self.running:
                LOGGER.warning("Server pid %d ignored shutdown; killing it", self.pid)
                self.kill()
        code = self._popen.wait()
        self.close()
        return code

    def kill(self) -> None:
        """Kill the process immediately and reap it."""
        try:
            self._popen.kill()
        except ProcessLookupError:
            pass
        self._popen.wait()
        self.close()

    def close(self) -> None:
        """Close the log handle."""
        handle, self._log_handle = self._log_handle, None
        if handle is not None:
            handle.close()


# Readiness probes ---------------------------------------------------------
async def tcp_probe(host: str, port: int) -> bool:
    """Return whether a TCP connection to the server can be opened."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(probe_address(host), port), timeout=PROBE_TIMEOUT
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


def postgres_probe(
    username: str,
    password: str,
    *,
    database: str = "postgres",
    connect: Callable[..., Awaitable[Any]] | None = None,
) -> ReadinessProbe:
    """Return a probe that attempts a real client connection.

    A server still starting up, a refused connection or a timeout count as
    not ready; any other server reply (including authentication errors)
    means the server is accepting connections.
    """

    async def probe(host: str, port: int) -> bool:
        connector = connect or asyncpg.connect
        try:
            connection = await asyncio.wait_for(
                connector(host=host, port=port, user=username, password=password, database=database),
                timeout=PROBE_TIMEOUT,
            )
        except asyncpg.CannotConnectNowError:
            return False
        except (OSError, asyncio.TimeoutError, asyncpg.InterfaceError):
            return False
        except asyncpg.PostgresError:
            return True
        await connection.close()
        return True

    return probe


# Supervisor ---------------------------------------------------------------
class ClusterSupervisor:
    """Drive one data directory through its lifecycle."""

    def __init__(
        self,
        *,
        workdir: Path,
        data_dir: Path,
        server: ServerConfig,
        timeouts: TimeoutsConfig,
        probe: ReadinessProbe | None = None,
        connect: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        """Supervise the cluster in *data_dir*; *probe* defaults to a client connect."""
        self.workdir = workdir
        self.data_dir = data_dir
        self.server = server
        self.timeouts = timeouts
        self.probe = probe or postgres_probe(server.username, server.password, connect=connect)
        self._state: State = Uninitialized()

    @property
    def state(self) -> State:
        """Return the current state value."""
        return self._state

    @property
    def status(self) -> Status:
        """Return the current status after a liveness check."""
        self._check_liveness()
        return self._state.status

    @property
    def log_path(self) -> Path:
        """Return the server output log path."""
        return self.workdir / SERVER_LOG

    @property
    def installation(self) -> Installation | None:
        """Return the attached installation, if any."""
        return getattr(self._state, "installation", None)

    @property
    def port(self) -> int | None:
        """Return the listening port while started."""
        self._check_liveness()
        return self._state.port if isinstance(self._state, Started) else None

    @property
    def pid(self) -> int | None:
        """Return the server pid while started."""
        self._check_liveness()
        return self._state.process.pid if isinstance(self._state, Started) else None

    def attach(self, installation: Installation) -> None:
        """Record the installation to run; Uninitialized -> Installed."""
        self.check("attach")
        if isinstance(self._state, Uninitialized):
            self._state = Installed(installation)

    async def initialize(self) -> None:
        """Create the data cluster if needed; Installed -> Initialized."""
        self.check("initialize")
        state = self._state
        if not isinstance(state, Installed):
            if isinstance(state, Uninitialized):
                raise NotInitialized("No PostgreSQL installation is attached.")
            return

        if (self.data_dir / "PG_VERSION").exists():
            LOGGER.info("Reusing existing data directory %s", self.data_dir)
        else:
            await self._run_initdb(state.installation)
        self._ensure_include()
        self._state = Initialized(state.installation)

    async def start(self) -> int:
        """Start the server and wait for readiness; return the port."""
        self.check("start")
        state = self._state
        if isinstance(state, Started):
            return state.port
        if not isinstance(state, (Initialized, Stopped)):
            raise NotInitialized(
                f"Cannot start an instance that is {state.status.value}; run setup first.",
                context={"status": state.status.value},
            )

        port = select_port(self.server.host, self.server.port)
        self._write_config(port)
        try:
            process = ServerProcess.spawn(
                [str(state.installation.postgres), "-D", str(self.data_dir)],
                log_path=self.log_path,
            )
        except OSError as exc:
            raise ProcessExitedUnexpectedly(
                f"Unable to execute {state.installation.postgres}: {exc}",
                context={"binary": str(state.installation.postgres), "port": port},
            ) from exc
        try:
            await self._wait_ready(process, port)
        except BaseException:
            if process.running:
                process.kill()
            else:
                process.close()
            raise
        self._state = Started(state.installation, process, port)
        LOGGER.info("PostgreSQL started on %s:%d (pid %d)", self.server.host, port, process.pid)
        return port

    async def stop(self) -> None:
        """Stop the server; a no-op when it is not running."""
        self.check("stop")
        state = self._state
        if not isinstance(state, Started):
            return
        try:
            code = await state.process.stop(self.timeouts.stop)
        finally:
            self._state = Stopped(state.installation)
        LOGGER.info("PostgreSQL stopped (pid %d, exit %s)", state.process.pid, code)

    async def destroy(self) -> None:
        """Stop any running server and mark the instance destroyed."""
        state = self._state
        if isinstance(state, Destroyed):
            return
        self._check_liveness()
        state = self._state
        try:
            if isinstance(state, Started):
                await state.process.stop(self.timeouts.stop)
        finally:
            self._state = Destroyed()

    # Internal helpers -------------------------------------------------
    def check(self, operation: str) -> None:
        """Raise if *operation* is not allowed in the current state."""
        state = self._state
        if isinstance(state, Destroyed):
            raise InstanceDestroyed(
                f"Cannot {operation}: the instance has been destroyed.",
                context={"operation": operation},
            )
        self._check_liveness()
        state = self._state
        if isinstance(state, Failed):
            raise state.error

    def _check_liveness(self) -> None:
        state = self._state
        if not isinstance(state, Started):
            return
        code = state.process.returncode
        if code is None:
            return
        tail = state.process.tail()
        error = ProcessExitedUnexpectedly(
            f"PostgreSQL (pid {state.process.pid}) exited unexpectedly with code {code}.",
            context={
                "exit_code": code,
                "pid": state.process.pid,
                "port": state.port,
                "stderr_tail": tail,
                "log": str(self.log_path),
            },
        )
        state.process.close()
        self._state = Failed(error, state.installation)
        LOGGER.error("%s", error)

    async def _wait_ready(self, process: ServerProcess, port: int) -> None:
        deadline = time.monotonic() + self.timeouts.start
        while True:
            code = process.returncode
            if code is not None:
                raise ProcessExitedUnexpectedly(
                    f"PostgreSQL exited during startup with code {code}.",
                    context={
                        "exit_code": code,
                        "port": port,
                        "stderr_tail": process.tail(),
                        "log": str(self.log_path),
                    },
                )
            if await self.probe(self.server.host, port):
                return
            if time.monotonic() >= deadline:
                raise StartupTimeout(
                    f"PostgreSQL did not accept connections within {self.timeouts.start:.0f}s.",
                    context={
                        "port": port,
                        "timeout": self.timeouts.start,
                        "stderr_tail": process.tail(),
                        "log": str(self.log_path),
                    },
                )
            await asyncio.sleep(self.timeouts.readiness_interval)

    async def _run_initdb(self, installation: Installation) -> None:
        self.workdir.mkdir(parents=True, exist_ok=True)
        self.data_dir.parent.mkdir(parents=True, exist_ok=True)
        password_file = self.workdir / PASSWORD_FILE
        descriptor = os.open(password_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            handle.write(self.server.password + "\n")

        command = [
            str(installation.initdb),
            "-A",
            self.server.auth_method,
            "-U",
            self.server.username,
            "-D",
            str(self.data_dir),
            f"--pwfile={password_file}",
            "-E",
            "UTF8",
        ]
        LOGGER.info("Initialising data directory %s", self.data_dir)
        try:
            result = await asyncio.to_thread(
                subprocess.run,  # noqa: S603 - binaries come from our installation
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise ClusterInitFailed(
                f"Unable to execute {installation.initdb}: {exc}",
                context={"binary": str(installation.initdb), "data_dir": str(self.data_dir)},
            ) from exc
        finally:
            password_file.unlink(missing_ok=True)

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise ClusterInitFailed(
                f"initdb failed with exit code {result.returncode}.",
                context={
                    "exit_code": result.returncode,
                    "stderr_tail": "\n".join(output.splitlines()[-TAIL_LINES:]),
                    "data_dir": str(self.data_dir),
                },
            )

    def _ensure_include(self) -> None:
        conf = self.data_dir / "postgresql.conf"
        existing = conf.read_text(encoding="utf-8") if conf.exists() else ""
        if INCLUDE_LINE in existing:
            return
        with conf.open("a", encoding="utf-8") as handle:
            if existing and not existing.endswith("\n"):
                handle.write("\n")
            handle.write(f"{INCLUDE_LINE}\n")

    def _write_config(self, port: int) -> None:
        parameters: dict[str, str] = {
            "port": str(port),
            "listen_addresses": self.server.host,
            "unix_socket_directories": "",
            "log_destination": "stderr",
            "logging_collector": "off",
        }
        parameters.update(self.server.configuration)
        lines = ["# Generated by pgembed on every start; edits are overwritten."]
        lines.extend(f"{key} = {_quote(value)}" for key, value in parameters.items())
        (self.data_dir / GENERATED_CONF).write_text("\n".join(lines) + "\n", encoding="utf-8")


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


__all__ = [
    "ClusterSupervisor",
    "Destroyed",
    "Failed",
    "Initialized",
    "Installed",
    "ReadinessProbe",
    "ServerProcess",
    "Started",
    "State",
    "Status",
    "Stopped",
    "Uninitialized",
    "postgres_probe",
    "tcp_probe",
]

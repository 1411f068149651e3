"""Listening port selection for PostgreSQL servers."""
from __future__ import annotations

import logging
import os
import socket

from .errors import PgEmbedError

LOGGER = logging.getLogger(__name__)


class PortSelectionError(PgEmbedError):
    """Raised when no listening port can be obtained."""


def probe_address(host: str) -> str:
    """Return the address to bind when probing ports for *host*."""
    if host in {"", "localhost", "*"}:
        return "127.0.0.1"
    return host


def is_port_free(host: str, port: int) -> bool:
    """Return whether *port* can be bound on *host*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((probe_address(host), port))
        except OSError:
            return False
    return True


def ephemeral_port(host: str) -> int:
    """Ask the operating system for an unused port on *host*."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((probe_address(host), 0))
        except OSError as exc:
            raise PortSelectionError(
                f"Unable to obtain an ephemeral port on {host}: {exc}",
                context={"host": host},
            ) from exc
        return int(sock.getsockname()[1])


def select_port(host: str, requested: int = 0) -> int:
    """Return *requested* when it is free, otherwise an ephemeral port.

    A *requested* value of ``0`` always yields an ephemeral port.
    """
    if requested < 0 or requested > 65535:
        raise PortSelectionError(f"Invalid port {requested}.", context={"port": requested})
    if requested and is_port_free(host, requested):
        return requested
    port = ephemeral_port(host)
    if requested:
        LOGGER.info("Port %d is busy on %s; using %d instead", requested, host, port)
    return port


__all__ = ["PortSelectionError", "ephemeral_port", "is_port_free", "select_port"]

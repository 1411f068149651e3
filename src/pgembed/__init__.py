"""pgembed package bootstrap.

Exposes the package version plus the asynchronous :class:`PostgreSQL` facade.
The blocking facade lives in :mod:`pgembed.blocking`.
"""
from __future__ import annotations

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0a0"

from .config import Settings, load_settings  # noqa: E402
from .engine import PostgreSQL  # noqa: E402
from .supervisor import Status  # noqa: E402

__all__ = [
    "PostgreSQL",
    "Settings",
    "Status",
    "__version__",
    "load_settings",
]

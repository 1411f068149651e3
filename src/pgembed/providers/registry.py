"""Client for the GitHub releases API that publishes PostgreSQL archives."""
from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from packaging.version import InvalidVersion, Version

from .. import __version__
from ..errors import DownloadFailed, PgEmbedError, RegistryUnavailable, VersionNotFound

LOGGER = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
PER_PAGE = 100
CHUNK_SIZE = 1024 * 64
RETRYABLE_STATUS = {408, 425, 429}

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Asset:
    """A downloadable file attached to a release."""

    name: str
    url: str
    size: int = 0


@dataclass(frozen=True, slots=True)
class Release:
    """A published release and its assets keyed by file name."""

    tag: str
    version: Version
    assets: Mapping[str, Asset] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Release | None:
        """Build a release from API JSON; return ``None`` for unparseable tags."""
        tag = str(payload.get("tag_name", ""))
        try:
            version = Version(tag[1:] if tag[:1] in {"v", "V"} else tag)
        except InvalidVersion:
            return None
        assets: dict[str, Asset] = {}
        for item in payload.get("assets") or []:
            if not isinstance(item, Mapping):
                continue
            name = item.get("name")
            url = item.get("browser_download_url")
            if isinstance(name, str) and isinstance(url, str):
                assets[name] = Asset(name=name, url=url, size=int(item.get("size") or 0))
        return cls(tag=tag, version=version, assets=assets)


class ReleaseRegistry:
    """List releases and download assets with bounded retries."""

    def __init__(
        self,
        releases_url: str,
        *,
        token: str | None = None,
        retries: int = 3,
        backoff: float = 0.5,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Configure the registry client; *transport* is used by tests."""
        self.releases_url = releases_url.rstrip("/")
        self._token = token
        self.retries = max(1, int(retries))
        self.backoff = max(0.0, float(backoff))
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    def __repr__(self) -> str:
        return f"ReleaseRegistry({self.releases_url!r})"

    @property
    def headers(self) -> dict[str, str]:
        """Return the request headers sent to the API."""
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": f"pgembed/{__version__}",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def client(self) -> httpx.AsyncClient:
        """Return a new HTTP client bound to this registry's settings."""
        return httpx.AsyncClient(
            headers=self.headers,
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 30.0)),
            follow_redirects=True,
            transport=self._transport,
        )

    async def list_releases(self) -> list[Release]:
        """Return every release, following pagination."""
        releases: list[Release] = []
        page = 1
        async with self.client() as client:
            while True:
                response = await self._get(
                    client,
                    self.releases_url,
                    params={"page": page, "per_page": PER_PAGE},
                    error=RegistryUnavailable,
                )
                if response.status_code == httpx.codes.NOT_FOUND:
                    raise RegistryUnavailable(
                        f"Release listing not found at {self.releases_url}.",
                        context={"url": self.releases_url},
                    )
                payload = _json(response, error=RegistryUnavailable)
                if not isinstance(payload, list):
                    raise RegistryUnavailable(
                        "Unexpected release listing payload.",
                        context={"url": self.releases_url, "page": page},
                    )
                for item in payload:
                    if isinstance(item, Mapping):
                        release = Release.from_payload(item)
                        if release is not None:
                            releases.append(release)
                if len(payload) < PER_PAGE:
                    break
                page += 1
        LOGGER.debug("Listed %d releases from %s", len(releases), self.releases_url)
        return releases

    async def list_versions(self) -> list[Version]:
        """Return the versions of every published release."""
        return [release.version for release in await self.list_releases()]

    async def get_release(self, version: Version) -> Release:
        """Return the release tagged *version*."""
        url = f"{self.releases_url}/tags/{version}"
        async with self.client() as client:
            response = await self._get(client, url, error=RegistryUnavailable)
        if response.status_code == httpx.codes.NOT_FOUND:
            raise VersionNotFound(
                f"PostgreSQL {version} is not published.",
                context={"version": str(version), "url": url},
            )
        payload = _json(response, error=RegistryUnavailable)
        release = Release.from_payload(payload) if isinstance(payload, Mapping) else None
        if release is None:
            raise RegistryUnavailable("Unexpected release payload.", context={"url": url})
        return release

    async def fetch_bytes(self, url: str) -> bytes:
        """Download *url* fully into memory."""
        async with self.client() as client:
            response = await self._get(client, url, error=DownloadFailed)
        if response.status_code == httpx.codes.NOT_FOUND:
            raise DownloadFailed(f"Asset not found: {url}", context={"url": url, "status": 404})
        return response.content

    async def download_to(self, url: str, destination: Path) -> str:
        """Stream *url* into *destination* and return its SHA-256 digest.

        The destination is truncated on every attempt and removed when all
        attempts fail.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        attempt = 0
        async with self.client() as client:
            while True:
                attempt += 1
                digest = hashlib.sha256()
                try:
                    async with client.stream("GET", url) as response:
                        response.raise_for_status()
                        with destination.open("wb") as handle:
                            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                                handle.write(chunk)
                                digest.update(chunk)
                    return digest.hexdigest()
                except httpx.HTTPError as exc:
                    destination.unlink(missing_ok=True)
                    await self._backoff_or_raise(exc, attempt, url, error=DownloadFailed)
                except OSError as exc:
                    destination.unlink(missing_ok=True)
                    raise DownloadFailed(
                        f"Unable to write {destination}: {exc}",
                        context={"url": url, "path": str(destination)},
                    ) from exc

    async def _get(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        error: type[PgEmbedError],
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await client.get(url, params=params)
                if response.status_code != httpx.codes.NOT_FOUND:
                    response.raise_for_status()
                return response
            except httpx.HTTPError as exc:
                await self._backoff_or_raise(exc, attempt, url, error=error)

    async def _backoff_or_raise(
        self,
        exc: httpx.HTTPError,
        attempt: int,
        url: str,
        *,
        error: type[PgEmbedError],
    ) -> None:
        if attempt >= self.retries or not _should_retry(exc):
            raise error(
                f"Request to {_display_url(url)} failed after {attempt} attempt(s): "
                f"{_describe(exc)}",
                context={"url": _display_url(url), "attempts": attempt},
            ) from exc
        delay = self.backoff * (2 ** (attempt - 1))
        LOGGER.warning(
            "Request to %s failed (%s); retrying in %.1fs (%d/%d)",
            _display_url(url),
            _describe(exc),
            delay,
            attempt + 1,
            self.retries,
        )
        if delay > 0:
            await self._sleep(delay)


def _should_retry(exc: httpx.HTTPError) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in RETRYABLE_STATUS
    return True


def _describe(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    return str(exc) or type(exc).__name__


def _display_url(url: str) -> str:
    # Signed asset URLs carry credentials in the query string.
    return url.split("?", 1)[0]


def _json(response: httpx.Response, *, error: type[PgEmbedError]) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise error(
            "Registry returned invalid JSON.", context={"url": str(response.request.url)}
        ) from exc


__all__ = ["Asset", "Release", "ReleaseRegistry"]

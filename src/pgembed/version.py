"""Version specifiers and resolution against the release registry."""
from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from .errors import InvalidVersionSpec, RegistryUnavailable, VersionNotFound

LOGGER = logging.getLogger(__name__)

LATEST_ALIASES = {"", "*", "latest"}
_NUMERIC = re.compile(r"^\d+(\.\d+){0,2}$")
_OPERATOR_SPLIT = re.compile(r"\s*,\s*|\s+(?=[<>=!~])")

ListVersions = Callable[[], Awaitable[list[Version]]]
CachedVersions = Callable[[], Iterable[Version]]


@dataclass(frozen=True, slots=True)
class VersionSpec:
    """A parsed version request.

    ``kind`` is ``"latest"``, ``"exact"`` or ``"range"``. Exact specs carry the
    pinned ``version``; ranges carry a ``specifier`` set.
    """

    text: str
    kind: str
    version: Version | None = None
    specifier: SpecifierSet | None = None

    @property
    def is_exact(self) -> bool:
        """Return whether the spec pins a single version."""
        return self.kind == "exact"

    def matches(self, candidate: Version) -> bool:
        """Return whether *candidate* satisfies the spec."""
        if self.kind == "exact":
            return candidate == self.version
        if self.kind == "latest":
            return not candidate.is_prerelease
        assert self.specifier is not None
        # Prereleases only match when the range itself names one.
        prereleases = bool(self.specifier.prereleases)
        return self.specifier.contains(candidate, prereleases=prereleases)

    def select(self, candidates: Iterable[Version]) -> Version | None:
        """Return the newest matching candidate, if any."""
        matching = [candidate for candidate in candidates if self.matches(candidate)]
        return max(matching) if matching else None

    def __str__(self) -> str:
        return self.text or "latest"


def parse_version(value: str) -> Version:
    """Parse a release tag such as ``16.4.0`` or ``v16.4.0``."""
    text = value.strip()
    if text[:1] in {"v", "V"}:
        text = text[1:]
    try:
        return Version(text)
    except InvalidVersion as exc:
        raise InvalidVersionSpec(
            f"Invalid version '{value}'.", context={"version": value}
        ) from exc


def parse_spec(text: str | VersionSpec | Version) -> VersionSpec:
    """Parse *text* into a :class:`VersionSpec`.

    Accepted forms: ``latest``/``*``/empty, exact ``X.Y.Z`` (optionally
    prefixed with ``=`` or ``v``), partial ``X``/``X.Y`` meaning the newest
    release in that series, semver ``^``/``~`` ranges and PEP 440 specifier
    sets such as ``>=15,<17``.
    """
    if isinstance(text, VersionSpec):
        return text
    if isinstance(text, Version):
        return VersionSpec(text=str(text), kind="exact", version=text)

    raw = text.strip()
    if raw.lower() in LATEST_ALIASES:
        return VersionSpec(text="latest", kind="latest")

    bare = raw
    if bare.startswith("=") and not bare.startswith("=="):
        bare = bare[1:].strip()
    if bare[:1] in {"v", "V"}:
        bare = bare[1:]

    if _NUMERIC.match(bare):
        parts = bare.split(".")
        if len(parts) == 3:
            return VersionSpec(text=raw, kind="exact", version=Version(bare))
        return VersionSpec(text=raw, kind="range", specifier=SpecifierSet(f"=={bare}.*"))

    if raw[0] in {"^", "~"} and not raw.startswith("~="):
        return VersionSpec(text=raw, kind="range", specifier=_semver_range(raw))

    clauses = [clause for clause in _OPERATOR_SPLIT.split(raw) if clause]
    try:
        specifier = SpecifierSet(",".join(clauses))
    except InvalidSpecifier as exc:
        raise InvalidVersionSpec(
            f"Invalid version specifier '{text}'.", context={"spec": text}
        ) from exc
    if not len(specifier):
        raise InvalidVersionSpec(f"Invalid version specifier '{text}'.", context={"spec": text})
    return VersionSpec(text=raw, kind="range", specifier=specifier)


def _semver_range(raw: str) -> SpecifierSet:
    operator, body = raw[0], raw[1:].strip()
    if body[:1] in {"v", "V"}:
        body = body[1:]
    if not _NUMERIC.match(body):
        raise InvalidVersionSpec(f"Invalid version specifier '{raw}'.", context={"spec": raw})
    parts = [int(part) for part in body.split(".")]
    lower = ".".join(str(part) for part in parts)

    if operator == "~":
        # ~X -> <X+1, ~X.Y[.Z] -> <X.Y+1
        if len(parts) == 1:
            upper = f"{parts[0] + 1}"
        else:
            upper = f"{parts[0]}.{parts[1] + 1}"
    else:
        # ^ bumps the left-most non-zero component
        padded = parts + [0] * (3 - len(parts))
        index = next(
            (position for position, part in enumerate(padded) if part != 0),
            len(parts) - 1,
        )
        index = min(index, len(parts) - 1)
        bumped = padded[: index + 1]
        bumped[index] += 1
        upper = ".".join(str(part) for part in bumped)
    return SpecifierSet(f">={lower},<{upper}")


class VersionResolver:
    """Turn a :class:`VersionSpec` into a concrete release version."""

    def __init__(
        self,
        list_versions: ListVersions,
        *,
        cached_versions: CachedVersions | None = None,
    ) -> None:
        """Use *list_versions* for registry lookups and *cached_versions* as fallback."""
        self._list_versions = list_versions
        self._cached_versions = cached_versions

    async def resolve(self, spec: str | VersionSpec) -> Version:
        """Return the newest release satisfying *spec*.

        Exact specs never touch the network. When the registry is unreachable
        the newest matching cached version is used instead.
        """
        parsed = parse_spec(spec)
        if parsed.is_exact:
            assert parsed.version is not None
            return parsed.version

        try:
            available = await self._list_versions()
        except RegistryUnavailable:
            fallback = parsed.select(self._cached_versions() if self._cached_versions else [])
            if fallback is None:
                raise
            LOGGER.warning(
                "Release registry unavailable; using cached PostgreSQL %s for '%s'.",
                fallback,
                parsed,
            )
            return fallback

        selected = parsed.select(available)
        if selected is None:
            raise VersionNotFound(
                f"No PostgreSQL release matches '{parsed}'.",
                context={"spec": str(parsed), "available": len(available)},
            )
        LOGGER.debug("Resolved '%s' to %s", parsed, selected)
        return selected


__all__ = ["VersionResolver", "VersionSpec", "parse_spec", "parse_version"]

"""Translate inbound request paths to files below the cache base."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Callable

import structlog

from ..common.settings import ResolverStrategy, ShardedFallback
from .errors import InvalidPath

LOGGER = structlog.get_logger("coxy.resolvers")


def straight_path(request_path: str, marker: str = "images/") -> str:
    """Strip everything before ``marker`` and collapse a doubled extension.

    ``/<signature>/600x600/smart/discogs-images/R-1-2.jpeg.jpg`` maps to
    ``images/R-1-2.jpeg``.
    """
    index = request_path.find(marker)
    if index < 0:
        raise InvalidPath(f"Failed to find {marker!r} in {request_path}")
    suffix = request_path[index:]
    segments = suffix.split(".")
    while segments and not segments[-1]:
        segments.pop()
    if len(segments) == 3:
        suffix = suffix[: suffix.rfind(".")]
    return suffix


def shard_pattern(marker: str) -> re.Pattern[str]:
    return re.compile(
        r".*/" + re.escape(marker.strip("/")) + r"/((.)-([^-]{0,2})([^-]{0,2})[^-]*)(.*)(\.[^.]*)"
    )


def sharded_path(request_path: str, pattern: re.Pattern[str]) -> str | None:
    """Spread ``<TYPE>-<ID>-...`` files over nested directories derived from the ID.

    Returns None when the path does not have the expected shape.
    """
    match = pattern.fullmatch(request_path)
    if match is None:
        return None
    item_id, kind, hash1, hash2, rest, extension = match.groups()
    filename = item_id + rest + ("" if "." in rest else extension)
    parts = ["images", kind, hash1, hash2, item_id, filename]
    return "/".join(part for part in parts if part)


class PathResolver:
    """Maps request paths to canonical cache file paths using one strategy."""

    def __init__(
        self,
        cache_base: Path,
        strategy: ResolverStrategy = ResolverStrategy.STRAIGHT,
        *,
        marker: str = "images/",
        shard_marker: str = "discogs-images",
        fallback: ShardedFallback = ShardedFallback.PASSTHROUGH,
    ) -> None:
        self.cache_base = Path(cache_base).resolve()
        self.strategy = ResolverStrategy(strategy)
        self._marker = marker
        self._pattern = shard_pattern(shard_marker)
        self._fallback = ShardedFallback(fallback)
        self._relative: Callable[[str], str] = {
            ResolverStrategy.STRAIGHT: self._straight,
            ResolverStrategy.SHARDED_BY_ID: self._sharded,
        }[self.strategy]

    def _straight(self, request_path: str) -> str:
        return straight_path(request_path, self._marker)

    def _sharded(self, request_path: str) -> str:
        hashed = sharded_path(request_path, self._pattern)
        if hashed is not None:
            return hashed
        if self._fallback is ShardedFallback.REJECT:
            raise InvalidPath(f"Path does not match sharding pattern: {request_path}")
        LOGGER.debug("shard_pattern_fallback", path=request_path)
        return request_path

    def relative_path(self, request_path: str) -> str:
        return self._relative(request_path)

    def resolve(self, request_path: str) -> Path:
        relative = self.relative_path(request_path).lstrip("/")
        # canonicalised; the caller still has to check it stayed under cache_base
        return (self.cache_base / relative).resolve(strict=False)

    def describe(self) -> dict[str, object]:
        return {
            "strategy": self.strategy.value,
            "cache_base": str(self.cache_base),
            "fallback": self._fallback.value,
        }

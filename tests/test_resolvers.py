from __future__ import annotations

from pathlib import Path

import pytest

from coxy.common.settings import ResolverStrategy, ShardedFallback
from coxy.image_proxy.errors import InvalidPath
from coxy.image_proxy.resolvers import PathResolver, shard_pattern, sharded_path, straight_path

SIGNED_PREFIX = "/Xr8b2p9Q/600x600/smart/filters:strip_icc()/discogs-images"


@pytest.mark.parametrize(
    "request_path, expected",
    [
        (f"{SIGNED_PREFIX}/R-1507297-1370212405-8548.jpeg.jpg", "images/R/15/07/R-1507297/R-1507297-1370212405-8548.jpeg"),
        (f"{SIGNED_PREFIX}/R-150-1370212405-8548.jpeg", "images/R/15/0/R-150/R-150-1370212405-8548.jpeg"),
        (f"{SIGNED_PREFIX}/A-1-2.png", "images/A/1/A-1/A-1-2.png"),
    ],
)
def test_sharded_path_nests_by_id(request_path: str, expected: str) -> None:
    assert sharded_path(request_path, shard_pattern("discogs-images")) == expected


def test_sharded_path_returns_none_without_marker() -> None:
    assert sharded_path("/images/R-1-2.jpeg", shard_pattern("discogs-images")) is None


def test_straight_path_strips_doubled_extension() -> None:
    assert straight_path(f"{SIGNED_PREFIX}/R-1-2.jpeg.jpg") == "images/R-1-2.jpeg"


def test_straight_path_keeps_single_extension() -> None:
    assert straight_path("/sig/images/R-1-2.jpeg") == "images/R-1-2.jpeg"


def test_straight_path_requires_marker() -> None:
    with pytest.raises(InvalidPath):
        straight_path("/sig/thumbs/R-1-2.jpeg")


def test_resolve_is_under_cache_base(cache_base: Path) -> None:
    resolver = PathResolver(cache_base, ResolverStrategy.SHARDED_BY_ID)
    resolved = resolver.resolve(f"{SIGNED_PREFIX}/R-1507297-1370212405-8548.jpeg.jpg")
    assert resolved == cache_base.resolve() / "images/R/15/07/R-1507297/R-1507297-1370212405-8548.jpeg"


@pytest.mark.parametrize("strategy", list(ResolverStrategy))
def test_resolve_is_deterministic(cache_base: Path, strategy: ResolverStrategy) -> None:
    resolver = PathResolver(cache_base, strategy)
    request_path = f"{SIGNED_PREFIX}/R-42-1.jpeg.jpg"
    assert resolver.resolve(request_path) == resolver.resolve(request_path)


def test_sharded_fallback_passthrough(cache_base: Path) -> None:
    resolver = PathResolver(cache_base, ResolverStrategy.SHARDED_BY_ID)
    assert resolver.relative_path("/other/thing.png") == "/other/thing.png"
    assert resolver.resolve("/other/thing.png") == cache_base.resolve() / "other/thing.png"


def test_sharded_fallback_reject(cache_base: Path) -> None:
    resolver = PathResolver(cache_base, ResolverStrategy.SHARDED_BY_ID, fallback=ShardedFallback.REJECT)
    with pytest.raises(InvalidPath):
        resolver.resolve("/other/thing.png")


def test_describe_reports_strategy(cache_base: Path) -> None:
    resolver = PathResolver(cache_base, ResolverStrategy.SHARDED_BY_ID, fallback=ShardedFallback.REJECT)
    assert resolver.describe() == {
        "strategy": "sharded-by-id",
        "cache_base": str(cache_base.resolve()),
        "fallback": "reject",
    }

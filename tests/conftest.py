from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

from coxy.common.ratelimit import OriginRateLimiter
from coxy.common.settings import ProxySettings, ResolverStrategy, ShardedFallback, load_settings
from coxy.image_proxy.origin import OriginFetcher
from coxy.image_proxy.pipeline import ProxyResponse, RequestPipeline
from coxy.image_proxy.resolvers import PathResolver
from coxy.image_proxy.storage import CacheStore

TARGET_BASE = "https://origin.test"
USER_AGENT = "coxy-tests/1.0"


class FakeClock:
    def __init__(self, start: Optional[float] = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeOrigin:
    """Answers origin requests from a per-path table; unknown paths get 404."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, Callable[[httpx.Request], object]] = {}
        self.started = asyncio.Event()
        self.release: Optional[asyncio.Event] = None

    def serve(self, path: str, content: bytes = b"", status_code: int = 200, headers=None) -> None:
        self.routes[path] = lambda request: httpx.Response(status_code, content=content, headers=headers)

    def fail(self, path: str, exc_type: type[httpx.TransportError]) -> None:
        def raise_error(request: httpx.Request):
            raise exc_type("origin failure", request=request)

        self.routes[path] = raise_error

    def hold(self) -> asyncio.Event:
        self.release = asyncio.Event()
        return self.release

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404)
        return handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_base(tmp_path: Path) -> Path:
    base = tmp_path / "cache"
    base.mkdir()
    return base


@pytest.fixture
def make_settings(cache_base: Path) -> Callable[..., ProxySettings]:
    def _make(**overrides) -> ProxySettings:
        values = {"cache_base": cache_base, "target_base": TARGET_BASE, "user_agent": USER_AGENT}
        values.update(overrides)
        return load_settings(**values)

    return _make


@pytest.fixture
def make_pipeline(cache_base: Path, origin: FakeOrigin, clock: FakeClock):
    def _make(
        strategy: ResolverStrategy = ResolverStrategy.STRAIGHT,
        *,
        fallback: ShardedFallback = ShardedFallback.PASSTHROUGH,
        ttl_seconds: int = 3600,
        authenticator: Optional[httpx.Auth] = None,
    ) -> RequestPipeline:
        resolver = PathResolver(cache_base, strategy, fallback=fallback)
        store = CacheStore(resolver.cache_base, ttl_seconds=ttl_seconds)
        fetcher = OriginFetcher(TARGET_BASE, USER_AGENT, origin.client(), authenticator=authenticator)
        return RequestPipeline(resolver, store, OriginRateLimiter(clock=clock), fetcher, clock=clock)

    return _make


async def read_body(response: ProxyResponse) -> bytes:
    if response.file is None:
        return response.body
    return b"".join([chunk async for chunk in response.file.iter_chunks()])

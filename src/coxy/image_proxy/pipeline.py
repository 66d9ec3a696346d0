"""Per-request orchestration: validate, resolve, serve from cache or fetch from origin."""

from __future__ import annotations

import html
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from http import HTTPStatus
from pathlib import Path
from typing import Callable, Optional

import structlog
from fastapi import status
from opentelemetry import trace

from ..common.media_types import media_type_for
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from ..common.ratelimit import OriginRateLimiter
from .errors import (
    CacheMiss,
    FetchConnectionError,
    FetchTimeout,
    ForbiddenPath,
    InvalidPath,
    InvalidRequest,
    ProxyError,
    RateLimited,
    StorageError,
)
from .origin import OriginFetcher
from .resolvers import PathResolver
from .singleflight import SingleFlight
from .storage import CachedFile, CacheStore

LOGGER = structlog.get_logger("coxy.pipeline")
TRACER = trace.get_tracer("coxy.pipeline")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("coxy_requests_total", "Total proxied image requests"))
HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("coxy_cache_hits_total", "Requests served from a fresh cache file"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("coxy_cache_misses_total", "Requests with no fresh cache file"))
ORIGIN_FETCH_COUNTER = GLOBAL_REGISTRY.register(Counter("coxy_origin_fetches_total", "Requests sent to the origin"))
ORIGIN_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("coxy_origin_failures_total", "Origin responses other than 200")
)
COALESCED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("coxy_coalesced_requests_total", "Requests that shared another request's origin fetch")
)
RATE_LIMITED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("coxy_rate_limited_total", "Requests short-circuited while the origin limit is exhausted")
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("coxy_bytes_served_total", "Bytes streamed to clients"))
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(Counter("coxy_bytes_written_total", "Bytes written to the cache"))
IN_FLIGHT_GAUGE = GLOBAL_REGISTRY.register(Gauge("coxy_origin_fetches_in_flight", "Origin fetches currently running"))

ERROR_LOG_LEVELS: dict[type[ProxyError], str] = {
    InvalidRequest: "debug",
    InvalidPath: "info",
    ForbiddenPath: "warning",
    RateLimited: "info",
    CacheMiss: "warning",
    FetchTimeout: "error",
    FetchConnectionError: "error",
    StorageError: "error",
}


@dataclass
class ProxyResponse:
    status_code: int
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    file: Optional[CachedFile] = None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


@dataclass(frozen=True)
class FetchOutcome:
    populated: bool
    status_code: int
    reason: str
    passthrough_headers: tuple[tuple[str, str], ...] = ()
    bytes_written: int = 0


def status_page(status_code: int, reason: str) -> bytes:
    title = html.escape(f"{status_code} {reason}".strip())
    return f"<html><head><title>{title}</title></head><body><h1>{title}</h1></body></html>".encode("utf-8")


def _reason(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return ""


class RequestPipeline:
    def __init__(
        self,
        resolver: PathResolver,
        store: CacheStore,
        limiter: OriginRateLimiter,
        fetcher: OriginFetcher,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.limiter = limiter
        self.fetcher = fetcher
        self._clock = clock
        self._flights: SingleFlight[FetchOutcome] = SingleFlight()

    @property
    def in_flight(self) -> int:
        return self._flights.in_flight

    @staticmethod
    def validate(request_path: Optional[str]) -> str:
        if not request_path or ".." in request_path or "\x00" in request_path:
            raise InvalidRequest()
        return request_path

    async def handle(self, request_path: Optional[str], client_address: Optional[str] = None) -> ProxyResponse:
        REQUEST_COUNTER.inc()
        with TRACER.start_as_current_span("coxy.pipeline.handle") as span:
            span.set_attribute("coxy.request_path", request_path or "")
            try:
                response = await self._handle(request_path)
            except ProxyError as exc:
                response = self._error_response(exc, request_path, client_address)
            span.set_attribute("http.status_code", response.status_code)
            return response

    async def _handle(self, request_path: Optional[str]) -> ProxyResponse:
        request_path = self.validate(request_path)
        path = self.resolver.resolve(request_path)
        cache_base = self.resolver.cache_base
        # strict descendant; the cache base itself is a directory and never a cache file
        if path == cache_base or not path.is_relative_to(cache_base):
            raise ForbiddenPath(f"{path} is not below {cache_base}")

        if self.store.is_fresh_hit(path, self._clock()):
            HIT_COUNTER.inc()
            LOGGER.debug("cache_hit", path=request_path, file=str(path))
            return self._serve(path)

        MISS_COUNTER.inc()
        LOGGER.info("cache_miss", path=request_path, file=str(path))
        outcome, shared = await self._flights.do(str(path), lambda: self._refresh(request_path, path))
        if shared:
            COALESCED_COUNTER.inc()
            LOGGER.debug("origin_fetch_shared", path=request_path, file=str(path))
        if outcome.populated:
            return self._serve(path, outcome.passthrough_headers)
        return ProxyResponse(
            status_code=outcome.status_code,
            headers=[("Content-Type", "text/html; charset=utf-8"), *outcome.passthrough_headers],
            body=status_page(outcome.status_code, outcome.reason),
        )

    async def _refresh(self, request_path: str, path: Path) -> FetchOutcome:
        """Rate gate, fetch and populate; runs once per cache file at a time."""
        now = self._clock()
        if self.limiter.is_limited(now):
            raise RateLimited(self.limiter.seconds_until_reset(now))

        ORIGIN_FETCH_COUNTER.inc()
        with TRACER.start_as_current_span("coxy.pipeline.origin_fetch") as span:
            async with self.fetcher.fetch(request_path) as origin:
                span.set_attribute("http.status_code", origin.status_code)
                passthrough = tuple(origin.passthrough_headers)
                self.limiter.observe(self._clock(), origin.limit, origin.remaining, origin.reset)
                if origin.status_code != status.HTTP_200_OK:
                    ORIGIN_FAILURE_COUNTER.inc()
                    LOGGER.warning(
                        "origin_fetch_failed",
                        path=request_path,
                        target=self.fetcher.target_base,
                        status=origin.status_code,
                        reason=origin.reason,
                        limit=origin.limit,
                        reset=origin.reset,
                        remaining=origin.remaining,
                    )
                    return FetchOutcome(False, origin.status_code, origin.reason, passthrough)

                LOGGER.info("origin_fetch_copying", path=request_path, file=str(path))
                try:
                    written = await self.store.populate(path, origin.iter_bytes())
                except ProxyError as exc:
                    exc.headers = list(passthrough)
                    raise
                BYTES_WRITTEN_COUNTER.inc(written)
                span.set_attribute("coxy.bytes_written", written)
                return FetchOutcome(True, origin.status_code, origin.reason, passthrough, written)

    def _serve(self, path: Path, extra_headers: tuple[tuple[str, str], ...] = ()) -> ProxyResponse:
        cached = self.store.read(path)
        ttl = self.store.ttl_seconds
        headers = [
            ("Last-Modified", formatdate(cached.last_modified, usegmt=True)),
            ("Expires", formatdate(self._clock() + ttl, usegmt=True)),
            ("Cache-Control", f"max-age={ttl}"),
            ("Content-Length", str(cached.size)),
            ("Content-Type", media_type_for(path)),
            *extra_headers,
        ]
        BYTES_SERVED_COUNTER.inc(cached.size)
        LOGGER.debug("sending_file", file=str(path), size=cached.size, last_modified=cached.last_modified)
        return ProxyResponse(status_code=status.HTTP_200_OK, headers=headers, file=cached)

    def _error_response(
        self, exc: ProxyError, request_path: Optional[str], client_address: Optional[str]
    ) -> ProxyResponse:
        level = ERROR_LOG_LEVELS.get(type(exc), "error")
        log_kwargs = {
            "error": type(exc).__name__,
            "detail": exc.detail,
            "status": exc.status_code,
            "path": request_path,
            "client": client_address,
        }
        if isinstance(exc, StorageError):
            log_kwargs["exc_info"] = exc
        getattr(LOGGER, level)("request_rejected", **log_kwargs)
        headers = list(exc.headers)
        if isinstance(exc, RateLimited):
            RATE_LIMITED_COUNTER.inc()
            retry_after = str(exc.retry_after)
            headers.extend(
                [
                    ("X-RateLimit-Reset", retry_after),
                    ("X-RateLimit-Remaining", "0"),
                    ("Retry-After", retry_after),
                ]
            )
        headers.append(("Content-Type", "text/html; charset=utf-8"))
        return ProxyResponse(
            status_code=exc.status_code,
            headers=headers,
            body=status_page(exc.status_code, _reason(exc.status_code)),
        )

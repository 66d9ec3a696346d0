"""Caching reverse proxy for image assets hosted by a rate-limited origin."""

from __future__ import annotations

import hmac
import time
from contextlib import asynccontextmanager
from ipaddress import ip_address
from typing import Optional
from uuid import uuid4

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from ..common.metrics import GLOBAL_REGISTRY, Histogram
from ..common.observability import (
    bind_request_context,
    clear_request_context,
    configure_observability,
    instrument_fastapi_app,
)
from ..common.ratelimit import OriginRateLimiter
from ..common.settings import ProxySettings, load_settings
from .auth import CredentialStore, build_authenticator
from .origin import OriginFetcher, build_origin_client
from .pipeline import IN_FLIGHT_GAUGE, ProxyResponse, RequestPipeline
from .resolvers import PathResolver
from .storage import CachedFile, CacheStore

LOGGER = structlog.get_logger("coxy.image_proxy")

LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "coxy_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 3.0, 6.0],
        description="Image proxy request latency",
    )
)


class ProxyState:
    def __init__(self, settings: ProxySettings, pipeline: RequestPipeline):
        self.settings = settings
        self.pipeline = pipeline
        self.logger = LOGGER.bind(resolver=pipeline.resolver.strategy.value)


def build_pipeline(
    settings: ProxySettings,
    http_client: httpx.AsyncClient,
    *,
    credential_store: Optional[CredentialStore] = None,
    limiter: Optional[OriginRateLimiter] = None,
) -> RequestPipeline:
    cache_base = settings.cache_base.expanduser()
    cache_base.mkdir(parents=True, exist_ok=True)
    resolver = PathResolver(
        cache_base,
        settings.resolver,
        marker=settings.path_marker,
        shard_marker=settings.shard_marker,
        fallback=settings.sharded_fallback,
    )
    store = CacheStore(resolver.cache_base, ttl_seconds=settings.cache_ttl_seconds)
    fetcher = OriginFetcher(
        settings.target_base_url,
        settings.user_agent,
        http_client,
        authenticator=build_authenticator(settings, credential_store),
        rate_limit_prefix=settings.rate_limit_header_prefix,
    )
    return RequestPipeline(resolver, store, limiter or OriginRateLimiter(), fetcher)


def get_state(request: Request) -> ProxyState:
    state = getattr(request.app.state, "proxy_state", None)
    if state is None:
        raise RuntimeError("Image proxy state not initialised")
    return state


class CachedFileResponse(StreamingResponse):
    """Streams a cache file and releases its handle however the send ends."""

    def __init__(self, cached: CachedFile, status_code: int = status.HTTP_200_OK) -> None:
        super().__init__(cached.iter_chunks(), status_code=status_code)
        self.cached = cached

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.cached.close()


def require_metrics_access(request: Request, settings: ProxySettings) -> None:
    """Scrapes need the configured bearer token; without one only loopback clients get through."""
    if settings.metrics_token is not None:
        expected = f"Bearer {settings.metrics_token.get_secret_value()}"
        if not hmac.compare_digest(request.headers.get("authorization", ""), expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client_host = request.client.host if request.client else ""
    try:
        loopback = ip_address(client_host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics restricted to loopback clients")


def to_response(result: ProxyResponse) -> Response:
    if result.file is not None:
        response: Response = CachedFileResponse(result.file, status_code=result.status_code)
    else:
        response = Response(content=result.body, status_code=result.status_code)
    for name, value in result.headers:
        response.headers.append(name, value)
    return response


def create_app(
    settings: Optional[ProxySettings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    credential_store: Optional[CredentialStore] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_observability("coxy.image_proxy", settings)

    owns_client = http_client is None
    client = http_client or build_origin_client(settings.connect_timeout_seconds, settings.read_timeout_seconds)
    pipeline = build_pipeline(settings, client, credential_store=credential_store)
    state = ProxyState(settings, pipeline)
    state.logger.info(
        "image_proxy_configured",
        cache_base=str(pipeline.resolver.cache_base),
        target_base=pipeline.fetcher.target_base,
        ttl_seconds=settings.cache_ttl_seconds,
        auth_mode=settings.auth_mode.value,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.proxy_state = state
        try:
            yield
        finally:
            if owns_client:
                await client.aclose()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.proxy_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        bind_request_context(
            request_id=request.headers.get("x-request-id") or uuid4().hex,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                duration_ms=round(duration * 1000, 2),
            )
            raise
        finally:
            clear_request_context()

        duration = time.perf_counter() - start
        LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        store_status = state.pipeline.store.status()
        health = {
            "status": "healthy",
            "checks": {"backend": store_status["backend"], "writable": store_status["writable"]},
        }
        if not store_status["writable"]:
            health["status"] = "unhealthy"
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/status")
    async def status_report(state: ProxyState = Depends(get_state)) -> JSONResponse:
        pipeline = state.pipeline
        return JSONResponse(
            {
                "resolver": pipeline.resolver.describe(),
                "storage": pipeline.store.status(),
                "target_base": pipeline.fetcher.target_base,
                "rate_limit": pipeline.limiter.snapshot(),
                "in_flight": pipeline.in_flight,
            }
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: ProxyState = Depends(get_state)) -> PlainTextResponse:
        require_metrics_access(request, state.settings)
        IN_FLIGHT_GAUGE.set(float(state.pipeline.in_flight))
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/{request_path:path}")
    async def proxy(request_path: str, request: Request, state: ProxyState = Depends(get_state)) -> Response:
        client_host = request.client.host if request.client else None
        result = await state.pipeline.handle("/" + request_path if request_path else "", client_host)
        return to_response(result)

    return app

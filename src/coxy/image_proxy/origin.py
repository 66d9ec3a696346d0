"""Outbound requests to the rate-limited origin."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import httpx
import structlog

from .errors import FetchConnectionError, FetchTimeout

LOGGER = structlog.get_logger("coxy.origin")

LIMIT_HEADER = "X-RateLimit-Limit"
REMAINING_HEADER = "X-RateLimit-Remaining"
RESET_HEADER = "X-RateLimit-Reset"


def header_int(headers: httpx.Headers, name: str, default: int = -1) -> int:
    value = headers.get(name)
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def rate_limit_headers(headers: httpx.Headers, prefix: str) -> list[tuple[str, str]]:
    """Headers starting with ``prefix``, spelled as the origin sent them."""
    prefix = prefix.lower()
    collected = []
    for raw_name, raw_value in headers.raw:
        name = raw_name.decode(headers.encoding)
        if name.lower().startswith(prefix):
            collected.append((name, raw_value.decode(headers.encoding)))
    return collected


@dataclass
class OriginResponse:
    status_code: int
    reason: str
    headers: httpx.Headers
    limit: int
    remaining: int
    reset: int
    passthrough_headers: list[tuple[str, str]] = field(default_factory=list)
    _response: Optional[httpx.Response] = field(default=None, repr=False)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        if self._response is None:
            return
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as exc:
            raise FetchTimeout(f"Timed out reading origin body: {exc}") from exc
        except httpx.TransportError as exc:
            raise FetchConnectionError(f"Origin connection failed mid-body: {exc}") from exc


def build_origin_client(connect_timeout: float = 3.0, read_timeout: float = 3.0, **kwargs) -> httpx.AsyncClient:
    timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
    limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)
    return httpx.AsyncClient(timeout=timeout, limits=limits, follow_redirects=True, **kwargs)


class OriginFetcher:
    def __init__(
        self,
        target_base: str,
        user_agent: str,
        client: httpx.AsyncClient,
        *,
        authenticator: Optional[httpx.Auth] = None,
        rate_limit_prefix: str = "x-ratelimit-",
    ) -> None:
        self.target_base = target_base.rstrip("/")
        self._user_agent = user_agent
        self._client = client
        self._authenticator = authenticator
        self._rate_limit_prefix = rate_limit_prefix

    def origin_url(self, request_path: str) -> str:
        if not request_path.startswith("/"):
            request_path = "/" + request_path
        return self.target_base + request_path

    @asynccontextmanager
    async def fetch(self, request_path: str) -> AsyncIterator[OriginResponse]:
        """GET the original request path from the origin; the body is streamed."""
        url = self.origin_url(request_path)
        request = self._client.build_request("GET", url, headers={"User-Agent": self._user_agent})
        try:
            if self._authenticator is not None:
                response = await self._client.send(request, stream=True, auth=self._authenticator)
            else:
                response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            LOGGER.error("origin_timeout", url=url, error=str(exc))
            raise FetchTimeout(f"Timed out fetching {url}") from exc
        except httpx.TransportError as exc:
            LOGGER.error("origin_unreachable", url=url, error=str(exc))
            raise FetchConnectionError(f"Could not fetch {url}: {exc}") from exc

        try:
            headers = response.headers
            yield OriginResponse(
                status_code=response.status_code,
                reason=response.reason_phrase,
                headers=headers,
                limit=header_int(headers, LIMIT_HEADER),
                remaining=header_int(headers, REMAINING_HEADER),
                reset=header_int(headers, RESET_HEADER),
                passthrough_headers=rate_limit_headers(headers, self._rate_limit_prefix),
                _response=response,
            )
        finally:
            await response.aclose()

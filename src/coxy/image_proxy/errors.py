"""Failure taxonomy of the request pipeline."""

from __future__ import annotations

from fastapi import status


class ProxyError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail = "Internal proxy error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail
        self.headers: list[tuple[str, str]] = []


class InvalidRequest(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "Invalid request path"


class InvalidPath(ProxyError):
    """The resolver strategy could not map the request path to a cache file."""

    status_code = status.HTTP_404_NOT_FOUND
    detail = "Unrecognised resource path"


class ForbiddenPath(ProxyError):
    status_code = status.HTTP_403_FORBIDDEN
    detail = "Resolved path outside cache base"


class RateLimited(ProxyError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = "Origin rate limit exhausted"

    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Origin rate limit exhausted, retry in {retry_after}s")
        self.retry_after = retry_after


class FetchTimeout(ProxyError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    detail = "Timed out talking to origin"


class FetchConnectionError(ProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    detail = "Could not reach origin"


class StorageError(ProxyError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail = "Failed to write cache file"


class CacheMiss(ProxyError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Cache miss"

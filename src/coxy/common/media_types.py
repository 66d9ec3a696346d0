"""Static extension to media type table for cached assets."""

from __future__ import annotations

from pathlib import PurePath

DEFAULT_MEDIA_TYPE = "application/octet-stream"

MEDIA_TYPES: dict[str, str] = {
    "avif": "image/avif",
    "bmp": "image/bmp",
    "gif": "image/gif",
    "ico": "image/x-icon",
    "jpe": "image/jpeg",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "svg": "image/svg+xml",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "webp": "image/webp",
    "css": "text/css",
    "htm": "text/html",
    "html": "text/html",
    "js": "application/javascript",
    "json": "application/json",
    "pdf": "application/pdf",
    "txt": "text/plain",
    "xml": "application/xml",
}


def media_type_for(path: PurePath | str) -> str:
    name = PurePath(path).name
    _, dot, extension = name.rpartition(".")
    if not dot or not extension:
        return DEFAULT_MEDIA_TYPE
    return MEDIA_TYPES.get(extension.lower(), DEFAULT_MEDIA_TYPE)

"""On-disk cache store with atomic populate."""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

import structlog

from ..common.settings import ONE_YEAR_SECONDS
from .errors import CacheMiss, StorageError

LOGGER = structlog.get_logger("coxy.storage")

CHUNK_SIZE = 1024 * 1024
TEMP_PREFIX = ".coxy-"
TEMP_SUFFIX = ".part"


class CachedFile:
    """An open cache file; size and mtime are taken from the open descriptor."""

    def __init__(self, path: Path, handle: BinaryIO) -> None:
        self.path = path
        self._handle: Optional[BinaryIO] = handle
        stat_result = os.fstat(handle.fileno())
        self.size = stat_result.st_size
        self.last_modified = stat_result.st_mtime

    async def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        handle = self._handle
        if handle is None:
            return
        loop = asyncio.get_running_loop()
        try:
            while True:
                data = await loop.run_in_executor(None, handle.read, chunk_size)
                if not data:
                    break
                yield data
        finally:
            self.close()

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()

    @property
    def closed(self) -> bool:
        return self._handle is None


class CacheStore:
    def __init__(self, cache_base: Path, ttl_seconds: int = ONE_YEAR_SECONDS) -> None:
        self.cache_base = Path(cache_base)
        self.ttl_seconds = ttl_seconds

    def is_fresh_hit(self, path: Path, now: Optional[float] = None) -> bool:
        try:
            stat_result = path.stat()
        except FileNotFoundError:
            return False
        except OSError as exc:
            LOGGER.warning("cache_stat_failed", path=str(path), error=str(exc))
            return False
        if not path.is_file():
            return False
        current = time.time() if now is None else now
        return current - stat_result.st_mtime <= self.ttl_seconds

    async def populate(self, path: Path, chunks: AsyncIterator[bytes]) -> int:
        """Write ``chunks`` to a temporary sibling and rename it over ``path``."""
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            fd, temp_name = await asyncio.to_thread(
                tempfile.mkstemp, prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=path.parent
            )
        except OSError as exc:
            raise StorageError(f"Cannot prepare {path.parent}: {exc}") from exc

        temp_path = Path(temp_name)
        written = 0
        try:
            with os.fdopen(fd, "wb") as handle:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    await asyncio.to_thread(handle.write, chunk)
                    written += len(chunk)
                await asyncio.to_thread(handle.flush)
                await asyncio.to_thread(os.fsync, handle.fileno())
            # mkstemp creates 0600 files; cached assets are public
            os.chmod(temp_path, 0o644)
            await asyncio.to_thread(os.replace, temp_path, path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise StorageError(f"Cannot write {path}: {exc}") from exc
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        LOGGER.info("cache_populated", path=str(path), bytes=written)
        return written

    def read(self, path: Path) -> CachedFile:
        try:
            handle = path.open("rb")
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise CacheMiss(f"No cache file at {path}") from exc
        try:
            return CachedFile(path, handle)
        except OSError:
            handle.close()
            raise

    def status(self) -> dict[str, object]:
        base = self.cache_base
        return {
            "backend": "local",
            "cache_base": str(base),
            "ttl_seconds": self.ttl_seconds,
            "writable": base.is_dir() and os.access(base, os.W_OK),
        }

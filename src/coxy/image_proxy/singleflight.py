"""Coalesce concurrent work for the same key into one in-flight call."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """At most one running call per key; concurrent callers share its result.

    A caller arriving while a call for its key is running waits for that call
    and receives the same result or exception. The entry is dropped as soon as
    the call finishes, so the next caller starts fresh work. If the running
    call is cancelled, one of the waiters takes over.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, asyncio.Future[T]] = {}
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> int:
        return len(self._calls)

    async def do(self, key: str, func: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """Run ``func`` for ``key`` unless a call is already running.

        Returns the result and whether it was shared from another caller.
        """
        while True:
            async with self._lock:
                existing = self._calls.get(key)
                if existing is None or existing.cancelled():
                    future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
                    self._calls[key] = future
                    break
            try:
                return await asyncio.shield(existing), True
            except asyncio.CancelledError:
                if existing.cancelled():
                    continue
                raise

        try:
            result = await func()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as exc:
            future.set_exception(exc)
            # mark retrieved so an unshared failure is not reported as unhandled
            future.exception()
            raise
        else:
            future.set_result(result)
            return result, False
        finally:
            async with self._lock:
                if self._calls.get(key) is future:
                    del self._calls[key]

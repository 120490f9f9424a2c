"""Single-initialisation helper for lazily fetched async values."""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class _AttemptAbandoned(Exception):
    """The caller running the factory was cancelled before it finished."""


class AsyncOnce(Generic[T]):
    """Runs ``factory`` at most once per success and shares the result.

    The in-flight attempt is held in a `concurrent.futures.Future`, so callers
    running on other threads' event loops wait on it through
    `asyncio.wrap_future` rather than awaiting a future bound to the first
    caller's loop. A failed attempt is not cached: the next caller starts a
    fresh attempt.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._future: concurrent.futures.Future[T] | None = None

    @property
    def resolved(self) -> bool:
        future = self._future
        return future is not None and future.done() and future.exception() is None

    async def get(self) -> T:
        while True:
            with self._lock:
                shared = self._future
                owner = shared is None
                if shared is None:
                    shared = self._future = concurrent.futures.Future()
                    shared.set_running_or_notify_cancel()
            if owner:
                return await self._run(shared)
            try:
                return await asyncio.shield(asyncio.wrap_future(shared))
            except _AttemptAbandoned:
                continue

    async def _run(self, shared: concurrent.futures.Future[T]) -> T:
        try:
            value = await self._factory()
        except Exception as exc:
            self._release(shared)
            shared.set_exception(exc)
            raise
        except BaseException:
            # Waiters start their own attempt instead of inheriting our cancellation.
            self._release(shared)
            shared.set_exception(_AttemptAbandoned())
            raise
        shared.set_result(value)
        return value

    def _release(self, shared: concurrent.futures.Future[T]) -> None:
        with self._lock:
            if self._future is shared:
                self._future = None


__all__ = ["AsyncOnce"]

"""Coalesce concurrent identical operations into one in-flight future."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Map of key to pending operation, cleared once the operation settles.

    Callers that ask for a key while an operation for it is running await the
    same future instead of starting their own. A caller being cancelled does
    not cancel the shared operation.
    """

    def __init__(self, name: str = "singleflight"):
        self._name = name
        self._pending: dict[Hashable, asyncio.Future[T]] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def in_flight(self, key: Hashable) -> asyncio.Future[T] | None:
        return self._pending.get(key)

    def forget(self, key: Hashable) -> None:
        """Drop the reference to a pending operation without cancelling it."""

        if self._pending.pop(key, None) is not None:
            logger.debug("%s: discarded in-flight operation for %s", self._name, key)

    def start(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Return the pending future for ``key``, launching ``factory`` if idle."""

        future = self._pending.get(key)
        if future is not None:
            return future
        future = asyncio.ensure_future(factory())
        self._pending[key] = future

        def _clear(done: asyncio.Future[T]) -> None:
            if self._pending.get(key) is done:
                self._pending.pop(key, None)
            if not done.cancelled() and done.exception() is not None:
                logger.debug(
                    "%s: operation for %s failed: %s", self._name, key, done.exception()
                )

        future.add_done_callback(_clear)
        return future

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        return await asyncio.shield(self.start(key, factory))

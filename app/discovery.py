"""Shared, filter-keyed cache of paginated discovery results."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .models import DEFAULT_FILTER_KEY, DiscoverFilters
from .singleflight import SingleFlight

logger = logging.getLogger(__name__)

PageFetcher = Callable[[DiscoverFilters, int], Awaitable[list[dict[str, Any]]]]


@dataclass(slots=True)
class DiscoverPage:
    """One page of raw discovery results."""

    results: list[dict[str, Any]]
    exhausted: bool = False


@dataclass(slots=True)
class CacheEntry:
    filters: DiscoverFilters
    pages: dict[int, list[dict[str, Any]]] = field(default_factory=dict)
    last_fetched_page: int = 0
    exhausted: bool = False
    last_refreshed: float | None = None


class DiscoveryCache:
    """Amortise upstream discovery calls across every room.

    Entries are keyed by :meth:`DiscoverFilters.cache_key`. The default key
    prefetches more pages than filtered keys and is kept warm by a background
    loop. Refreshes and individual page fetches are single-flight so
    concurrent callers never issue duplicate upstream requests.
    """

    def __init__(
        self,
        fetch_page: PageFetcher,
        *,
        ttl_seconds: float = 86_400,
        default_pages: int = 10,
        filtered_pages: int = 2,
        refresh_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch_page = fetch_page
        self._ttl = ttl_seconds
        self._default_pages = default_pages
        self._filtered_pages = filtered_pages
        self._refresh_timeout = refresh_timeout
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._refreshes: SingleFlight[None] = SingleFlight("discover-refresh")
        self._page_fetches: SingleFlight[list[dict[str, Any]]] = SingleFlight(
            "discover-page"
        )
        self._warm_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Launch the background warm loop for the default key."""

        if self._warm_task is None:
            self._warm_task = asyncio.create_task(self._warm_loop())

    async def stop(self) -> None:
        if self._warm_task is None:
            return
        self._warm_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._warm_task
        self._warm_task = None

    def prefetch_budget(self, key: str) -> int:
        if key == DEFAULT_FILTER_KEY:
            return self._default_pages
        return self._filtered_pages

    def entry(self, filters: DiscoverFilters) -> CacheEntry | None:
        return self._entries.get(filters.cache_key())

    def is_stale(self, entry: CacheEntry) -> bool:
        if entry.last_refreshed is None:
            return True
        return self._clock() - entry.last_refreshed >= self._ttl

    async def warm(
        self,
        filters: DiscoverFilters,
        *,
        pages: int | None = None,
        reset: bool = False,
    ) -> None:
        """Prefetch the first pages for ``filters``, joining any running warm."""

        await self._join_refresh(filters.cache_key(), filters, pages, reset)

    async def get_page(self, filters: DiscoverFilters, page: int) -> DiscoverPage:
        """Return ``page`` for ``filters``, fetching only what is missing."""

        key = filters.cache_key()
        entry = self._entries.get(key)
        if entry is None or not entry.pages or self.is_stale(entry):
            await self._join_refresh(key, filters, None, True)
        elif key in self._refreshes:
            await self._join_refresh(key, filters, None, False)

        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries.setdefault(key, CacheEntry(filters=filters))

        if page not in entry.pages and not entry.exhausted:
            for missing in range(entry.last_fetched_page + 1, page):
                if entry.exhausted or not await self._fetch_into(key, entry, missing):
                    break
            if page not in entry.pages and not entry.exhausted:
                await self._fetch_into(key, entry, page)

        results = entry.pages.get(page, [])
        exhausted = entry.exhausted and page >= entry.last_fetched_page
        return DiscoverPage(results=list(results), exhausted=exhausted)

    async def _join_refresh(
        self,
        key: str,
        filters: DiscoverFilters,
        pages: int | None,
        reset: bool,
    ) -> None:
        for attempt in (1, 2):
            future = self._refreshes.start(
                key, lambda: self._refresh(key, filters, pages, reset)
            )
            try:
                await asyncio.wait_for(asyncio.shield(future), self._refresh_timeout)
                return
            except asyncio.TimeoutError:
                logger.warning(
                    "Discovery refresh for %s exceeded %.0fs (attempt %s), discarding it",
                    key,
                    self._refresh_timeout,
                    attempt,
                )
                self._refreshes.forget(key)

    async def _refresh(
        self,
        key: str,
        filters: DiscoverFilters,
        pages: int | None,
        reset: bool,
    ) -> None:
        entry = self._entries.get(key)
        if entry is None or reset:
            entry = CacheEntry(filters=filters)
            self._entries[key] = entry

        budget = pages or self.prefetch_budget(key)
        fetched_any = False
        for page in range(1, budget + 1):
            if entry.exhausted:
                break
            if page in entry.pages:
                continue
            if not await self._fetch_into(key, entry, page):
                break
            fetched_any = True

        if fetched_any or entry.exhausted or entry.pages:
            entry.last_refreshed = self._clock()
        logger.info(
            "Discovery cache %s holds %s pages%s",
            "default" if key == DEFAULT_FILTER_KEY else key,
            len(entry.pages),
            " (exhausted)" if entry.exhausted else "",
        )

    async def _fetch_into(self, key: str, entry: CacheEntry, page: int) -> bool:
        try:
            results = await self._page_fetches.run(
                (key, page), lambda: self._fetch_page(entry.filters, page)
            )
        except Exception as exc:
            logger.warning("Discovery page %s for %s failed: %s", page, key, exc)
            return False

        entry.pages[page] = results
        entry.last_fetched_page = max(entry.last_fetched_page, page)
        if not results:
            entry.exhausted = True
        return True

    async def _warm_loop(self) -> None:
        default_filters = DiscoverFilters()
        while True:
            try:
                await self.warm(default_filters, reset=True)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled discovery warm failed: %s", exc)
            await asyncio.sleep(self._ttl)

"""Plex library access: availability lookups and library-only candidates."""

from __future__ import annotations

import asyncio
import logging
import random
from contextlib import suppress
from typing import Any, Iterable

import httpx

from ..config import Settings
from ..errors import NoMoreCandidatesError
from ..identity import canonical_id_for_movie, ids_from_guid_list
from ..models import DiscoverFilters, MediaItem
from ..utils import coerce_int, normalize_title

logger = logging.getLogger(__name__)


def movie_from_metadata(entry: dict[str, Any]) -> MediaItem:
    """Convert a Plex ``Metadata`` entry into a candidate movie."""

    tmdb_id, imdb_id = ids_from_guid_list(entry.get("Guid"))
    duration = coerce_int(entry.get("duration"))
    directors = [item.get("tag") for item in entry.get("Director") or [] if item.get("tag")]
    return MediaItem(
        guid=str(entry.get("guid") or entry.get("ratingKey") or ""),
        key=entry.get("key"),
        title=entry.get("title") or "",
        year=entry.get("year"),
        summary=entry.get("summary") or "",
        type=entry.get("type") or "movie",
        director=directors[0] if directors else None,
        genres=[item["tag"] for item in entry.get("Genre") or [] if item.get("tag")],
        content_rating=entry.get("contentRating"),
        runtime=duration // 60_000 if duration else None,
        rating=str(entry.get("rating") or ""),
        tmdb_id=tmdb_id,
        imdb_id=imdb_id,
    )


class PlexLibrary:
    """Loads the configured Plex movie library and answers availability queries.

    The library is reloaded on a fixed interval. :attr:`ready` is set once the
    first load finished, or immediately when Plex is not configured.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None,
        *,
        rng: random.Random | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._rng = rng or random.Random()
        self._movies: list[MediaItem] = []
        self._tmdb_ids: set[int] = set()
        self._imdb_ids: set[str] = set()
        self._years_by_title: dict[str, set[int | None]] = {}
        self._refresh_task: asyncio.Task[None] | None = None
        self.ready = asyncio.Event()
        if not self.configured:
            self.ready.set()

    @property
    def configured(self) -> bool:
        return self._client is not None and self._settings.plex_configured

    @property
    def movies(self) -> list[MediaItem]:
        return list(self._movies)

    async def start(self) -> None:
        if self.configured and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._refresh_task
        self._refresh_task = None

    async def wait_ready(self, timeout: float) -> bool:
        if self.ready.is_set():
            return True
        try:
            await asyncio.wait_for(self.ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def refresh(self) -> None:
        """Reload the library and rebuild the availability index."""

        if not self.configured:
            return
        entries = await self._load_metadata()
        self.set_movies(movie_from_metadata(entry) for entry in entries)
        logger.info("Indexed %s Plex movies", len(self._movies))

    def set_movies(self, movies: Iterable[MediaItem]) -> None:
        self._movies = [movie for movie in movies if movie.guid]
        self._tmdb_ids = set()
        self._imdb_ids = set()
        self._years_by_title = {}
        for movie in self._movies:
            canonical_id = canonical_id_for_movie(movie)
            if canonical_id is not None:
                self._tmdb_ids.add(canonical_id)
            if movie.imdb_id:
                self._imdb_ids.add(movie.imdb_id)
            title_key = normalize_title(movie.title)
            if title_key:
                self._years_by_title.setdefault(title_key, set()).add(movie.year)
        self.ready.set()

    def is_available(
        self,
        *,
        tmdb_id: int | None = None,
        imdb_id: str | None = None,
        title: str | None = None,
        year: int | None = None,
    ) -> bool:
        """Match by ids first, then by title with a one year tolerance."""

        if tmdb_id is not None and tmdb_id in self._tmdb_ids:
            return True
        if imdb_id and imdb_id in self._imdb_ids:
            return True
        years = self._years_by_title.get(normalize_title(title))
        if not years:
            return False
        if year is None or None in years:
            return True
        return any(known is not None and abs(known - year) <= 1 for known in years)

    def contains(self, movie: MediaItem) -> bool:
        if movie.guid.startswith("plex://"):
            return True
        return self.is_available(
            tmdb_id=canonical_id_for_movie(movie),
            imdb_id=movie.imdb_id,
            title=movie.title,
            year=movie.year,
        )

    def random_candidate(self, filters: DiscoverFilters, drawn: set[str]) -> MediaItem:
        """Draw a library movie not yet in ``drawn`` that passes cheap filters."""

        genre_names = set(filters.genre_names())
        pool: list[MediaItem] = []
        for movie in self._movies:
            if filters.year_min and (movie.year or 0) < filters.year_min:
                continue
            if filters.year_max and (movie.year or 0) > filters.year_max:
                continue
            if genre_names and not genre_names.intersection(
                genre.casefold() for genre in movie.genres
            ):
                continue
            pool.append(movie)

        remaining = [movie for movie in pool if movie.guid not in drawn]
        if not remaining:
            logger.info("All %s matching Plex movies have been shown", len(pool))
            raise NoMoreCandidatesError("No more library movies match the filters")
        choice = self._rng.choice(remaining)
        drawn.add(choice.guid)
        return choice.model_copy(deep=True)

    async def _load_metadata(self) -> list[dict[str, Any]]:
        assert self._client is not None
        sections = await self._get_json("/library/sections")
        directories = (sections.get("MediaContainer") or {}).get("Directory") or []
        visible = [entry for entry in directories if entry.get("hidden") != 1]
        wanted = set(self._settings.library_filter)
        if wanted:
            selected = [entry for entry in visible if entry.get("title") in wanted]
        else:
            selected = [entry for entry in visible if entry.get("type") == "movie"][:1]
        if not selected:
            available = ", ".join(str(entry.get("title")) for entry in directories)
            raise ValueError(f"No Plex library matches the filter. Available: {available}")

        metadata: list[dict[str, Any]] = []
        for section in selected:
            payload = await self._get_json(f"/library/sections/{section['key']}/all")
            items = (payload.get("MediaContainer") or {}).get("Metadata") or []
            logger.debug("Loaded %s items from %s", len(items), section.get("title"))
            metadata.extend(items)
        return metadata

    async def _get_json(self, path: str) -> dict[str, Any]:
        assert self._client is not None
        response = await self._client.get(
            path,
            params={"X-Plex-Token": self._settings.plex_token},
            headers={"accept": "application/json"},
        )
        if response.status_code == 401:
            raise PermissionError("Plex rejected the configured token")
        response.raise_for_status()
        return response.json()

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Plex library refresh failed: %s", exc)
            self.ready.set()
            await asyncio.sleep(self._settings.library_refresh_interval_seconds)

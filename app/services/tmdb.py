"""Client for The Movie Database (TMDB) discovery, search and detail endpoints."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import Settings
from ..models import DiscoverFilters, MediaItem
from ..ratelimit import RateLimiter

logger = logging.getLogger(__name__)

STREAMING_PROVIDER_IDS: dict[str, int] = {
    "netflix": 8,
    "amazon-prime": 9,
    "disney-plus": 337,
    "hbo-max": 1899,
    "hulu": 15,
    "paramount-plus": 531,
    "peacock": 387,
    "apple-tv-plus": 350,
}
LIBRARY_SERVICE_KEY = "my-plex-library"

_SORT_ALIASES = {
    "imdb_rating.desc": "vote_average.desc",
    "imdb_rating.asc": "vote_average.asc",
    "rt_rating.desc": "vote_average.desc",
    "rt_rating.asc": "vote_average.asc",
}


@dataclass(slots=True)
class TMDBSearchResult:
    """Normalized view of a TMDB search result."""

    tmdb_id: int
    title: str
    overview: str | None
    poster_path: str | None
    year: int | None


def candidate_from_discover(result: dict[str, Any]) -> MediaItem:
    """Convert a raw discover result into a bare candidate movie."""

    tmdb_id = int(result["id"])
    poster_path = result.get("poster_path")
    return MediaItem(
        guid=f"tmdb://{tmdb_id}",
        key=f"/tmdb/{tmdb_id}",
        title=result.get("title") or result.get("original_title") or "",
        year=_extract_year(result),
        summary=result.get("overview") or "",
        art=f"/tmdb-poster{poster_path}" if poster_path else None,
        type="movie",
        tmdb_id=tmdb_id,
        rating_tmdb=result.get("vote_average"),
        genre_ids=[int(genre) for genre in result.get("genre_ids") or []],
        vote_count=result.get("vote_count") or 0,
        original_language=result.get("original_language"),
        production_countries=list(result.get("origin_country") or []),
        tmdb_poster_path=poster_path,
    )


def _extract_year(result: dict[str, Any]) -> int | None:
    date_value = result.get("release_date")
    if not isinstance(date_value, str) or len(date_value) < 4:
        return None
    try:
        return int(date_value[:4])
    except ValueError:
        return None


class TMDBClient:
    """Client responsible for discovery pages and movie metadata."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        limiter: RateLimiter | None = None,
    ):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client
        self._max_retries = 3
        self._limiter = limiter
        self._semaphore = asyncio.Semaphore(8)
        self._search_cache: dict[tuple[str, int | None], TMDBSearchResult | None] = {}
        self._details_cache: dict[int, dict[str, Any] | None] = {}

    def discover_params(self, filters: DiscoverFilters, page: int) -> dict[str, Any]:
        """Translate a filter set into ``/discover/movie`` query parameters."""

        region = self._settings.discover_region
        params: dict[str, Any] = {
            "sort_by": _SORT_ALIASES.get(filters.sort_by or "", filters.sort_by)
            or "popularity.desc",
            "include_adult": "false",
            "page": page,
            "watch_region": region,
            "region": region,
        }
        year_min = filters.year_min or self._settings.discover_year_min
        params["primary_release_date.gte"] = f"{year_min}-01-01"
        if filters.year_max:
            params["primary_release_date.lte"] = f"{filters.year_max}-12-31"
        genre_ids = filters.genre_ids()
        if genre_ids:
            params["with_genres"] = "|".join(str(genre) for genre in genre_ids)
        if filters.tmdb_rating:
            params["vote_average.gte"] = filters.tmdb_rating
        if filters.vote_count and filters.vote_count > 0:
            params["vote_count.gte"] = filters.vote_count
        languages = filters.languages or list(self._settings.discover_languages)
        if languages:
            params["with_original_language"] = "|".join(languages)
        if filters.countries:
            params["with_origin_country"] = "|".join(filters.countries)
        if filters.runtime_min and filters.runtime_min > 0:
            params["with_runtime.gte"] = filters.runtime_min
        if filters.runtime_max and filters.runtime_max > 0:
            params["with_runtime.lte"] = filters.runtime_max
        provider_ids = [
            STREAMING_PROVIDER_IDS[service]
            for service in filters.streaming_services
            if service != LIBRARY_SERVICE_KEY and service in STREAMING_PROVIDER_IDS
        ]
        if provider_ids:
            params["with_watch_providers"] = "|".join(str(pid) for pid in provider_ids)
        if filters.content_ratings:
            params["certification_country"] = region
            params["certification"] = "|".join(filters.content_ratings)
        return params

    async def discover_page(
        self, filters: DiscoverFilters, page: int
    ) -> list[dict[str, Any]]:
        """Return raw results for one discovery page.

        Raises :class:`httpx.HTTPError` when TMDB stays unreachable so callers
        can tell a failure apart from an empty page.
        """

        response = await self._request(
            "/discover/movie", self.discover_params(filters, page)
        )
        response.raise_for_status()
        payload = response.json()
        results = payload.get("results") or []
        logger.debug(
            "TMDB discover page %s: %s results of %s",
            page,
            len(results),
            payload.get("total_results"),
        )
        return [result for result in results if isinstance(result, dict) and result.get("id")]

    async def search_movie(self, title: str, year: int | None) -> TMDBSearchResult | None:
        """Return the best search match for the supplied title."""

        cache_key = (title.casefold(), year)
        if cache_key in self._search_cache:
            return self._search_cache[cache_key]

        params: dict[str, Any] = {"query": title, "include_adult": "false", "page": 1}
        if year:
            params["year"] = year
        try:
            response = await self._request("/search/movie", params)
        except httpx.HTTPError as exc:
            logger.warning("TMDB search for %s failed: %s", title, exc)
            return None
        if response.status_code >= 400:
            logger.warning("TMDB search for %s failed: %s", title, response.text)
            return None

        results = response.json().get("results") or []
        normalized_title = title.casefold()
        best_match: dict[str, Any] | None = None
        for candidate in results:
            candidate_title = candidate.get("title") or candidate.get("original_title")
            if not candidate_title:
                continue
            if candidate_title.casefold() == normalized_title:
                if year is None or _extract_year(candidate) == year:
                    best_match = candidate
                    break
            if best_match is None:
                best_match = candidate
            elif year is not None and _extract_year(candidate) == year:
                best_match = candidate

        result = None
        if best_match is not None:
            result = TMDBSearchResult(
                tmdb_id=int(best_match["id"]),
                title=best_match.get("title") or title,
                overview=best_match.get("overview"),
                poster_path=best_match.get("poster_path"),
                year=_extract_year(best_match),
            )
        self._search_cache[cache_key] = result
        return result

    async def movie_details(self, tmdb_id: int) -> dict[str, Any] | None:
        """Fetch details with external ids, watch providers and credits."""

        if tmdb_id in self._details_cache:
            return self._details_cache[tmdb_id]
        params = {"append_to_response": "external_ids,watch/providers,credits"}
        try:
            response = await self._request(f"/movie/{tmdb_id}", params)
        except httpx.HTTPError as exc:
            logger.warning("TMDB details for %s failed: %s", tmdb_id, exc)
            return None
        if response.status_code == 404:
            self._details_cache[tmdb_id] = None
            return None
        if response.status_code >= 400:
            logger.debug("TMDB details for %s failed: %s", tmdb_id, response.text)
            return None
        payload = response.json()
        self._details_cache[tmdb_id] = payload
        return payload

    async def external_imdb_id(self, tmdb_id: int) -> str | None:
        details = await self.movie_details(tmdb_id)
        if not details:
            return None
        external = details.get("external_ids") or {}
        return details.get("imdb_id") or external.get("imdb_id")

    async def _request(self, path: str, params: dict[str, Any]) -> httpx.Response:
        """GET ``path`` retrying transient failures with a capped backoff."""

        query = {**params, "api_key": self._settings.tmdb_api_key}
        attempt = 0
        while True:
            try:
                if self._limiter is not None:
                    await self._limiter.acquire()
                async with self._semaphore:
                    response = await self._client.get(path, params=query)
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt > self._max_retries:
                    raise
                backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                logger.info(
                    "Transient error talking to TMDB (%s). Retrying %s in %.1fs",
                    exc.__class__.__name__,
                    path,
                    backoff,
                )
                await asyncio.sleep(backoff)
                continue

            if 500 <= response.status_code < 600 or response.status_code == 429:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "TMDB %s for %s. Retrying in %.1fs",
                        response.status_code,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
            return response

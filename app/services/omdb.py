"""Helper client for plot, rating and certification lookups via OMDb."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ..config import Settings
from ..ratelimit import RateLimiter
from ..utils import coerce_float

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OMDbRecord:
    """Represents the useful fields returned from an OMDb lookup."""

    imdb_id: str | None
    plot: str | None = None
    imdb_rating: float | None = None
    rt_rating: int | None = None
    content_rating: str | None = None


class OMDbClient:
    """Look up movies on OMDb by IMDb id or by title and year."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        limiter: RateLimiter | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._limiter = limiter
        self._semaphore = asyncio.Semaphore(8)

    @property
    def configured(self) -> bool:
        return bool(self._settings.omdb_api_key)

    async def by_id(self, imdb_id: str | None) -> OMDbRecord | None:
        if not (self.configured and imdb_id):
            return None
        return await self._lookup({"i": imdb_id}, imdb_id)

    async def by_title(self, title: str | None, year: int | None = None) -> OMDbRecord | None:
        if not (self.configured and title):
            return None
        params: dict[str, Any] = {"t": title}
        if year:
            params["y"] = year
        return await self._lookup(params, title)

    async def _lookup(self, params: dict[str, Any], label: str) -> OMDbRecord | None:
        query = {**params, "apikey": self._settings.omdb_api_key, "plot": "short"}
        try:
            if self._limiter is not None:
                await self._limiter.acquire()
            async with self._semaphore:
                response = await self._client.get("/", params=query)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("OMDb lookup failed for %s: %s", label, exc)
            return None

        if payload.get("Response") != "True":
            logger.debug("OMDb has no match for %s: %s", label, payload.get("Error"))
            return None
        return self.parse(payload)

    @staticmethod
    def parse(payload: dict[str, Any]) -> OMDbRecord:
        rt_rating: int | None = None
        for row in payload.get("Ratings") or []:
            if isinstance(row, dict) and row.get("Source") == "Rotten Tomatoes":
                value = coerce_float(row.get("Value"))
                rt_rating = int(value) if value is not None else None
                break

        def _clean(value: Any) -> str | None:
            if not value or value == "N/A":
                return None
            return str(value)

        return OMDbRecord(
            imdb_id=_clean(payload.get("imdbID")),
            plot=_clean(payload.get("Plot")),
            imdb_rating=coerce_float(_clean(payload.get("imdbRating"))),
            rt_rating=rt_rating,
            content_rating=_clean(payload.get("Rated")),
        )

"""Augment bare candidates with plot, ratings, credits and streaming data."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..identity import extract_imdb_id, extract_tmdb_id
from ..models import StreamingService, StreamingServices
from .omdb import OMDbClient, OMDbRecord
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

PROVIDER_NAME_ALIASES: dict[str, str] = {
    "Amazon Prime Video": "Amazon Prime",
    "Amazon Video": "Amazon Prime",
    "Amazon Prime Video with Ads": "Amazon Prime",
    "Amazon Prime Video Free with Ads": "Amazon Prime",
    "Apple TV+": "Apple TV / Apple TV+",
    "Apple TV Plus Amazon Channel": "Apple TV / Apple TV+",
    "HBO Max": "Max",
    "HBO Max Amazon Channel": "Max",
    "Paramount Plus": "Paramount+",
    "Paramount+ with Showtime": "Paramount+",
    "Paramount+ Amazon Channel": "Paramount+",
    "Paramount Plus Apple TV Channel": "Paramount+",
    "Paramount+ Roku Premium Channel": "Paramount+",
    "Starz Amazon Channel": "Starz",
    "Starz Apple TV Channel": "Starz",
    "AMC+ Amazon Channel": "AMC+",
    "AMC Plus Apple TV Channel": "AMC+",
    "BritBox Amazon Channel": "BritBox",
    "Britbox Apple TV Channel": "BritBox",
    "AcornTV Amazon Channel": "Acorn TV",
}
WRITER_JOBS = {"Writer", "Screenplay", "Story"}


def normalize_provider_name(name: str) -> str:
    cleaned = " ".join(name.split())
    return PROVIDER_NAME_ALIASES.get(cleaned, cleaned)


@dataclass(slots=True)
class Enrichment:
    """Everything the auxiliary sources know about one movie."""

    plot: str | None = None
    imdb_id: str | None = None
    tmdb_id: int | None = None
    rating_imdb: float | None = None
    rating_rt: int | None = None
    rating_tmdb: float | None = None
    content_rating: str | None = None
    genres: list[str] = field(default_factory=list)
    runtime: int | None = None
    vote_count: int | None = None
    cast: list[str] = field(default_factory=list)
    writers: list[str] = field(default_factory=list)
    director: str | None = None
    streaming_services: StreamingServices = field(default_factory=StreamingServices)
    streaming_link: str | None = None
    tmdb_poster_path: str | None = None
    original_language: str | None = None
    production_countries: list[str] = field(default_factory=list)


class Enricher:
    """Combine OMDb and TMDB lookups into a single :class:`Enrichment`."""

    def __init__(
        self,
        tmdb: TMDBClient | None,
        omdb: OMDbClient | None,
        *,
        region: str = "US",
    ):
        self._tmdb = tmdb
        self._omdb = omdb
        self._region = region

    async def enrich(
        self,
        title: str,
        year: int | None,
        *,
        native_guid: str | None = None,
        imdb_id: str | None = None,
        tmdb_id: int | None = None,
    ) -> Enrichment | None:
        """Return enrichment for a title, or ``None`` when no source knows it."""

        imdb_id = imdb_id or extract_imdb_id(native_guid)
        tmdb_id = tmdb_id or extract_tmdb_id(native_guid)
        result = Enrichment(imdb_id=imdb_id, tmdb_id=tmdb_id)
        found = False

        omdb_record: OMDbRecord | None = None
        if self._omdb is not None:
            omdb_record = await self._omdb.by_id(imdb_id)
            if omdb_record is None:
                omdb_record = await self._omdb.by_title(title, year)
        if omdb_record is not None:
            self._apply_omdb(result, omdb_record)
            found = True

        if self._tmdb is not None:
            if result.tmdb_id is None and title:
                hit = await self._tmdb.search_movie(title, year)
                if hit is not None:
                    result.tmdb_id = hit.tmdb_id
                    result.tmdb_poster_path = hit.poster_path
                    result.plot = result.plot or hit.overview
            if result.tmdb_id is not None:
                details = await self._tmdb.movie_details(result.tmdb_id)
                if details:
                    self._apply_tmdb(result, details)
                    found = True

        if omdb_record is None and self._omdb is not None and result.imdb_id:
            omdb_record = await self._omdb.by_id(result.imdb_id)
            if omdb_record is not None:
                self._apply_omdb(result, omdb_record)
                found = True

        if not found:
            logger.debug("No enrichment available for %s (%s)", title, year)
            return None
        return result

    @staticmethod
    def _apply_omdb(result: Enrichment, record: OMDbRecord) -> None:
        result.plot = record.plot or result.plot
        result.imdb_id = result.imdb_id or record.imdb_id
        result.rating_imdb = record.imdb_rating
        result.rating_rt = record.rt_rating
        result.content_rating = record.content_rating or result.content_rating

    def _apply_tmdb(self, result: Enrichment, details: dict[str, Any]) -> None:
        result.plot = result.plot or details.get("overview") or None
        external = details.get("external_ids") or {}
        result.imdb_id = result.imdb_id or details.get("imdb_id") or external.get("imdb_id")
        result.genres = [
            genre["name"] for genre in details.get("genres") or [] if genre.get("name")
        ]
        result.runtime = details.get("runtime") or result.runtime
        result.vote_count = details.get("vote_count")
        vote_average = details.get("vote_average")
        if vote_average is not None:
            result.rating_tmdb = round(float(vote_average), 1)
        result.tmdb_poster_path = result.tmdb_poster_path or details.get("poster_path")
        result.original_language = details.get("original_language")
        result.production_countries = [
            country["iso_3166_1"]
            for country in details.get("production_countries") or []
            if country.get("iso_3166_1")
        ]

        providers = ((details.get("watch/providers") or {}).get("results") or {}).get(
            self._region
        ) or {}
        result.streaming_link = providers.get("link")
        result.streaming_services = StreamingServices(
            subscription=self._collect_providers(providers.get("flatrate"), "subscription"),
            free=self._collect_providers(
                [*(providers.get("free") or []), *(providers.get("ads") or [])], "free"
            ),
        )

        credits = details.get("credits") or {}
        result.cast = [
            member["name"] for member in (credits.get("cast") or [])[:5] if member.get("name")
        ]
        crew = credits.get("crew") or []
        director = next((member for member in crew if member.get("job") == "Director"), None)
        result.director = director.get("name") if director else result.director
        writers: list[str] = []
        for member in crew:
            name = member.get("name")
            if member.get("job") in WRITER_JOBS and name and name not in writers:
                writers.append(name)
        result.writers = writers[:3]

    @staticmethod
    def _collect_providers(entries: Any, kind: str) -> list[StreamingService]:
        services: list[StreamingService] = []
        seen: set[str] = set()
        for entry in entries or []:
            raw_name = entry.get("provider_name") if isinstance(entry, dict) else None
            if not raw_name:
                continue
            name = normalize_provider_name(raw_name)
            if name in seen:
                continue
            seen.add(name)
            services.append(
                StreamingService(
                    id=entry.get("provider_id"),
                    name=name,
                    logo_path=entry.get("logo_path"),
                    type=kind,
                )
            )
        return services

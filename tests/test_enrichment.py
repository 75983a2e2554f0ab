"""Tests for combining OMDb and TMDB metadata."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from app.config import Settings
from app.ratelimit import RateLimiter
from app.services.enrichment import Enricher, normalize_provider_name
from app.services.omdb import OMDbClient
from app.services.tmdb import TMDBClient


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: Any) -> Settings:
    base: dict[str, Any] = {
        "_env_file": None,
        "TMDB_API_KEY": "tmdb-key",
        "OMDB_API_KEY": "omdb-key",
    }
    base.update(overrides)
    return Settings(**base)


INCEPTION_DETAILS = {
    "id": 27205,
    "overview": "A thief who steals corporate secrets.",
    "genres": [{"name": "Action"}, {"name": "Science Fiction"}],
    "runtime": 148,
    "vote_average": 8.369,
    "vote_count": 35000,
    "poster_path": "/inception.jpg",
    "original_language": "en",
    "production_countries": [{"iso_3166_1": "US"}, {"iso_3166_1": "GB"}],
    "external_ids": {"imdb_id": "tt1375666"},
    "watch/providers": {
        "results": {
            "US": {
                "link": "https://www.themoviedb.org/movie/27205-inception/watch?locale=US",
                "flatrate": [
                    {"provider_id": 1899, "provider_name": "HBO Max", "logo_path": "/max.jpg"},
                    {"provider_id": 1825, "provider_name": "HBO Max Amazon Channel"},
                ],
                "ads": [{"provider_id": 300, "provider_name": "Pluto TV"}],
            }
        }
    },
    "credits": {
        "cast": [{"name": f"Actor {index}"} for index in range(8)],
        "crew": [
            {"job": "Director", "name": "Christopher Nolan"},
            {"job": "Writer", "name": "Christopher Nolan"},
            {"job": "Producer", "name": "Emma Thomas"},
        ],
    },
}


def test_normalize_provider_name_collapses_channels() -> None:
    assert normalize_provider_name("HBO Max  Amazon Channel") == "Max"
    assert normalize_provider_name("Mubi") == "Mubi"


@pytest.mark.anyio("asyncio")
async def test_enrich_library_title_via_search_and_omdb() -> None:
    omdb_requests: list[httpx.Request] = []

    def tmdb_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/search/movie"):
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"id": 1, "title": "Inception Making Of", "release_date": "2011-01-01"},
                        {"id": 27205, "title": "Inception", "release_date": "2010-07-15"},
                    ]
                },
            )
        assert request.url.path.endswith("/movie/27205")
        return httpx.Response(200, json=INCEPTION_DETAILS)

    def omdb_handler(request: httpx.Request) -> httpx.Response:
        omdb_requests.append(request)
        if request.url.params.get("i") == "tt1375666":
            return httpx.Response(
                200,
                json={
                    "Response": "True",
                    "imdbID": "tt1375666",
                    "imdbRating": "8.8",
                    "Rated": "PG-13",
                    "Plot": "Dreams within dreams.",
                    "Ratings": [{"Source": "Rotten Tomatoes", "Value": "87%"}],
                },
            )
        return httpx.Response(200, json={"Response": "False", "Error": "Movie not found!"})

    settings = build_settings()
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(tmdb_handler), base_url="https://tmdb.example/3"
    ) as tmdb_http, httpx.AsyncClient(
        transport=httpx.MockTransport(omdb_handler), base_url="https://omdb.example"
    ) as omdb_http:
        enricher = Enricher(
            TMDBClient(settings, tmdb_http), OMDbClient(settings, omdb_http), region="US"
        )
        result = await enricher.enrich("Inception", 2010, native_guid="plex://movie/9")

    assert result is not None
    assert result.tmdb_id == 27205
    assert result.imdb_id == "tt1375666"
    assert result.rating_imdb == 8.8
    assert result.rating_rt == 87
    assert result.rating_tmdb == 8.4
    assert result.content_rating == "PG-13"
    assert result.plot == "Dreams within dreams."
    assert result.genres == ["Action", "Science Fiction"]
    assert result.runtime == 148
    assert result.production_countries == ["US", "GB"]
    assert result.cast == [f"Actor {index}" for index in range(5)]
    assert result.director == "Christopher Nolan"
    assert result.writers == ["Christopher Nolan"]
    assert [s.name for s in result.streaming_services.subscription] == ["Max"]
    assert [s.name for s in result.streaming_services.free] == ["Pluto TV"]
    assert result.streaming_link.startswith("https://www.themoviedb.org/movie/27205")
    assert [r.url.params.get("t") for r in omdb_requests][0] == "Inception"
    assert omdb_requests[-1].url.params["apikey"] == "omdb-key"


@pytest.mark.anyio("asyncio")
async def test_enrich_returns_none_when_nothing_is_known() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": []})

    settings = build_settings(OMDB_API_KEY="")
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://tmdb.example/3"
    ) as http_client:
        enricher = Enricher(TMDBClient(settings, http_client), None)
        assert await enricher.enrich("Unknown Film", 1999) is None


@pytest.mark.anyio("asyncio")
async def test_omdb_lookups_share_the_rate_limiter() -> None:
    sleeps: list[float] = []
    now = [0.0]

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        now[0] += delay

    limiter = RateLimiter("OMDb", 1, 1.0, clock=lambda: now[0], sleep=fake_sleep)
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"Response": "True", "imdbRating": "7.1"})
    )
    async with httpx.AsyncClient(transport=transport, base_url="https://omdb.example") as http_client:
        client = OMDbClient(build_settings(), http_client, limiter)
        first = await client.by_id("tt0000001")
        second = await client.by_title("Some Film", 1999)

    assert first is not None and first.imdb_rating == 7.1
    assert second is not None
    assert sleeps == [1.0]

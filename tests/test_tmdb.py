"""Tests for the TMDB client."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from app.config import Settings
from app.models import DiscoverFilters
from app.ratelimit import RateLimiter
from app.services import tmdb as tmdb_module
from app.services.tmdb import TMDBClient, candidate_from_discover


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


REAL_SLEEP = asyncio.sleep


async def _fast_sleep(delay: float) -> None:
    await REAL_SLEEP(0)


def build_settings(**overrides: Any) -> Settings:
    base: dict[str, Any] = {"_env_file": None, "TMDB_API_KEY": "tmdb-key"}
    base.update(overrides)
    return Settings(**base)


def test_client_requires_api_key() -> None:
    with pytest.raises(ValueError):
        TMDBClient(Settings(_env_file=None), httpx.AsyncClient())


def test_discover_params_translate_filters() -> None:
    client = TMDBClient(build_settings(DISCOVER_REGION="GB"), httpx.AsyncClient())
    filters = DiscoverFilters.model_validate(
        {
            "yearMin": 1990,
            "yearMax": 1999,
            "genres": ["Action", 878],
            "tmdbRating": 7,
            "voteCount": 200,
            "contentRatings": ["PG", "12A"],
            "streamingServices": ["netflix", "my-plex-library"],
            "sortBy": "imdb_rating.desc",
            "runtimeMax": 150,
        }
    )

    params = client.discover_params(filters, 3)

    assert params["page"] == 3
    assert params["sort_by"] == "vote_average.desc"
    assert params["watch_region"] == "GB"
    assert params["primary_release_date.gte"] == "1990-01-01"
    assert params["primary_release_date.lte"] == "1999-12-31"
    assert params["with_genres"] == "28|878"
    assert params["vote_average.gte"] == 7
    assert params["vote_count.gte"] == 200
    assert params["with_original_language"] == "en"
    assert params["with_runtime.lte"] == 150
    assert params["with_watch_providers"] == "8"
    assert params["certification_country"] == "GB"
    assert params["certification"] == "PG|12A"


def test_discover_params_defaults() -> None:
    client = TMDBClient(build_settings(), httpx.AsyncClient())

    params = client.discover_params(DiscoverFilters(), 1)

    assert params["sort_by"] == "popularity.desc"
    assert params["primary_release_date.gte"] == "1970-01-01"
    assert "with_genres" not in params
    assert "certification" not in params


def test_candidate_from_discover() -> None:
    movie = candidate_from_discover(
        {
            "id": 27205,
            "title": "Inception",
            "release_date": "2010-07-15",
            "poster_path": "/inception.jpg",
            "vote_average": 8.4,
            "vote_count": 35000,
            "genre_ids": [28, 878],
            "original_language": "en",
        }
    )

    assert movie.guid == "tmdb://27205"
    assert movie.year == 2010
    assert movie.art == "/tmdb-poster/inception.jpg"
    assert movie.tmdb_poster_path == "/inception.jpg"
    assert movie.rating_tmdb == 8.4
    assert movie.genre_ids == [28, 878]


@pytest.mark.anyio("asyncio")
async def test_discover_page_retries_server_errors(monkeypatch) -> None:
    attempts: list[httpx.Request] = []

    monkeypatch.setattr(tmdb_module.asyncio, "sleep", _fast_sleep)

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"results": [{"id": 1}, {"title": "no id"}]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://tmdb.example/3") as http_client:
        client = TMDBClient(build_settings(), http_client)
        results = await client.discover_page(DiscoverFilters(), 1)

    assert results == [{"id": 1}]
    assert len(attempts) == 3
    assert attempts[0].url.params["api_key"] == "tmdb-key"


@pytest.mark.anyio("asyncio")
async def test_discover_page_raises_after_retries(monkeypatch) -> None:
    monkeypatch.setattr(tmdb_module.asyncio, "sleep", _fast_sleep)
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    async with httpx.AsyncClient(transport=transport, base_url="https://tmdb.example/3") as http_client:
        client = TMDBClient(build_settings(), http_client)
        with pytest.raises(httpx.HTTPStatusError):
            await client.discover_page(DiscoverFilters(), 1)


@pytest.mark.anyio("asyncio")
async def test_movie_details_are_cached() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": 603, "external_ids": {"imdb_id": "tt0133093"}})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://tmdb.example/3") as http_client:
        client = TMDBClient(build_settings(), http_client)
        assert await client.external_imdb_id(603) == "tt0133093"
        assert await client.external_imdb_id(603) == "tt0133093"

    assert len(requests) == 1
    assert requests[0].url.path == "/3/movie/603"
    assert requests[0].url.params["append_to_response"] == "external_ids,watch/providers,credits"


@pytest.mark.anyio("asyncio")
async def test_requests_wait_for_the_shared_rate_limiter() -> None:
    sleeps: list[float] = []
    now = [0.0]

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)
        now[0] += delay

    limiter = RateLimiter("TMDB", 1, 4.0, clock=lambda: now[0], sleep=fake_sleep)
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"id": 1, "imdb_id": "tt0000001"})
    )
    async with httpx.AsyncClient(transport=transport, base_url="https://tmdb.example/3") as http_client:
        client = TMDBClient(build_settings(), http_client, limiter)
        await client.movie_details(603)
        await client.movie_details(604)
        await client.movie_details(603)

    assert sleeps == [0.25]

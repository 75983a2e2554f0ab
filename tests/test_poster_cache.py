"""Tests for the on-disk poster cache."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from app.services.poster_cache import PosterCache, cache_key, normalize_poster_path


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        self.now += 1
        return self.now


def test_normalize_poster_path_strips_local_routes() -> None:
    assert normalize_poster_path("/tmdb-poster/abc.jpg") == "/abc.jpg"
    assert normalize_poster_path("abc.jpg") == "/abc.jpg"
    assert cache_key("/abc.jpg", "tmdb") == "tmdb-_abc_jpg"


@pytest.mark.anyio("asyncio")
async def test_store_evicts_least_recently_accessed(tmp_path: Path) -> None:
    cache = PosterCache(tmp_path, None, max_bytes=250, clock=FakeClock())
    cache.load()

    await cache.store("/a.jpg", "tmdb", b"a" * 100)
    await cache.store("/b.jpg", "tmdb", b"b" * 100)
    assert cache.cached_url("/a.jpg") == "/cached-poster/tmdb-_a_jpg.jpg"
    await cache.store("/c.jpg", "tmdb", b"c" * 100)

    assert cache.cached_url("/b.jpg") is None
    assert cache.cached_url("/a.jpg") is not None
    assert cache.cached_url("/c.jpg") is not None
    assert cache.metadata.total_size == 200
    assert not (tmp_path / "tmdb-_b_jpg.jpg").exists()

    metadata = json.loads((tmp_path / "cache-metadata.json").read_text(encoding="utf-8"))
    assert metadata["totalSize"] == 200
    assert sorted(metadata["entries"]) == ["tmdb-_a_jpg", "tmdb-_c_jpg"]


@pytest.mark.anyio("asyncio")
async def test_prefetch_downloads_in_background(tmp_path: Path) -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        return httpx.Response(200, content=b"jpeg-bytes")

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://image.example/t/p") as client:
        cache = PosterCache(tmp_path, client)
        cache.load()
        assert cache.best_url("/poster.jpg") == "/tmdb-poster/poster.jpg"

        cache.prefetch("/poster.jpg")
        cache.prefetch("/poster.jpg")
        await cache.wait_pending()

        assert requested == ["/t/p/w500/poster.jpg"]
        assert cache.best_url("/poster.jpg") == "/cached-poster/tmdb-_poster_jpg.jpg"
        path = cache.file_for("tmdb-_poster_jpg.jpg")
        assert path is not None and path.read_bytes() == b"jpeg-bytes"


@pytest.mark.anyio("asyncio")
async def test_best_poster_path_skips_missing_images(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        if request.url.path.endswith("/missing.jpg"):
            return httpx.Response(404)
        return httpx.Response(200)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, base_url="https://image.example/t/p") as client:
        cache = PosterCache(tmp_path, client)

        assert await cache.best_poster_path("/missing.jpg", "/present.jpg") == "/present.jpg"
        assert await cache.best_poster_path(None, "/missing.jpg") is None
        assert await cache.is_valid("/missing.jpg") is False

"""Radarr lookups used to badge titles that are already downloaded."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)

REFRESH_INTERVAL_SECONDS = 86_400


class RadarrClient:
    """Caches Radarr's movie list as ``tmdb_id -> has_file``."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None):
        self._settings = settings
        self._client = http_client
        self._movies: dict[int, bool] = {}
        self._refresh_task: asyncio.Task[None] | None = None

    @property
    def configured(self) -> bool:
        return self._client is not None and self._settings.radarr_configured

    def has_movie(self, tmdb_id: int | None) -> bool:
        """Return whether Radarr reports a downloaded file for the movie."""

        if tmdb_id is None:
            return False
        return self._movies.get(tmdb_id, False)

    async def refresh(self) -> None:
        if not self.configured:
            return
        assert self._client is not None
        try:
            response = await self._client.get(
                "/api/v3/movie", headers={"X-Api-Key": self._settings.radarr_api_key or ""}
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to load Radarr movies: %s", exc)
            return

        movies: dict[int, bool] = {}
        for entry in payload if isinstance(payload, list) else []:
            tmdb_id = entry.get("tmdbId")
            if isinstance(tmdb_id, int) and tmdb_id > 0:
                movies[tmdb_id] = bool(entry.get("hasFile"))
        self._movies = movies
        logger.info("Cached %s Radarr movies", len(movies))

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

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Radarr refresh failed: %s", exc)
            await asyncio.sleep(REFRESH_INTERVAL_SECONDS)

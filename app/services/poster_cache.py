"""On-disk poster cache with least-recently-accessed eviction."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..utils import safe_filename

logger = logging.getLogger(__name__)

PosterSource = Literal["plex", "tmdb"]

METADATA_FILENAME = "cache-metadata.json"
CACHED_ROUTE = "/cached-poster"
PROXY_ROUTE = "/tmdb-poster"
VALIDATION_SIZES = ("w342", "w500", "w780")
VALIDATION_TIMEOUT = 3.0
VALIDATION_MEMO_SIZE = 5_000
EVICTION_TARGET = 0.8


class PosterEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    size: int
    last_accessed: float = Field(alias="lastAccessed")
    source: PosterSource = "tmdb"


class PosterMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entries: dict[str, PosterEntry] = Field(default_factory=dict)
    total_size: int = Field(default=0, alias="totalSize")


def normalize_poster_path(path: str) -> str:
    """Strip local route prefixes so only the upstream image path remains."""

    if path.startswith(f"{PROXY_ROUTE}/"):
        path = path[len(PROXY_ROUTE):]
    elif path.startswith("/poster/"):
        path = path[len("/poster"):]
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def cache_key(path: str, source: PosterSource) -> str:
    return f"{source}-{safe_filename(path)}"


class PosterCache:
    """Content addressed poster store keyed by ``(source, normalised path)``.

    A metadata sidecar tracks each file's size and last access time. Once the
    total exceeds ``max_bytes`` the least recently accessed files are removed
    until usage drops to 80% of the ceiling. Callers always get a usable URL
    from :meth:`best_url`, falling back to the proxy route while a prefetch is
    still running or after it failed.
    """

    def __init__(
        self,
        directory: Path,
        http_client: httpx.AsyncClient | None,
        *,
        max_bytes: int = 500 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory)
        self._client = http_client
        self._max_bytes = max_bytes
        self._clock = clock
        self.metadata = PosterMetadata()
        self._pending: dict[str, asyncio.Task[None]] = {}
        self._validated: OrderedDict[str, bool] = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def metadata_path(self) -> Path:
        return self.directory / METADATA_FILENAME

    def load(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        if not self.metadata_path.exists():
            return
        try:
            raw = json.loads(self.metadata_path.read_text(encoding="utf-8"))
            self.metadata = PosterMetadata.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable poster cache metadata: %s", exc)
            self.metadata = PosterMetadata()
            return
        logger.info(
            "Loaded poster cache: %s posters, %.2fMB",
            len(self.metadata.entries),
            self.metadata.total_size / 1024 / 1024,
        )

    def cached_url(self, path: str, source: PosterSource = "tmdb") -> str | None:
        entry = self.metadata.entries.get(cache_key(normalize_poster_path(path), source))
        if entry is None:
            return None
        entry.last_accessed = self._clock()
        return f"{CACHED_ROUTE}/{entry.filename}"

    def best_url(self, path: str, source: PosterSource = "tmdb") -> str:
        """Return the cached file URL, or the proxy URL when not cached yet."""

        if path.startswith(f"{CACHED_ROUTE}/"):
            return path
        return self.cached_url(path, source) or f"{PROXY_ROUTE}{normalize_poster_path(path)}"

    def file_for(self, filename: str) -> Path | None:
        """Return the on-disk file for a cached poster filename."""

        for entry in self.metadata.entries.values():
            if entry.filename == filename:
                entry.last_accessed = self._clock()
                path = self.directory / entry.filename
                return path if path.exists() else None
        return None

    def prefetch(self, path: str | None, source: PosterSource = "tmdb") -> None:
        """Download a poster in the background. Never blocks or raises."""

        if not path or path.startswith(f"{CACHED_ROUTE}/") or source != "tmdb":
            return
        if self._client is None:
            return
        normalized = normalize_poster_path(path)
        key = cache_key(normalized, source)
        if key in self.metadata.entries or key in self._pending:
            return

        async def _runner() -> None:
            try:
                await self.fetch(normalized, source)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.debug("Poster prefetch failed for %s: %s", normalized, exc)
            finally:
                self._pending.pop(key, None)

        self._pending[key] = asyncio.create_task(_runner())

    async def wait_pending(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        await self.wait_pending()
        if self.metadata.entries:
            payload = self.metadata.model_dump(mode="json", by_alias=True)
            await asyncio.to_thread(self._write_metadata, payload)

    async def fetch(self, path: str, source: PosterSource = "tmdb") -> str | None:
        """Download and store a poster, returning its cached URL."""

        cached = self.cached_url(path, source)
        if cached is not None:
            return cached
        data = await self.fetch_upstream(path)
        if data is None:
            return None
        return await self.store(path, source, data)

    async def fetch_upstream(self, path: str, size: str = "w500") -> bytes | None:
        if self._client is None:
            return None
        normalized = normalize_poster_path(path)
        try:
            response = await self._client.get(f"/{size}{normalized}")
        except httpx.HTTPError as exc:
            logger.warning("Poster download for %s failed: %s", normalized, exc)
            return None
        if response.status_code >= 400:
            logger.debug("Poster download for %s returned %s", normalized, response.status_code)
            return None
        return response.content

    async def store(self, path: str, source: PosterSource, data: bytes) -> str:
        normalized = normalize_poster_path(path)
        key = cache_key(normalized, source)
        filename = f"{key}.jpg"
        async with self._lock:
            await asyncio.to_thread(self._write_file, filename, data)
            previous = self.metadata.entries.get(key)
            if previous is not None:
                self.metadata.total_size -= previous.size
            self.metadata.entries[key] = PosterEntry(
                filename=filename,
                size=len(data),
                last_accessed=self._clock(),
                source=source,
            )
            self.metadata.total_size += len(data)
            evicted = self._select_evictions()
            payload = self.metadata.model_dump(mode="json", by_alias=True)
            await asyncio.to_thread(self._remove_files, evicted)
            await asyncio.to_thread(self._write_metadata, payload)
        logger.debug("Cached poster %s (%.1fKB)", filename, len(data) / 1024)
        return f"{CACHED_ROUTE}/{filename}"

    async def is_valid(self, path: str | None) -> bool:
        """Return whether TMDB serves the poster in at least one size."""

        if not path:
            return False
        normalized = normalize_poster_path(path)
        if normalized in self._validated:
            return self._validated[normalized]
        if self.cached_url(normalized) is not None:
            return True
        if self._client is None:
            return True

        valid = False
        for size in VALIDATION_SIZES:
            try:
                response = await self._client.head(
                    f"/{size}{normalized}", timeout=VALIDATION_TIMEOUT
                )
            except httpx.HTTPError:
                continue
            if response.status_code < 400:
                valid = True
                break

        self._validated[normalized] = valid
        while len(self._validated) > VALIDATION_MEMO_SIZE:
            self._validated.popitem(last=False)
        return valid

    async def best_poster_path(self, *candidates: str | None) -> str | None:
        """Return the first candidate path that resolves to a real image."""

        for candidate in candidates:
            if candidate and await self.is_valid(candidate):
                return normalize_poster_path(candidate)
        return None

    def _write_file(self, filename: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / filename).write_bytes(data)

    def _select_evictions(self) -> list[PosterEntry]:
        """Drop the least recently accessed entries until usage is under target."""

        if self.metadata.total_size <= self._max_bytes:
            return []
        target = self._max_bytes * EVICTION_TARGET
        ordered = sorted(
            self.metadata.entries.items(), key=lambda item: item[1].last_accessed
        )
        evicted: list[PosterEntry] = []
        for key, entry in ordered:
            if self.metadata.total_size <= target:
                break
            self.metadata.total_size -= entry.size
            del self.metadata.entries[key]
            evicted.append(entry)
        logger.info(
            "Evicting %s posters, cache now %.2fMB",
            len(evicted),
            self.metadata.total_size / 1024 / 1024,
        )
        return evicted

    def _remove_files(self, entries: list[PosterEntry]) -> None:
        for entry in entries:
            try:
                (self.directory / entry.filename).unlink(missing_ok=True)
            except OSError as exc:
                logger.error("Failed to evict %s: %s", entry.filename, exc)

    def _write_metadata(self, payload: dict[str, object] | None = None) -> None:
        if payload is None:
            payload = self.metadata.model_dump(mode="json", by_alias=True)
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = self.metadata_path.with_name(f"{METADATA_FILENAME}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.metadata_path)

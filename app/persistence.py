"""File backed store for rooms, ratings and the global movie index."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Iterable, Iterator
from uuid import uuid4

from pydantic import ValidationError

from .errors import PersistenceError
from .identity import canonical_id_for_movie, dedupe_responses
from .models import MediaItem, PersistedRoom, PersistedState, StreamingService, User

logger = logging.getLogger(__name__)


class MovieIndex:
    """Global ``guid -> MediaItem`` map with a secondary canonical id index."""

    def __init__(self, movies: dict[str, MediaItem] | None = None):
        self._movies: dict[str, MediaItem] = movies if movies is not None else {}
        self._by_canonical: dict[int, MediaItem] = {}
        self.rebuild()

    def __len__(self) -> int:
        return len(self._movies)

    def __iter__(self) -> Iterator[MediaItem]:
        return iter(list(self._movies.values()))

    def rebuild(self) -> None:
        self._by_canonical.clear()
        for movie in self._movies.values():
            canonical_id = canonical_id_for_movie(movie)
            if canonical_id is not None:
                self._by_canonical.setdefault(canonical_id, movie)

    def get(self, guid: str) -> MediaItem | None:
        return self._movies.get(guid)

    def find_by_canonical_id(self, canonical_id: int | None) -> MediaItem | None:
        if canonical_id is None:
            return None
        return self._by_canonical.get(canonical_id)

    def update(self, movie: MediaItem) -> None:
        """Insert or replace a movie keyed by its guid."""

        self._movies[movie.guid] = movie
        canonical_id = canonical_id_for_movie(movie)
        if canonical_id is not None:
            self._by_canonical[canonical_id] = movie

    def register(self, movies: Iterable[MediaItem]) -> None:
        for movie in movies:
            self.update(movie)


class StateStore:
    """Owns the persisted state and writes it atomically.

    Every write copies the previous file aside, writes a temporary file,
    verifies it byte for byte and renames it over the target. If any step
    fails the previous file is restored from the copy and
    :class:`PersistenceError` is raised.
    """

    def __init__(self, path: Path, backup_path: Path | None = None):
        self.path = Path(path)
        self.backup_path = (
            Path(backup_path)
            if backup_path is not None
            else self.path.with_name(f"{self.path.stem}.backup{self.path.suffix}")
        )
        self.state = PersistedState()
        self.movies = MovieIndex(self.state.movie_index)
        self._lock = asyncio.Lock()

    def load(self) -> PersistedState:
        """Load the state file, falling back to the backup copy."""

        state: PersistedState | None = None
        for candidate in (self.path, self.backup_path):
            if not candidate.exists():
                continue
            try:
                raw = json.loads(candidate.read_text(encoding="utf-8"))
                state = PersistedState.model_validate(raw)
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning("Could not read state file %s: %s", candidate, exc)
                continue
            if candidate != self.path:
                logger.warning("Recovered session state from backup %s", candidate)
            break

        self.state = state or PersistedState()
        self.movies = MovieIndex(self.state.movie_index)

        merged = 0
        for room in self.state.rooms.values():
            for user in room.users:
                responses, changed = dedupe_responses(user.responses, self.movies.get)
                if changed:
                    merged += 1
                    user.responses = responses
        logger.info(
            "Loaded %s rooms and %s indexed movies from %s",
            len(self.state.rooms),
            len(self.movies),
            self.path,
        )
        if merged:
            logger.info("Normalised stored responses for %s users", merged)
        return self.state

    async def save(self) -> None:
        """Persist the current state. Concurrent saves run one at a time."""

        async with self._lock:
            data = json.dumps(self.state.to_payload(), indent=2).encode("utf-8")
            await asyncio.to_thread(self._write_atomic, data)

    def _write_atomic(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        had_previous = self.path.exists()
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            if had_previous:
                shutil.copy2(self.path, self.backup_path)
            with open(tmp_path, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            if tmp_path.read_bytes() != data:
                raise OSError(f"Verification of {tmp_path} failed")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            if had_previous and self.backup_path.exists():
                try:
                    shutil.copy2(self.backup_path, self.path)
                except OSError:
                    logger.exception("Restoring %s from backup failed", self.path)
            raise PersistenceError(f"Failed to write {self.path}: {exc}") from exc

    def room(self, code: str) -> PersistedRoom:
        return self.state.rooms.setdefault(code, PersistedRoom())

    def room_users(self, code: str) -> list[User]:
        room = self.state.rooms.get(code)
        return list(room.users) if room else []

    def ensure_user(self, code: str, name: str) -> User:
        """Return the stored user object, creating it on first login."""

        room = self.room(code)
        for user in room.users:
            if user.name == name:
                return user
        user = User(name=name)
        room.users.append(user)
        return user

    def backfill_movies(
        self,
        is_in_library: Callable[[MediaItem], bool],
        badge: StreamingService,
    ) -> bool:
        """Fill canonical ids and library badges on indexed movies and responses."""

        changed = False
        for movie in self.movies:
            canonical_id = canonical_id_for_movie(movie)
            if movie.tmdb_id is None and canonical_id is not None:
                movie.tmdb_id = canonical_id
                changed = True
            names = {service.name for service in movie.streaming_services.subscription}
            if badge.name not in names and is_in_library(movie):
                movie.streaming_services.subscription.append(badge.model_copy())
                changed = True
        self.movies.rebuild()

        for room in self.state.rooms.values():
            for user in room.users:
                responses, merged = dedupe_responses(user.responses, self.movies.get)
                if merged:
                    user.responses = responses
                    changed = True
        return changed

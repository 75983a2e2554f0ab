"""Per-room matching engine and the registry of active rooms."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine

from fastapi import WebSocketDisconnect
from pydantic import ValidationError

from .config import Settings
from .discovery import DiscoveryCache
from .errors import NoMoreCandidatesError, PersistenceError
from .identity import (
    canonical_id_for_movie,
    dedupe_responses,
    extract_tmdb_id,
    match_key,
    pick_best_guid,
    resolve_response_id,
)
from .models import (
    GENRE_MAP,
    ClientMessage,
    DiscoverFilters,
    MatchRecord,
    MediaItem,
    NextBatchPayload,
    RemoveMatchPayload,
    ResponsePayload,
    StreamingService,
    StreamingServices,
    User,
    UserResponse,
)
from .persistence import StateStore
from .services.enrichment import Enricher, Enrichment
from .services.plex import PlexLibrary
from .services.poster_cache import PosterCache
from .services.radarr import RadarrClient
from .services.tmdb import TMDBClient, candidate_from_discover
from .singleflight import SingleFlight

logger = logging.getLogger(__name__)

PREFETCH_THRESHOLD = 5
MAX_DISCOVERY_ATTEMPTS = 40
LIBRARY_LOGO = "/assets/logos/allvids.svg"


def library_badge(settings: Settings) -> StreamingService:
    return StreamingService(
        id=0, name=settings.plex_library_name, logo_path=LIBRARY_LOGO, type="subscription"
    )


class ClientConnection:
    """Outbound half of a client socket."""

    def __init__(self, send: Callable[[str], Awaitable[None]]):
        self._send = send
        self.closed = False

    async def send(self, message_type: str, payload: Any = None) -> None:
        if self.closed:
            return
        message = json.dumps({"type": message_type, "payload": payload})
        try:
            await self._send(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug("Dropping %s for closed connection: %s", message_type, exc)
            self.closed = True


@dataclass(slots=True)
class SessionContext:
    """Process-wide collaborators shared by every session."""

    settings: Settings
    store: StateStore
    library: PlexLibrary
    posters: PosterCache
    discovery: DiscoveryCache | None = None
    tmdb: TMDBClient | None = None
    enricher: Enricher | None = None
    radarr: RadarrClient | None = None
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], float] = time.time


@dataclass(slots=True)
class LikedEntry:
    movie: MediaItem
    users: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DiscoverQueue:
    current_page: int = 0
    buffer: list[dict[str, Any]] = field(default_factory=list)
    exhausted: bool = False
    loading: asyncio.Task[None] | None = None


@dataclass(slots=True)
class _Exclusions:
    guids: set[str]
    ids: set[int]

    def contains(self, guid: str, canonical_id: int | None) -> bool:
        if guid in self.guids:
            return True
        return canonical_id is not None and canonical_id in self.ids


class Session:
    """Matching engine for a single room.

    Owns the live connections, the liked-movie map, match records and the
    discovery queues of one room. Rating state lives in the shared
    :class:`StateStore` and is written through on every change.
    """

    def __init__(self, code: str, context: SessionContext):
        self.code = code
        self._ctx = context
        self._store = context.store
        self._connections: dict[str, ClientConnection] = {}
        self.movie_list: list[MediaItem] = []
        self._liked: dict[str, LikedEntry] = {}
        self._matches: dict[str, MatchRecord] = {}
        self._queues: dict[str, DiscoverQueue] = {}
        self._drawn: set[str] = set()
        self._enrichments: dict[str, Enrichment | None] = {}
        self._enrich_flight: SingleFlight[Enrichment | None] = SingleFlight("enrich")
        self._formatted: dict[int, MediaItem] = {}
        self._format_flight: SingleFlight[MediaItem] = SingleFlight("format")
        self._tasks: set[asyncio.Task[Any]] = set()
        self._rebuild_likes()

    @property
    def liked(self) -> dict[str, LikedEntry]:
        return self._liked

    @property
    def matches(self) -> dict[str, MatchRecord]:
        return self._matches

    def users(self) -> list[User]:
        return self._store.room_users(self.code)

    def is_active(self, name: str) -> bool:
        connection = self._connections.get(name)
        return connection is not None and not connection.closed

    def has_active_connections(self) -> bool:
        return any(not connection.closed for connection in self._connections.values())

    async def add(self, name: str, connection: ClientConnection) -> None:
        """Register a live connection and persist the room membership."""

        self._connections[name] = connection
        self._store.ensure_user(self.code, name)
        logger.info("%s joined room %s", name, self.code)
        await self._save()

    def remove(self, name: str, connection: ClientConnection) -> None:
        if self._connections.get(name) is connection:
            del self._connections[name]
            logger.info("%s left room %s", name, self.code)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def handle_message(self, name: str, raw: str) -> None:
        """Decode and dispatch one client message.

        Ratings are handled inline so they apply in arrival order. Batch
        requests run in the background.
        """

        connection = self._connections.get(name)
        try:
            message = ClientMessage.model_validate_json(raw)
            if message.type == "response":
                payload = ResponsePayload.model_validate(message.payload or {})
                await self.handle_response(name, payload.guid, payload.wants_to_watch)
            elif message.type == "nextBatch":
                batch = NextBatchPayload.model_validate(message.payload or {})
                self._spawn(self.send_next_batch(batch.filters))
            elif message.type == "removeMatch":
                removal = RemoveMatchPayload.model_validate(message.payload or {})
                await self.dismiss_match(name, removal.guid, removal.action)
            else:
                logger.warning(
                    "Unsupported message %r from %s in room %s: %s",
                    message.type,
                    name,
                    self.code,
                    raw,
                )
                if connection is not None:
                    await connection.send(
                        "error", {"message": f"Unsupported message type {message.type}"}
                    )
        except ValidationError as exc:
            logger.warning(
                "Malformed message from %s in room %s: %s (%s)",
                name,
                self.code,
                raw,
                exc.errors(include_url=False),
            )
            if connection is not None:
                await connection.send("error", {"message": "Malformed message"})

    async def handle_response(
        self, name: str, guid: str, wants_to_watch: bool | None
    ) -> None:
        """Record a rating, update likes and matches, then persist."""

        user = self._store.ensure_user(self.code, name)
        canonical_id = self._canonical_id(guid)
        existing = next(
            (
                response
                for response in user.responses
                if response.guid == guid
                or (
                    canonical_id is not None
                    and resolve_response_id(response, self._lookup) == canonical_id
                )
            ),
            None,
        )
        if existing is None:
            user.responses.append(
                UserResponse(
                    guid=guid, wants_to_watch=wants_to_watch, canonical_id=canonical_id
                )
            )
        else:
            existing.wants_to_watch = wants_to_watch
            existing.guid = pick_best_guid(guid, existing.guid, self._lookup)
            if existing.canonical_id is None:
                existing.canonical_id = canonical_id
        user.responses, _ = dedupe_responses(user.responses, self._lookup)

        if canonical_id is not None:
            self._merge_guid_likes(canonical_id)
        key = match_key(guid, canonical_id)
        if wants_to_watch is True:
            await self._add_like(key, self._movie_for(guid, canonical_id), name)
        else:
            await self._remove_like(key, name)
        await self._save()

    async def handle_match(
        self, movie: MediaItem, users: list[str], key: str | None = None
    ) -> MatchRecord:
        """Create or update the match record and tell every connected user."""

        key = key or match_key(movie.guid, canonical_id_for_movie(movie))
        record = self._matches.get(key)
        if record is None:
            record = MatchRecord(
                movie=movie, users=list(users), created_at=self._now_ms()
            )
            self._matches[key] = record
            logger.info(
                "Match in room %s on %s: %s", self.code, movie.title, ", ".join(users)
            )
        else:
            record.movie = movie
            record.users = list(users)
        await self.broadcast("match", record.to_payload())
        return record

    async def dismiss_match(self, name: str, guid: str, action: str) -> None:
        """Drop a match for ``name`` by recording the movie as seen or passed."""

        canonical_id = self._canonical_id(guid)
        key = match_key(guid, canonical_id)
        await self.handle_response(name, guid, None if action == "seen" else False)
        if key in self._matches:
            connection = self._connections.get(name)
            if connection is not None:
                await connection.send("matchRemoved", {"guid": guid})

    def get_existing_matches(self, name: str) -> list[dict[str, Any]]:
        """Matches ``name`` shares with at least one other user, newest first."""

        records = [
            record
            for record in self._matches.values()
            if name in record.users and len(record.users) >= 2
        ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return [record.to_payload() for record in records]

    async def login_payload(self, name: str) -> dict[str, Any]:
        """Build the ``loginResponse`` body for a user who just joined."""

        user = self._store.ensure_user(self.code, name)
        rated_guids, rated_ids, changed = self._rated_sets(user)
        rated: list[dict[str, Any]] = []
        for response in user.responses:
            movie = self._lookup(response.guid) or self._store.movies.find_by_canonical_id(
                response.canonical_id
            )
            rated.append(
                {
                    "guid": movie.guid if movie is not None else response.guid,
                    "wantsToWatch": response.wants_to_watch,
                    "movie": movie.to_payload() if movie is not None else None,
                }
            )
        movies = [
            movie.to_payload()
            for movie in self.movie_list
            if movie.guid not in rated_guids
            and canonical_id_for_movie(movie) not in rated_ids
        ]
        if changed:
            await self._save()
        return {
            "matches": self.get_existing_matches(name),
            "movies": movies,
            "rated": rated,
        }

    async def broadcast(self, message_type: str, payload: Any = None) -> None:
        for connection in list(self._connections.values()):
            await connection.send(message_type, payload)

    async def send_next_batch(self, filters: DiscoverFilters) -> list[MediaItem]:
        """Produce the next batch for the room and send each user their share."""

        try:
            accepted, exhausted = await self._generate_batch(filters)
        except Exception as exc:
            logger.exception("Batch generation failed for room %s: %s", self.code, exc)
            accepted, exhausted = [], False

        logger.info(
            "Generated batch of %s movies for room %s%s",
            len(accepted),
            self.code,
            " (source exhausted)" if exhausted else "",
        )
        if accepted:
            self.movie_list.extend(accepted)
            self._store.movies.register(accepted)
            await self._save()
        await self._dispatch_batch(accepted, exhausted)
        return accepted

    async def _generate_batch(
        self, filters: DiscoverFilters
    ) -> tuple[list[MediaItem], bool]:
        ctx = self._ctx
        batch_size = ctx.settings.movie_batch_size
        use_library = (
            filters.show_plex_only or ctx.discovery is None or ctx.tmdb is None
        )
        source_limit = len(ctx.library.movies) if use_library else MAX_DISCOVERY_ATTEMPTS
        max_attempts = min(source_limit, batch_size * 2)

        seen = _Exclusions(set(), set())
        for movie in self.movie_list:
            seen.guids.add(movie.guid)
            canonical_id = canonical_id_for_movie(movie)
            if canonical_id is not None:
                seen.ids.add(canonical_id)
        fully_rated = self._fully_rated()

        accepted: list[MediaItem] = []
        exhausted = max_attempts == 0
        attempts = 0
        pending: asyncio.Future[MediaItem | None] | None = None

        def queue_next() -> None:
            nonlocal attempts, pending
            if attempts >= max_attempts:
                pending = None
                return
            attempts += 1
            pending = asyncio.ensure_future(self._next_candidate(filters, use_library))

        queue_next()
        while len(accepted) < batch_size and pending is not None:
            current = pending
            try:
                candidate = await current
            except NoMoreCandidatesError:
                logger.info("No more candidates for room %s", self.code)
                exhausted = True
                pending = None
                break
            except Exception as exc:
                logger.warning("Candidate fetch %s failed: %s", attempts, exc)
                queue_next()
                continue

            queue_next()
            if candidate is None:
                continue
            movie = await self._evaluate(candidate, filters, seen, fully_rated)
            if movie is None:
                continue
            accepted.append(movie)
            seen.guids.add(movie.guid)
            if movie.tmdb_id is not None:
                seen.ids.add(movie.tmdb_id)

        if pending is not None:
            leftover = (await asyncio.gather(pending, return_exceptions=True))[0]
            if isinstance(leftover, MediaItem):
                self._give_back(filters, use_library, leftover)
        return accepted, exhausted

    async def _next_candidate(
        self, filters: DiscoverFilters, use_library: bool
    ) -> MediaItem | None:
        if use_library:
            return self._ctx.library.random_candidate(filters, self._drawn)

        queue = self._queues.setdefault(filters.cache_key(), DiscoverQueue())
        if not queue.buffer and not queue.exhausted:
            await self._ensure_loading(queue, filters)
        if not queue.buffer:
            if queue.exhausted:
                raise NoMoreCandidatesError("Discovery exhausted for these filters")
            return None
        raw = queue.buffer.pop(0)
        if len(queue.buffer) < PREFETCH_THRESHOLD and not queue.exhausted:
            self._ensure_loading(queue, filters)
        return await self._format_candidate(raw)

    def _ensure_loading(
        self, queue: DiscoverQueue, filters: DiscoverFilters
    ) -> asyncio.Task[None]:
        if queue.loading is None or queue.loading.done():
            queue.loading = asyncio.create_task(self._load_next_page(queue, filters))
        return queue.loading

    async def _load_next_page(self, queue: DiscoverQueue, filters: DiscoverFilters) -> None:
        assert self._ctx.discovery is not None
        page_number = queue.current_page + 1
        try:
            page = await self._ctx.discovery.get_page(filters, page_number)
        except Exception as exc:
            logger.warning("Loading discovery page %s failed: %s", page_number, exc)
            return
        if page.results:
            queue.current_page = page_number
            results = list(page.results)
            self._ctx.rng.shuffle(results)
            queue.buffer.extend(results)
        if page.exhausted:
            queue.exhausted = True

    def _give_back(
        self, filters: DiscoverFilters, use_library: bool, movie: MediaItem
    ) -> None:
        if use_library:
            self._drawn.discard(movie.guid)
            return
        queue = self._queues.get(filters.cache_key())
        tmdb_id = extract_tmdb_id(movie.guid)
        if queue is not None and tmdb_id in self._formatted:
            queue.buffer.insert(0, {"id": tmdb_id})

    async def _format_candidate(self, raw: dict[str, Any]) -> MediaItem:
        tmdb_id = int(raw["id"])
        if tmdb_id not in self._formatted:

            async def _format() -> MediaItem:
                movie = candidate_from_discover(raw)
                if self._ctx.tmdb is not None:
                    movie.imdb_id = await self._ctx.tmdb.external_imdb_id(tmdb_id)
                self._formatted[tmdb_id] = movie
                return movie

            await self._format_flight.run(tmdb_id, _format)
        return self._formatted[tmdb_id].model_copy(deep=True)

    async def _enrich(self, movie: MediaItem) -> Enrichment | None:
        enricher = self._ctx.enricher
        if enricher is None:
            return None
        key = f"{movie.title.casefold()}|{movie.year}|{movie.guid}"
        if key in self._enrichments:
            return self._enrichments[key]

        async def _load() -> Enrichment | None:
            result = await enricher.enrich(
                movie.title,
                movie.year,
                native_guid=movie.guid,
                imdb_id=movie.imdb_id,
                tmdb_id=movie.tmdb_id,
            )
            self._enrichments[key] = result
            return result

        try:
            return await self._enrich_flight.run(key, _load)
        except Exception as exc:
            logger.warning("Enrichment failed for %s: %s", movie.title, exc)
            return None

    async def _evaluate(
        self,
        candidate: MediaItem,
        filters: DiscoverFilters,
        seen: _Exclusions,
        fully_rated: _Exclusions,
    ) -> MediaItem | None:
        """Run one candidate through exclusion, enrichment and filters."""

        canonical_id = canonical_id_for_movie(candidate)
        if seen.contains(candidate.guid, canonical_id) or fully_rated.contains(
            candidate.guid, canonical_id
        ):
            logger.debug("Skipping %s, already served or rated", candidate.title)
            return None

        extra = await self._enrich(candidate)
        if extra is not None and extra.tmdb_id is not None:
            canonical_id = canonical_id if canonical_id is not None else extra.tmdb_id
            if seen.contains(candidate.guid, extra.tmdb_id) or fully_rated.contains(
                candidate.guid, extra.tmdb_id
            ):
                logger.debug("Skipping %s, canonical id already handled", candidate.title)
                return None

        poster_path = await self._ctx.posters.best_poster_path(
            extra.tmdb_poster_path if extra is not None else None,
            candidate.tmdb_poster_path,
        )
        if not candidate.title or not poster_path:
            logger.debug("Skipping %s, missing title or poster", candidate.guid)
            return None
        if not self._passes_filters(candidate, extra, filters):
            return None
        return self._build_movie(candidate, extra, poster_path, canonical_id)

    def _passes_filters(
        self,
        candidate: MediaItem,
        extra: Enrichment | None,
        filters: DiscoverFilters,
    ) -> bool:
        title = candidate.title

        def _below(label: str, value: float | None, minimum: float | None) -> bool:
            if not minimum or minimum <= 0:
                return False
            if value is None or value < minimum:
                logger.debug("Skipping %s, %s %s below %s", title, label, value, minimum)
                return True
            return False

        if _below("IMDb rating", extra.rating_imdb if extra else None, filters.imdb_rating):
            return False
        if _below("RT rating", extra.rating_rt if extra else None, filters.rt_rating):
            return False
        tmdb_rating = (extra.rating_tmdb if extra else None) or candidate.rating_tmdb
        if _below("TMDb rating", tmdb_rating, filters.tmdb_rating):
            return False

        year = candidate.year
        if filters.year_min and (year is None or year < filters.year_min):
            return False
        if filters.year_max and (year is None or year > filters.year_max):
            return False

        wanted_genres = set(filters.genre_names())
        if wanted_genres:
            genres = (extra.genres if extra else None) or candidate.genres or [
                GENRE_MAP[genre_id] for genre_id in candidate.genre_ids if genre_id in GENRE_MAP
            ]
            if genres and not wanted_genres.intersection(g.casefold() for g in genres):
                logger.debug("Skipping %s, no matching genres", title)
                return False

        runtime = (extra.runtime if extra else None) or candidate.runtime
        if runtime:
            if filters.runtime_min and runtime < filters.runtime_min:
                return False
            if filters.runtime_max and runtime > filters.runtime_max:
                return False

        if filters.vote_count and filters.vote_count > 0:
            votes = (extra.vote_count if extra else None) or candidate.vote_count or 0
            if votes < filters.vote_count:
                logger.debug("Skipping %s, %s votes", title, votes)
                return False

        if filters.content_ratings:
            rating = (extra.content_rating if extra else None) or candidate.content_rating
            if rating and rating not in filters.content_ratings:
                logger.debug("Skipping %s, rated %s", title, rating)
                return False

        if filters.languages:
            language = candidate.original_language or (
                extra.original_language if extra else None
            )
            if language and language not in filters.languages:
                return False

        if filters.countries:
            countries = candidate.production_countries or (
                extra.production_countries if extra else []
            )
            if countries and not set(filters.countries).intersection(countries):
                return False
        return True

    def _build_movie(
        self,
        candidate: MediaItem,
        extra: Enrichment | None,
        poster_path: str,
        canonical_id: int | None,
    ) -> MediaItem:
        services = (
            extra.streaming_services.model_copy(deep=True)
            if extra is not None
            else StreamingServices()
        )
        if self._in_library(candidate, canonical_id):
            badge = library_badge(self._ctx.settings)
            if badge.name not in {service.name for service in services.subscription}:
                services.subscription.append(badge)

        self._ctx.posters.prefetch(poster_path)
        rating_imdb = extra.rating_imdb if extra else None
        rating_rt = extra.rating_rt if extra else None
        rating_tmdb = (extra.rating_tmdb if extra else None) or candidate.rating_tmdb
        parts: list[str] = []
        if rating_imdb is not None:
            parts.append(f"IMDb {rating_imdb}")
        if rating_rt is not None:
            parts.append(f"RT {rating_rt}%")
        if rating_tmdb is not None:
            parts.append(f"TMDb {rating_tmdb}")

        return candidate.model_copy(
            update={
                "art": self._ctx.posters.best_url(poster_path),
                "summary": (extra.plot if extra else None) or candidate.summary,
                "director": (extra.director if extra else None) or candidate.director,
                "cast": (extra.cast if extra else None) or candidate.cast,
                "writers": (extra.writers if extra else None) or candidate.writers,
                "genres": (extra.genres if extra else None) or candidate.genres,
                "content_rating": (extra.content_rating if extra else None)
                or candidate.content_rating,
                "runtime": (extra.runtime if extra else None) or candidate.runtime,
                "rating": " • ".join(parts) if parts else candidate.rating,
                "rating_imdb": rating_imdb,
                "rating_rt": rating_rt,
                "rating_tmdb": rating_tmdb,
                "streaming_services": services,
                "streaming_link": (extra.streaming_link if extra else None)
                or candidate.streaming_link,
                "tmdb_id": canonical_id,
                "imdb_id": candidate.imdb_id or (extra.imdb_id if extra else None),
                "tmdb_poster_path": poster_path,
                "vote_count": (extra.vote_count if extra else None) or candidate.vote_count,
                "original_language": candidate.original_language
                or (extra.original_language if extra else None),
                "production_countries": candidate.production_countries
                or (extra.production_countries if extra else []),
            }
        )

    def _in_library(self, movie: MediaItem, canonical_id: int | None) -> bool:
        if movie.guid.startswith("plex://"):
            return True
        radarr = self._ctx.radarr
        if radarr is not None and radarr.has_movie(canonical_id):
            return True
        return self._ctx.library.is_available(
            tmdb_id=canonical_id,
            imdb_id=movie.imdb_id,
            title=movie.title,
            year=movie.year,
        )

    async def _dispatch_batch(self, accepted: list[MediaItem], exhausted: bool) -> None:
        users = {user.name: user for user in self.users()}
        backfilled = False
        for name, connection in list(self._connections.items()):
            user = users.get(name)
            if user is None or connection.closed:
                continue
            rated_guids, rated_ids, changed = self._rated_sets(user)
            backfilled = backfilled or changed
            personal = [
                movie
                for movie in accepted
                if movie.guid not in rated_guids
                and canonical_id_for_movie(movie) not in rated_ids
            ]
            if len(users) > 1 and len(personal) > 1:
                personal = self._prioritise(personal, name, users.values())
            await connection.send("batch", [movie.to_payload() for movie in personal])
            if not personal and exhausted:
                await connection.send("noMoreMovies")
        if backfilled:
            await self._save()

    def _prioritise(
        self, movies: list[MediaItem], name: str, users: Any
    ) -> list[MediaItem]:
        """Order movies liked by others first, then seen by others, then the rest."""

        liked = _Exclusions(set(), set())
        seen = _Exclusions(set(), set())
        for other in users:
            if other.name == name:
                continue
            for response in other.responses:
                target = (
                    liked
                    if response.wants_to_watch is True
                    else seen
                    if response.wants_to_watch is None
                    else None
                )
                if target is None:
                    continue
                target.guids.add(response.guid)
                canonical_id = resolve_response_id(response, self._lookup)
                if canonical_id is not None:
                    target.ids.add(canonical_id)

        def _rank(movie: MediaItem) -> int:
            canonical_id = canonical_id_for_movie(movie)
            if liked.contains(movie.guid, canonical_id):
                return 0
            if seen.contains(movie.guid, canonical_id):
                return 1
            return 2

        return sorted(movies, key=_rank)

    def _rated_sets(self, user: User) -> tuple[set[str], set[int], bool]:
        """Return a user's rated guids and ids, backfilling missing ids."""

        guids: set[str] = set()
        ids: set[int] = set()
        changed = False
        for response in user.responses:
            guids.add(response.guid)
            canonical_id = resolve_response_id(response, self._lookup)
            if canonical_id is None:
                continue
            ids.add(canonical_id)
            if response.canonical_id is None:
                response.canonical_id = canonical_id
                changed = True
        return guids, ids, changed

    def _fully_rated(self) -> _Exclusions:
        users = self.users()
        if not users:
            return _Exclusions(set(), set())
        guid_counts: dict[str, int] = {}
        id_counts: dict[int, int] = {}
        for user in users:
            guids, ids, _ = self._rated_sets(user)
            for guid in guids:
                guid_counts[guid] = guid_counts.get(guid, 0) + 1
            for canonical_id in ids:
                id_counts[canonical_id] = id_counts.get(canonical_id, 0) + 1
        total = len(users)
        return _Exclusions(
            {guid for guid, count in guid_counts.items() if count >= total},
            {cid for cid, count in id_counts.items() if count >= total},
        )

    def _rebuild_likes(self) -> None:
        for user in self.users():
            for response in user.responses:
                if response.wants_to_watch is not True:
                    continue
                canonical_id = resolve_response_id(response, self._lookup)
                key = match_key(response.guid, canonical_id)
                entry = self._liked.get(key)
                if entry is None:
                    entry = LikedEntry(self._movie_for(response.guid, canonical_id))
                    self._liked[key] = entry
                if user.name not in entry.users:
                    entry.users.append(user.name)
        now = self._now_ms()
        for key, entry in self._liked.items():
            if len(entry.users) >= 2:
                self._matches[key] = MatchRecord(
                    movie=entry.movie, users=list(entry.users), created_at=now
                )

    def _merge_guid_likes(self, canonical_id: int) -> None:
        """Fold likes keyed by a bare guid into the canonical key once the id is known."""

        target = match_key("", canonical_id)
        for key in [key for key in self._liked if key.startswith("guid:")]:
            guid = key[len("guid:"):]
            if self._canonical_id(guid) != canonical_id:
                continue
            stale = self._liked.pop(key)
            stale_record = self._matches.pop(key, None)
            entry = self._liked.get(target)
            if entry is None:
                stale.movie = self._movie_for(guid, canonical_id)
                self._liked[target] = stale
                entry = stale
            else:
                entry.users.extend(user for user in stale.users if user not in entry.users)
            record = self._matches.get(target)
            if record is None and stale_record is not None:
                stale_record.movie = entry.movie
                self._matches[target] = stale_record
                record = stale_record
            if record is not None:
                record.users = list(entry.users)
            logger.debug("Merged likes for %s into %s in room %s", guid, target, self.code)

    async def _add_like(self, key: str, movie: MediaItem, name: str) -> None:
        entry = self._liked.get(key)
        if entry is None:
            entry = LikedEntry(movie)
            self._liked[key] = entry
        if name not in entry.users:
            entry.users.append(name)
        elif key in self._matches:
            return
        if len(entry.users) >= 2:
            await self.handle_match(entry.movie, entry.users, key)

    async def _remove_like(self, key: str, name: str) -> None:
        entry = self._liked.get(key)
        if entry is None or name not in entry.users:
            return
        entry.users.remove(name)
        if not entry.users:
            del self._liked[key]
        record = self._matches.get(key)
        if record is None:
            return
        if len(entry.users) >= 2:
            record.users = list(entry.users)
            return
        del self._matches[key]
        logger.info("Match on %s in room %s dissolved", record.movie.title, self.code)
        await self.broadcast("matchRemoved", {"guid": record.movie.guid})

    def _lookup(self, guid: str) -> MediaItem | None:
        return self._store.movies.get(guid)

    def _canonical_id(self, guid: str) -> int | None:
        return extract_tmdb_id(guid) or canonical_id_for_movie(self._lookup(guid))

    def _movie_for(self, guid: str, canonical_id: int | None) -> MediaItem:
        movie = self._lookup(guid) or self._store.movies.find_by_canonical_id(canonical_id)
        if movie is None:
            movie = next((item for item in self.movie_list if item.guid == guid), None)
        return movie or MediaItem(guid=guid, tmdb_id=canonical_id)

    def _now_ms(self) -> int:
        return int(self._ctx.clock() * 1000)

    def _spawn(self, coroutine: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for background batch tasks to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _save(self) -> None:
        try:
            await self._store.save()
        except PersistenceError as exc:
            logger.error("Could not persist room %s: %s", self.code, exc)


class SessionRegistry:
    """Process-wide map from room code to its active :class:`Session`."""

    def __init__(self, context: SessionContext):
        self.context = context
        self._sessions: dict[str, Session] = {}
        self._hydration: SingleFlight[None] = SingleFlight("hydration")
        self._hydrated = False

    def __contains__(self, code: str) -> bool:
        return code in self._sessions

    def get(self, code: str) -> Session | None:
        return self._sessions.get(code)

    def get_or_create(self, code: str) -> Session:
        session = self._sessions.get(code)
        if session is None:
            session = Session(code, self.context)
            self._sessions[code] = session
            logger.info("Opened room %s", code)
        return session

    async def release(self, session: Session) -> None:
        """Forget a session once nobody is connected to it."""

        if session.has_active_connections():
            return
        if self._sessions.get(session.code) is session:
            del self._sessions[session.code]
            logger.info("Closed room %s", session.code)
        await session.close()

    def matches_for_user(self, code: str, name: str) -> list[dict[str, Any]] | None:
        session = self._sessions.get(code)
        if session is None:
            return None
        return session.get_existing_matches(name)

    async def ensure_ready(self, timeout: float) -> bool:
        """Wait for the library and backfill stored movies once."""

        if self._hydrated:
            return True
        if not await self.context.library.wait_ready(timeout):
            return False
        await self._hydration.run("library", self._hydrate)
        return True

    async def _hydrate(self) -> None:
        if self._hydrated:
            return
        ctx = self.context
        radarr = ctx.radarr

        def _available(movie: MediaItem) -> bool:
            canonical_id = canonical_id_for_movie(movie)
            if radarr is not None and radarr.has_movie(canonical_id):
                return True
            return ctx.library.contains(movie)

        changed = ctx.store.backfill_movies(_available, library_badge(ctx.settings))
        self._hydrated = True
        if changed:
            try:
                await ctx.store.save()
            except PersistenceError as exc:
                logger.error("Could not persist library backfill: %s", exc)

"""Pydantic models describing rooms, ratings, movies and wire payloads."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from .utils import coerce_float, coerce_int, stable_dumps

DEFAULT_FILTER_KEY = "default"

GENRE_MAP: dict[int, str] = {
    28: "Action",
    12: "Adventure",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    14: "Fantasy",
    36: "History",
    27: "Horror",
    10402: "Music",
    9648: "Mystery",
    10749: "Romance",
    878: "Science Fiction",
    10770: "TV Movie",
    53: "Thriller",
    10752: "War",
    37: "Western",
}
GENRE_IDS_BY_NAME: dict[str, int] = {
    name.casefold(): genre_id for genre_id, name in GENRE_MAP.items()
}


class UserResponse(BaseModel):
    """A single user's verdict on one movie."""

    model_config = ConfigDict(populate_by_name=True)

    guid: str
    wants_to_watch: bool | None = Field(default=None, alias="wantsToWatch")
    canonical_id: int | None = Field(
        default=None,
        alias="tmdbId",
        validation_alias=AliasChoices("tmdbId", "canonicalId", "canonical_id"),
    )

    @field_validator("canonical_id", mode="before")
    @classmethod
    def _coerce_canonical_id(cls, value: object) -> int | None:
        return coerce_int(value)


class User(BaseModel):
    """A room participant, identified by name."""

    name: str
    responses: list[UserResponse] = Field(default_factory=list)

    @field_validator("responses", mode="before")
    @classmethod
    def _drop_unusable_responses(cls, value: object) -> list[Any]:
        if not isinstance(value, list):
            return []
        cleaned: list[Any] = []
        for entry in value:
            if isinstance(entry, UserResponse):
                cleaned.append(entry)
            elif isinstance(entry, dict) and isinstance(entry.get("guid"), str) and entry["guid"]:
                cleaned.append(entry)
        return cleaned


class StreamingService(BaseModel):
    id: int | None = None
    name: str
    logo_path: str | None = None
    type: Literal["subscription", "free"] = "subscription"


class StreamingServices(BaseModel):
    subscription: list[StreamingService] = Field(default_factory=list)
    free: list[StreamingService] = Field(default_factory=list)

    def names(self) -> set[str]:
        return {service.name for service in [*self.subscription, *self.free]}


class MediaItem(BaseModel):
    """Canonical movie record shared by batches, matches and the movie index."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    guid: str
    title: str = ""
    year: int | None = None
    summary: str = ""
    art: str | None = None
    key: str | None = None
    type: str = "movie"
    director: str | None = None
    cast: list[str] = Field(default_factory=list)
    writers: list[str] = Field(default_factory=list)
    genres: list[str] = Field(default_factory=list)
    content_rating: str | None = Field(default=None, alias="contentRating")
    runtime: int | None = None
    rating: str = ""
    rating_imdb: float | None = None
    rating_rt: int | None = None
    rating_tmdb: float | None = None
    streaming_services: StreamingServices = Field(
        default_factory=StreamingServices, alias="streamingServices"
    )
    streaming_link: str | None = Field(default=None, alias="streamingLink")
    tmdb_id: int | None = Field(
        default=None,
        alias="tmdbId",
        validation_alias=AliasChoices("tmdbId", "canonicalId", "tmdb_id"),
    )
    imdb_id: str | None = Field(default=None, alias="imdbId")
    tmdb_poster_path: str | None = Field(default=None, alias="tmdbPosterPath")
    genre_ids: list[int] = Field(default_factory=list)
    vote_count: int = 0
    original_language: str | None = None
    production_countries: list[str] = Field(default_factory=list)

    @field_validator("year", "tmdb_id", "runtime", mode="before")
    @classmethod
    def _coerce_optional_int(cls, value: object) -> int | None:
        return coerce_int(value)

    @field_validator("vote_count", mode="before")
    @classmethod
    def _coerce_vote_count(cls, value: object) -> int:
        return coerce_int(value) or 0

    @field_validator("rating_imdb", "rating_tmdb", mode="before")
    @classmethod
    def _coerce_score(cls, value: object) -> float | None:
        return coerce_float(value)

    @field_validator("rating_rt", mode="before")
    @classmethod
    def _coerce_percentage(cls, value: object) -> int | None:
        number = coerce_float(value)
        return int(number) if number is not None else None

    @field_validator("summary", "rating", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> str:
        return "" if value is None else str(value)

    @field_validator("streaming_services", mode="before")
    @classmethod
    def _default_streaming_services(cls, value: object) -> object:
        return value if value is not None else {}

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON shape shared by the wire protocol and the state file."""

        return self.model_dump(mode="json", by_alias=True)


class MatchRecord(BaseModel):
    """Two or more users liked the same movie."""

    model_config = ConfigDict(populate_by_name=True)

    movie: MediaItem
    users: list[str]
    created_at: int = Field(alias="createdAt")

    def to_payload(self) -> dict[str, Any]:
        return {
            "movie": self.movie.to_payload(),
            "users": list(self.users),
            "createdAt": self.created_at,
        }


class DiscoverFilters(BaseModel):
    """Client supplied filter set for a batch request."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    year_min: int | None = Field(default=None, alias="yearMin")
    year_max: int | None = Field(default=None, alias="yearMax")
    genres: list[int | str] = Field(default_factory=list)
    content_ratings: list[str] = Field(default_factory=list, alias="contentRatings")
    imdb_rating: float | None = Field(default=None, alias="imdbRating")
    tmdb_rating: float | None = Field(default=None, alias="tmdbRating")
    rt_rating: float | None = Field(default=None, alias="rtRating")
    languages: list[str] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=list)
    runtime_min: int | None = Field(default=None, alias="runtimeMin")
    runtime_max: int | None = Field(default=None, alias="runtimeMax")
    vote_count: int | None = Field(default=None, alias="voteCount")
    sort_by: str | None = Field(default=None, alias="sortBy")
    show_plex_only: bool = Field(
        default=False,
        alias="showPlexOnly",
        validation_alias=AliasChoices("showPlexOnly", "libraryOnly", "show_plex_only"),
    )
    streaming_services: list[str] = Field(
        default_factory=list, alias="streamingServices"
    )

    @field_validator(
        "genres",
        "content_ratings",
        "languages",
        "countries",
        "streaming_services",
        mode="before",
    )
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return [] if value is None else value

    def genre_names(self) -> list[str]:
        """Return lower-cased genre names, translating numeric TMDb ids."""

        names: list[str] = []
        for genre in self.genres:
            genre_id = coerce_int(genre)
            if genre_id is not None and genre_id in GENRE_MAP:
                names.append(GENRE_MAP[genre_id].casefold())
            else:
                names.append(str(genre).casefold())
        return names

    def genre_ids(self) -> list[int]:
        ids: list[int] = []
        for genre in self.genres:
            genre_id = coerce_int(genre)
            if genre_id is None:
                genre_id = GENRE_IDS_BY_NAME.get(str(genre).casefold())
            if genre_id is not None and genre_id not in ids:
                ids.append(genre_id)
        return ids

    def cache_key(self) -> str:
        """Return a stable key shared by every equivalent filter set.

        ``showPlexOnly`` does not influence discovery results and is left out.
        """

        data = self.model_dump(by_alias=True, exclude={"show_plex_only"})
        normalised: dict[str, Any] = {}
        for key, value in data.items():
            if value is None or value == []:
                continue
            if isinstance(value, list):
                value = sorted(value, key=str)
            normalised[key] = value
        if not normalised:
            return DEFAULT_FILTER_KEY
        return stable_dumps(normalised)


class ClientMessage(BaseModel):
    """Envelope of every message a client sends."""

    type: str
    payload: Any = None


class LoginPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    room_code: str = Field(alias="roomCode", min_length=1)
    access_password: str | None = Field(
        default=None,
        alias="accessPassword",
        validation_alias=AliasChoices("accessPassword", "sharedSecret", "password"),
    )


class ResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    guid: str = Field(min_length=1)
    wants_to_watch: bool | None = Field(default=None, alias="wantsToWatch")


class RemoveMatchPayload(BaseModel):
    guid: str = Field(min_length=1)
    action: Literal["seen", "pass"] = "seen"


class NextBatchPayload(BaseModel):
    filters: DiscoverFilters = Field(default_factory=DiscoverFilters)

    @field_validator("filters", mode="before")
    @classmethod
    def _default_filters(cls, value: object) -> object:
        return value if value is not None else {}


class PersistedRoom(BaseModel):
    users: list[User] = Field(default_factory=list)

    @field_validator("users", mode="before")
    @classmethod
    def _normalise_users(cls, value: object) -> list[Any]:
        """Accept the legacy ``{name: {responses: [...]}}`` shape."""

        if value is None:
            return []
        if isinstance(value, dict):
            users: list[Any] = []
            for name, entry in value.items():
                if isinstance(entry, dict):
                    users.append({**entry, "name": entry.get("name") or name})
                elif isinstance(entry, list):
                    users.append({"name": name, "responses": entry})
            return users
        return value


class PersistedState(BaseModel):
    """Root of the JSON state file."""

    model_config = ConfigDict(populate_by_name=True)

    rooms: dict[str, PersistedRoom] = Field(default_factory=dict)
    movie_index: dict[str, MediaItem] = Field(default_factory=dict, alias="movieIndex")

    @field_validator("movie_index", mode="before")
    @classmethod
    def _fill_missing_guids(cls, value: object) -> object:
        if not isinstance(value, dict):
            return {}
        cleaned: dict[str, Any] = {}
        for guid, movie in value.items():
            if isinstance(movie, dict):
                cleaned[guid] = {**movie, "guid": movie.get("guid") or guid}
            elif isinstance(movie, MediaItem):
                cleaned[guid] = movie
        return cleaned

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

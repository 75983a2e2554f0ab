"""Application configuration models."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Iterable, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


STATE_FILENAME = "session-state.json"
BACKUP_FILENAME = "session-state.backup.json"
POSTER_CACHE_DIRNAME = "poster-cache"


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="SwipeMatch", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=8000, alias="PORT")
    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    access_password: str | None = Field(
        default=None,
        alias="ACCESS_PASSWORD",
        validation_alias=AliasChoices("ACCESS_PASSWORD", "SHARED_SECRET"),
    )
    movie_batch_size: int = Field(default=20, alias="MOVIE_BATCH_SIZE", ge=1, le=100)
    data_dir: Path = Field(default=Path("./data"), alias="DATA_DIR")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: str = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_url: str = Field(
        default="https://image.tmdb.org/t/p", alias="TMDB_IMAGE_URL"
    )
    discover_region: str = Field(default="US", alias="DISCOVER_REGION")
    discover_languages: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("en",), alias="DISCOVER_LANGUAGES"
    )
    discover_year_min: int = Field(default=1970, alias="DISCOVER_YEAR_MIN")

    omdb_api_key: str | None = Field(default=None, alias="OMDB_API_KEY")
    omdb_api_url: str = Field(default="https://www.omdbapi.com", alias="OMDB_API_URL")

    plex_url: str | None = Field(default=None, alias="PLEX_URL")
    plex_token: str | None = Field(default=None, alias="PLEX_TOKEN")
    plex_library_name: str = Field(
        default="My Plex Library", alias="PLEX_LIBRARY_NAME"
    )
    library_filter: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), alias="LIBRARY_FILTER"
    )

    radarr_url: str | None = Field(default=None, alias="RADARR_URL")
    radarr_api_key: str | None = Field(default=None, alias="RADARR_API_KEY")
    jellyseerr_url: str | None = Field(default=None, alias="JELLYSEERR_URL")
    jellyseerr_api_key: str | None = Field(default=None, alias="JELLYSEERR_API_KEY")
    overseerr_url: str | None = Field(default=None, alias="OVERSEERR_URL")
    overseerr_api_key: str | None = Field(default=None, alias="OVERSEERR_API_KEY")

    discover_default_pages: int = Field(
        default=10, alias="DISCOVER_CACHE_DEFAULT_PAGES", ge=1, le=100
    )
    discover_filtered_pages: int = Field(
        default=2, alias="DISCOVER_CACHE_FILTERED_PAGES", ge=1, le=100
    )
    discover_cache_ttl_seconds: int = Field(
        default=86_400, alias="DISCOVER_CACHE_TTL", ge=60
    )
    discover_refresh_timeout_seconds: float = Field(
        default=30.0, alias="DISCOVER_REFRESH_TIMEOUT", gt=0
    )
    library_refresh_interval_seconds: int = Field(
        default=3_600, alias="LIBRARY_REFRESH_INTERVAL", ge=60
    )
    login_ready_timeout_seconds: float = Field(
        default=10.0, alias="LOGIN_READY_TIMEOUT", ge=0
    )
    poster_cache_max_mb: int = Field(default=500, alias="POSTER_CACHE_MAX_MB", ge=1)
    tmdb_rate_burst: int = Field(default=10, alias="TMDB_RATE_BURST", ge=1)
    tmdb_rate_per_second: float = Field(default=3.5, alias="TMDB_RATE_PER_SECOND", gt=0)
    omdb_rate_burst: int = Field(default=5, alias="OMDB_RATE_BURST", ge=1)
    omdb_rate_per_second: float = Field(default=1.0, alias="OMDB_RATE_PER_SECOND", gt=0)

    @field_validator(
        "tmdb_api_url",
        "tmdb_image_url",
        "omdb_api_url",
        "plex_url",
        "radarr_url",
        "jellyseerr_url",
        "overseerr_url",
        mode="before",
    )
    @classmethod
    def _strip_trailing_slash(cls, value: object) -> object:
        """Drop trailing slashes so paths can be appended verbatim."""

        if isinstance(value, str):
            cleaned = value.strip().rstrip("/")
            return cleaned or None
        return value

    @field_validator("discover_languages", "library_filter", mode="before")
    @classmethod
    def _parse_list(cls, value: object) -> tuple[str, ...]:
        """Accept comma separated strings as well as iterables."""

        if value is None:
            return ()
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("Expected a comma separated string or a list of strings")
        return tuple(entry for entry in raw_values if entry)

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: object) -> str:
        level = str(value or "INFO").strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def state_path(self) -> Path:
        return self.data_dir / STATE_FILENAME

    @property
    def backup_path(self) -> Path:
        return self.data_dir / BACKUP_FILENAME

    @property
    def poster_cache_dir(self) -> Path:
        return self.data_dir / POSTER_CACHE_DIRNAME

    @property
    def poster_cache_max_bytes(self) -> int:
        return self.poster_cache_max_mb * 1024 * 1024

    @property
    def plex_configured(self) -> bool:
        return bool(self.plex_url and self.plex_token)

    @property
    def radarr_configured(self) -> bool:
        return bool(self.radarr_url and self.radarr_api_key)

    @property
    def request_service(self) -> tuple[str, str, str] | None:
        """Return ``(name, url, api_key)`` for the preferred request service."""

        if self.jellyseerr_url and self.jellyseerr_api_key:
            return "jellyseerr", self.jellyseerr_url, self.jellyseerr_api_key
        if self.overseerr_url and self.overseerr_api_key:
            return "overseerr", self.overseerr_url, self.overseerr_api_key
        return None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()

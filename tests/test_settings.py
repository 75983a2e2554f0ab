"""Configuration settings behaviour tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from app.config import Settings


def test_defaults_match_documented_values() -> None:
    settings = Settings(_env_file=None)

    assert settings.movie_batch_size == 20
    assert settings.discover_default_pages == 10
    assert settings.discover_cache_ttl_seconds == 86_400
    assert settings.discover_languages == ("en",)
    assert settings.request_service is None
    assert settings.plex_configured is False


def test_comma_separated_lists_are_parsed() -> None:
    settings = Settings(
        _env_file=None, DISCOVER_LANGUAGES="en, fr,,de", LIBRARY_FILTER="Movies,Kids"
    )

    assert settings.discover_languages == ("en", "fr", "de")
    assert settings.library_filter == ("Movies", "Kids")


def test_shared_secret_is_accepted_as_access_password(monkeypatch) -> None:
    monkeypatch.setenv("SHARED_SECRET", "hunter2")

    settings = Settings(_env_file=None)

    assert settings.access_password == "hunter2"


def test_urls_drop_trailing_slashes_and_blank_values() -> None:
    settings = Settings(_env_file=None, PLEX_URL="http://plex.local:32400/", RADARR_URL="  ")

    assert settings.plex_url == "http://plex.local:32400"
    assert settings.radarr_url is None


def test_request_service_prefers_jellyseerr() -> None:
    settings = Settings(
        _env_file=None,
        JELLYSEERR_URL="http://jellyseerr:5055",
        JELLYSEERR_API_KEY="j-key",
        OVERSEERR_URL="http://overseerr:5055",
        OVERSEERR_API_KEY="o-key",
    )

    assert settings.request_service == ("jellyseerr", "http://jellyseerr:5055", "j-key")


def test_data_paths_follow_data_dir(tmp_path: Path) -> None:
    settings = Settings(_env_file=None, DATA_DIR=str(tmp_path), POSTER_CACHE_MAX_MB=2)

    assert settings.state_path == tmp_path / "session-state.json"
    assert settings.backup_path == tmp_path / "session-state.backup.json"
    assert settings.poster_cache_dir == tmp_path / "poster-cache"
    assert settings.poster_cache_max_bytes == 2 * 1024 * 1024


def test_invalid_log_level_raises() -> None:
    with pytest.raises(ValueError, match="Unknown log level"):
        Settings(_env_file=None, LOG_LEVEL="chatty")

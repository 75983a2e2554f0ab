"""Tests for the file backed state store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from app.errors import PersistenceError
from app.models import MediaItem, StreamingService, UserResponse
from app.persistence import StateStore


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.mark.anyio("asyncio")
async def test_save_and_reload_round_trip(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    alice = store.ensure_user("AB12", "Alice")
    alice.responses.append(UserResponse(guid="tmdb://27205", wants_to_watch=True))
    store.movies.update(MediaItem(guid="tmdb://27205", title="Inception", year=2010))

    await store.save()

    reloaded = StateStore(tmp_path / "state.json")
    reloaded.load()
    (user,) = reloaded.room_users("AB12")
    assert user.name == "Alice"
    assert user.responses[0].wants_to_watch is True
    assert user.responses[0].canonical_id == 27205
    assert reloaded.movies.get("tmdb://27205").title == "Inception"
    assert reloaded.movies.find_by_canonical_id(27205).guid == "tmdb://27205"


@pytest.mark.anyio("asyncio")
async def test_second_save_keeps_previous_file_as_backup(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    store.ensure_user("ROOM", "Alice")
    await store.save()
    store.ensure_user("ROOM", "Bob")
    await store.save()

    backup = json.loads(store.backup_path.read_text(encoding="utf-8"))
    current = json.loads(store.path.read_text(encoding="utf-8"))
    assert [user["name"] for user in backup["rooms"]["ROOM"]["users"]] == ["Alice"]
    assert [user["name"] for user in current["rooms"]["ROOM"]["users"]] == ["Alice", "Bob"]
    assert not list(tmp_path.glob("*.tmp"))


def test_load_falls_back_to_backup_when_main_file_is_corrupt(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    store.path.write_text("{truncated", encoding="utf-8")
    store.backup_path.write_text(
        json.dumps({"rooms": {"ROOM": {"users": [{"name": "Alice", "responses": []}]}}}),
        encoding="utf-8",
    )

    store.load()

    assert [user.name for user in store.room_users("ROOM")] == ["Alice"]


def test_load_without_files_starts_empty(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "missing.json")

    state = store.load()

    assert state.rooms == {}
    assert len(store.movies) == 0


def test_load_merges_duplicate_responses(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text(
        json.dumps(
            {
                "rooms": {
                    "ROOM": {
                        "users": [
                            {
                                "name": "Alice",
                                "responses": [
                                    {"guid": "tmdb://27205", "wantsToWatch": True},
                                    {"guid": "plex://movie/9", "wantsToWatch": False},
                                ],
                            }
                        ]
                    }
                },
                "movieIndex": {"plex://movie/9": {"title": "Inception", "tmdbId": 27205}},
            }
        ),
        encoding="utf-8",
    )
    store = StateStore(path)

    store.load()

    (alice,) = store.room_users("ROOM")
    assert [(r.guid, r.wants_to_watch) for r in alice.responses] == [("plex://movie/9", False)]


@pytest.mark.anyio("asyncio")
async def test_failed_write_restores_previous_file(tmp_path: Path, monkeypatch) -> None:
    store = StateStore(tmp_path / "state.json")
    store.ensure_user("ROOM", "Alice")
    await store.save()
    original = store.path.read_bytes()

    def _broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("app.persistence.os.replace", _broken_replace)
    store.ensure_user("ROOM", "Bob")

    with pytest.raises(PersistenceError):
        await store.save()

    assert store.path.read_bytes() == original
    assert not list(tmp_path.glob(".*.tmp"))


def test_backfill_sets_ids_and_library_badge(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    store.movies.update(MediaItem(guid="tmdb://603", title="The Matrix"))
    store.movies.update(MediaItem(guid="tmdb://604", title="The Matrix Reloaded"))
    badge = StreamingService(id=0, name="My Plex Library")

    changed = store.backfill_movies(lambda movie: movie.guid == "tmdb://603", badge)

    assert changed is True
    matrix = store.movies.get("tmdb://603")
    assert matrix.tmdb_id == 603
    assert matrix.streaming_services.names() == {"My Plex Library"}
    assert store.movies.get("tmdb://604").streaming_services.names() == set()
    assert store.backfill_movies(lambda movie: True, badge) is True
    assert store.backfill_movies(lambda movie: True, badge) is False

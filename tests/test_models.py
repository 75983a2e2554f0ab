from app.models import (
    DiscoverFilters,
    LoginPayload,
    MediaItem,
    NextBatchPayload,
    PersistedState,
    User,
)


def test_filters_cache_key_ignores_order_and_library_flag():
    first = DiscoverFilters.model_validate(
        {"genres": [878, 28], "yearMin": 1990, "showPlexOnly": True, "languages": []}
    )
    second = DiscoverFilters.model_validate({"yearMin": 1990, "genres": [28, 878]})

    assert first.cache_key() == second.cache_key()
    assert first.cache_key() != "default"


def test_filters_default_cache_key():
    assert DiscoverFilters().cache_key() == "default"
    assert DiscoverFilters(libraryOnly=True).cache_key() == "default"
    assert NextBatchPayload.model_validate({"filters": None}).filters.cache_key() == "default"


def test_filters_translate_genres_both_ways():
    filters = DiscoverFilters(genres=[878, "Comedy", "unknown"])

    assert filters.genre_names() == ["science fiction", "comedy", "unknown"]
    assert filters.genre_ids() == [878, 35]


def test_media_item_coerces_and_serialises_with_aliases():
    movie = MediaItem.model_validate(
        {
            "guid": "tmdb://27205",
            "title": "Inception",
            "year": "2010",
            "tmdbId": "27205",
            "rating_rt": "87%",
            "contentRating": "PG-13",
            "streamingServices": None,
            "customField": "kept",
        }
    )

    payload = movie.to_payload()
    assert movie.year == 2010
    assert payload["tmdbId"] == 27205
    assert payload["rating_rt"] == 87
    assert payload["contentRating"] == "PG-13"
    assert payload["streamingServices"] == {"subscription": [], "free": []}
    assert payload["customField"] == "kept"


def test_user_drops_responses_without_guid():
    user = User.model_validate(
        {
            "name": "Alice",
            "responses": [{"guid": "tmdb://1", "wantsToWatch": True}, {"wantsToWatch": False}],
        }
    )

    assert [response.guid for response in user.responses] == ["tmdb://1"]


def test_login_accepts_shared_secret_alias():
    login = LoginPayload.model_validate(
        {"name": "Alice", "roomCode": "AB12", "sharedSecret": "hunter2"}
    )

    assert login.access_password == "hunter2"


def test_persisted_state_reads_legacy_room_shape():
    state = PersistedState.model_validate(
        {
            "rooms": {
                "AB12": {
                    "users": {
                        "Alice": {"responses": [{"guid": "tmdb://1", "wantsToWatch": True}]},
                        "Bob": [{"guid": "tmdb://1", "wantsToWatch": None, "tmdbId": 1}],
                    }
                }
            },
            "movieIndex": {"tmdb://1": {"title": "Movie"}},
        }
    )

    users = state.rooms["AB12"].users
    assert [user.name for user in users] == ["Alice", "Bob"]
    assert users[1].responses[0].canonical_id == 1
    assert state.movie_index["tmdb://1"].guid == "tmdb://1"

    payload = state.to_payload()
    assert payload["rooms"]["AB12"]["users"][0]["name"] == "Alice"
    assert payload["movieIndex"]["tmdb://1"]["title"] == "Movie"

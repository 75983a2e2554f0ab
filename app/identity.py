"""Identifier parsing and reconciliation of the same movie across guid schemes.

Library items arrive as ``plex://movie/<hash>``, discovery results as
``tmdb://<id>``, and older library agents as
``com.plexapp.agents.themoviedb://<id>?lang=en``. Everything that needs to
know whether two references point at the same title goes through the helpers
in this module.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Mapping

from .models import MediaItem, UserResponse

MovieLookup = Callable[[str], MediaItem | None]

_TMDB_GUID_PATTERNS = (
    re.compile(r"^tmdb://(?:[^/?]+/)?(\d+)"),
    re.compile(r"^themoviedb://(?:[^/?]+/)?(\d+)"),
    re.compile(r"^com\.plexapp\.agents\.themoviedb://(?:[^/?]+/)?(\d+)"),
    re.compile(r"themoviedb\.org/movie/(\d+)"),
)
_IMDB_GUID_PATTERNS = (
    re.compile(r"^imdb://(tt\d+)"),
    re.compile(r"^com\.plexapp\.agents\.imdb://(tt\d+)"),
)


def extract_tmdb_id(guid: str | None) -> int | None:
    """Return the TMDb id encoded in ``guid`` or ``None``."""

    if not guid:
        return None
    for pattern in _TMDB_GUID_PATTERNS:
        match = pattern.search(guid)
        if match:
            return int(match.group(1))
    return None


def extract_imdb_id(guid: str | None) -> str | None:
    if not guid:
        return None
    for pattern in _IMDB_GUID_PATTERNS:
        match = pattern.search(guid)
        if match:
            return match.group(1)
    return None


def ids_from_guid_list(
    entries: Iterable[Mapping[str, Any]] | None,
) -> tuple[int | None, str | None]:
    """Return ``(tmdb_id, imdb_id)`` from a library item's external guid list."""

    tmdb_id: int | None = None
    imdb_id: str | None = None
    for entry in entries or ():
        value = entry.get("id") if isinstance(entry, Mapping) else None
        if not isinstance(value, str):
            continue
        if tmdb_id is None:
            tmdb_id = extract_tmdb_id(value)
        if imdb_id is None:
            imdb_id = extract_imdb_id(value)
    return tmdb_id, imdb_id


def canonical_id_for_movie(movie: MediaItem | None) -> int | None:
    """Explicit id first, then the guid, then the external link."""

    if movie is None:
        return None
    if movie.tmdb_id is not None:
        return movie.tmdb_id
    return extract_tmdb_id(movie.guid) or extract_tmdb_id(movie.streaming_link)


def resolve_response_id(response: UserResponse, lookup: MovieLookup) -> int | None:
    if response.canonical_id is not None:
        return response.canonical_id
    from_guid = extract_tmdb_id(response.guid)
    if from_guid is not None:
        return from_guid
    return canonical_id_for_movie(lookup(response.guid))


def pick_best_guid(candidate: str, fallback: str, lookup: MovieLookup) -> str:
    """Prefer whichever guid currently resolves to a known movie."""

    if lookup(candidate) is not None:
        return candidate
    if lookup(fallback) is not None:
        return fallback
    return candidate or fallback


def match_key(guid: str, canonical_id: int | None) -> str:
    """Key under which likes for the same movie are grouped."""

    if canonical_id is not None:
        return f"tmdb:{canonical_id}"
    return f"guid:{guid}"


def dedupe_responses(
    responses: list[UserResponse], lookup: MovieLookup
) -> tuple[list[UserResponse], bool]:
    """Merge responses that refer to the same movie.

    A later entry wins on ``wants_to_watch``. The kept guid is the one that
    resolves to a known movie and a known canonical id is never dropped.
    Returns the merged list in first-seen order and whether anything changed.
    """

    merged: list[UserResponse] = []
    by_guid: dict[str, UserResponse] = {}
    by_canonical: dict[int, UserResponse] = {}
    changed = False

    for response in responses:
        canonical_id = resolve_response_id(response, lookup)
        existing = by_guid.get(response.guid)
        if existing is None and canonical_id is not None:
            existing = by_canonical.get(canonical_id)

        if existing is None:
            entry = response.model_copy()
            if canonical_id is not None and entry.canonical_id is None:
                entry.canonical_id = canonical_id
                changed = True
            merged.append(entry)
            by_guid[entry.guid] = entry
            if canonical_id is not None:
                by_canonical[canonical_id] = entry
            continue

        changed = True
        existing.wants_to_watch = response.wants_to_watch
        best_guid = pick_best_guid(response.guid, existing.guid, lookup)
        if best_guid != existing.guid:
            existing.guid = best_guid
            by_guid[best_guid] = existing
        by_guid.setdefault(response.guid, existing)
        if existing.canonical_id is None and canonical_id is not None:
            existing.canonical_id = canonical_id
        if existing.canonical_id is not None:
            by_canonical[existing.canonical_id] = existing

    return merged, changed

"""Utility helpers for the SwipeMatch service."""

from __future__ import annotations

import json
import re
import unicodedata
from typing import Any, Mapping


NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower()


def normalize_title(value: str | None) -> str:
    """Return a comparison key for titles that ignores punctuation and case."""

    if not value:
        return ""
    return slugify(value).replace("-", "")


def coerce_int(value: Any) -> int | None:
    """Convert numeric-looking values into ``int`` or return ``None``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip().rstrip("%"))
    except (TypeError, ValueError):
        return None
    return number


def stable_dumps(data: Mapping[str, Any]) -> str:
    """Serialise mappings with sorted keys so equal data yields equal text."""

    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def safe_filename(value: str) -> str:
    """Replace every non-alphanumeric character with an underscore."""

    return NON_ALNUM_RE.sub("_", value)

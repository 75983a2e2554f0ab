"""Exceptions shared across the matching engine."""

from __future__ import annotations


class NoMoreCandidatesError(Exception):
    """Raised when a candidate source has nothing left for the given filters."""


class PersistenceError(Exception):
    """Raised when the state file could not be written.

    The previous file has already been restored from backup by the time this
    propagates, so callers only need to log it.
    """


class ProtocolError(ValueError):
    """Raised for malformed client messages."""

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw

"""Submit movie requests to Jellyseerr or Overseerr."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

STATUS_AVAILABLE = 5
STATUS_PENDING = {2, 3}


@dataclass(slots=True)
class RequestResult:
    success: bool
    message: str
    request_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.request_id is not None:
            payload["requestId"] = self.request_id
        return payload


class RequestServiceClient:
    """Both services share the same v1 API, so one client covers either."""

    def __init__(self, name: str, api_key: str, http_client: httpx.AsyncClient):
        self.name = name
        self._api_key = api_key
        self._client = http_client

    def _headers(self) -> dict[str, str]:
        return {"X-Api-Key": self._api_key, "Content-Type": "application/json"}

    async def request_movie(self, tmdb_id: int) -> RequestResult:
        """Ask the request service to add a movie."""

        body = {"mediaType": "movie", "mediaId": tmdb_id, "is4k": False}
        try:
            response = await self._client.post(
                "/api/v1/request", json=body, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            logger.warning("%s request for %s failed: %s", self.name, tmdb_id, exc)
            return RequestResult(False, f"Could not reach {self.name}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = None
            logger.warning(
                "%s rejected request for %s: %s", self.name, tmdb_id, response.text
            )
            return RequestResult(False, detail or f"{self.name} returned {response.status_code}")

        payload = response.json()
        logger.info("Requested movie %s via %s", tmdb_id, self.name)
        return RequestResult(True, "Request submitted", payload.get("id"))

    async def media_status(self, tmdb_id: int) -> str | None:
        """Return ``available``, ``pending`` or ``None`` for unknown movies."""

        try:
            response = await self._client.get(
                f"/api/v1/movie/{tmdb_id}", headers=self._headers()
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("%s status lookup for %s failed: %s", self.name, tmdb_id, exc)
            return None

        status = (payload.get("mediaInfo") or {}).get("status")
        if status == STATUS_AVAILABLE:
            return "available"
        if status in STATUS_PENDING:
            return "pending"
        return None

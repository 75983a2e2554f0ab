"""Entry point for the FastAPI-powered swipe matching server."""

from __future__ import annotations

import logging
import random
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import settings
from .discovery import DiscoveryCache
from .gateway import serve_websocket
from .persistence import StateStore
from .ratelimit import RateLimiter
from .services.enrichment import Enricher
from .services.omdb import OMDbClient
from .services.plex import PlexLibrary
from .services.poster_cache import PosterCache
from .services.radarr import RadarrClient
from .services.request_service import RequestServiceClient
from .services.tmdb import TMDBClient
from .session import SessionContext, SessionRegistry

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app: FastAPI


class MovieRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tmdb_id: int = Field(alias="tmdbId", gt=0)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()

    async def _client(base_url: str, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return await exit_stack.enter_async_context(
            httpx.AsyncClient(base_url=base_url, timeout=timeout)
        )

    tmdb: TMDBClient | None = None
    if settings.tmdb_api_key:
        tmdb = TMDBClient(
            settings,
            await _client(settings.tmdb_api_url, httpx.Timeout(15.0, connect=5.0)),
            RateLimiter("TMDB", settings.tmdb_rate_burst, settings.tmdb_rate_per_second),
        )
    else:
        logger.warning("TMDB_API_KEY is not set; only library movies will be offered")

    omdb: OMDbClient | None = None
    if settings.omdb_api_key:
        omdb = OMDbClient(
            settings,
            await _client(settings.omdb_api_url, httpx.Timeout(10.0, connect=5.0)),
            RateLimiter("OMDb", settings.omdb_rate_burst, settings.omdb_rate_per_second),
        )

    plex_http = None
    if settings.plex_configured:
        plex_http = await _client(
            settings.plex_url or "", httpx.Timeout(60.0, connect=10.0)
        )
    radarr_http = None
    if settings.radarr_configured:
        radarr_http = await _client(
            settings.radarr_url or "", httpx.Timeout(20.0, connect=5.0)
        )
    request_service: RequestServiceClient | None = None
    if settings.request_service is not None:
        name, url, api_key = settings.request_service
        request_service = RequestServiceClient(
            name, api_key, await _client(url, httpx.Timeout(15.0, connect=5.0))
        )
    image_http = await _client(settings.tmdb_image_url, httpx.Timeout(15.0, connect=5.0))

    store = StateStore(settings.state_path, settings.backup_path)
    store.load()
    posters = PosterCache(
        settings.poster_cache_dir, image_http, max_bytes=settings.poster_cache_max_bytes
    )
    posters.load()

    rng = random.Random()
    library = PlexLibrary(settings, plex_http, rng=rng)
    radarr = RadarrClient(settings, radarr_http)
    discovery: DiscoveryCache | None = None
    if tmdb is not None:
        discovery = DiscoveryCache(
            tmdb.discover_page,
            ttl_seconds=settings.discover_cache_ttl_seconds,
            default_pages=settings.discover_default_pages,
            filtered_pages=settings.discover_filtered_pages,
            refresh_timeout=settings.discover_refresh_timeout_seconds,
        )
    enricher = Enricher(tmdb, omdb, region=settings.discover_region) if (tmdb or omdb) else None

    registry = SessionRegistry(
        SessionContext(
            settings=settings,
            store=store,
            library=library,
            posters=posters,
            discovery=discovery,
            tmdb=tmdb,
            enricher=enricher,
            radarr=radarr,
            rng=rng,
        )
    )

    fastapi_app.state.registry = registry
    fastapi_app.state.posters = posters
    fastapi_app.state.request_service = request_service

    await library.start()
    await radarr.start()
    if discovery is not None:
        await discovery.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        if discovery is not None:
            await discovery.stop()
        await radarr.stop()
        await library.stop()
        await posters.close()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Swipe through movies together and find the ones everyone wants to watch",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_registry(app: FastAPI) -> SessionRegistry:
    registry = getattr(app.state, "registry", None)
    if not isinstance(registry, SessionRegistry):
        raise RuntimeError("Session registry not initialised")
    return registry


def get_poster_cache(app: FastAPI) -> PosterCache:
    posters = getattr(app.state, "posters", None)
    if not isinstance(posters, PosterCache):
        raise RuntimeError("Poster cache not initialised")
    return posters


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await serve_websocket(websocket, get_registry(fastapi_app))

    @fastapi_app.get("/api/matches")
    async def matches_endpoint(
        code: str | None = None, user: str | None = None
    ) -> dict[str, Any]:
        if not code or not user:
            raise HTTPException(
                status_code=400, detail="Both code and user query parameters are required"
            )
        matches = get_registry(fastapi_app).matches_for_user(code, user)
        if matches is None:
            raise HTTPException(status_code=404, detail="Room is not active")
        return {"matches": matches}

    @fastapi_app.post("/api/request")
    async def request_movie_endpoint(request: Request) -> JSONResponse:
        service: RequestServiceClient | None = getattr(
            fastapi_app.state, "request_service", None
        )
        if service is None:
            raise HTTPException(status_code=503, detail="No request service configured")
        try:
            body = MovieRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail="A numeric tmdbId is required") from exc
        result = await service.request_movie(body.tmdb_id)
        return JSONResponse(result.to_payload(), status_code=200 if result.success else 502)

    @fastapi_app.get("/api/check-request-status")
    async def request_status_endpoint(
        tmdb_id: str | None = Query(default=None, alias="tmdbId"),
    ) -> dict[str, bool]:
        service: RequestServiceClient | None = getattr(
            fastapi_app.state, "request_service", None
        )
        if service is None:
            raise HTTPException(status_code=503, detail="No request service configured")
        if not tmdb_id or not tmdb_id.isdigit():
            raise HTTPException(status_code=400, detail="A numeric tmdbId is required")
        status = await service.media_status(int(tmdb_id))
        return {"available": status == "available", "pending": status == "pending"}

    @fastapi_app.get("/tmdb-poster/{poster_path:path}")
    async def poster_proxy(poster_path: str) -> Response:
        posters = get_poster_cache(fastapi_app)
        cached = posters.cached_url(poster_path)
        if cached is not None:
            file_path = posters.file_for(cached.rsplit("/", 1)[-1])
            if file_path is not None:
                return FileResponse(file_path, media_type="image/jpeg")
        data = await posters.fetch_upstream(poster_path)
        if data is None:
            raise HTTPException(status_code=404, detail="Poster not found")
        await posters.store(poster_path, "tmdb", data)
        return Response(
            content=data,
            media_type="image/jpeg",
            headers={"Cache-Control": "public, max-age=86400"},
        )

    @fastapi_app.get("/cached-poster/{filename}")
    async def cached_poster(filename: str) -> FileResponse:
        file_path = get_poster_cache(fastapi_app).file_for(filename)
        if file_path is None:
            raise HTTPException(status_code=404, detail="Poster not cached")
        return FileResponse(
            file_path,
            media_type="image/jpeg",
            headers={"Cache-Control": "public, max-age=604800"},
        )


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )

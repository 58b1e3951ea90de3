"""Jikan proxy routes — GET /api/{endpoint} and the capability listing."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response

from services.proxy import STATS_ENDPOINT, ProxyService

logger = logging.getLogger(__name__)

router = APIRouter()

SOURCE = "Jikan API Proxy"
VERSION = "1.1.0"

# Only the static listing and cacheable endpoints may be stored downstream
PUBLIC_CACHE_CONTROL = "public, max-age=3600"

ENDPOINT_DOCS = {
    "/api/anime": "Search anime or get one by ID with ?id=123",
    "/api/manga": "Search manga or get one by ID with ?id=123",
    "/api/seasons": "Anime by season with ?year=2024&season=winter, or the season list",
    "/api/seasons?now=true": "Anime airing this season",
    "/api/top": "Top anime/manga with ?type=anime|manga",
    "/api/schedule": "Airing schedule with ?day=monday",
    "/api/genres": "Genres with ?type=anime|manga",
    "/api/characters": "Search characters or get one by ID with ?id=123",
    "/api/people": "Search people or get one by ID with ?id=123",
    "/api/random": "Random anime/manga with ?type=anime|manga (never cached)",
    "/api/reviews": "Recent reviews with ?type=anime|manga",
    "/api/recommendations": "Recent recommendations with ?type=anime|manga",
    "/api/studios": "Studio list or a studio by ID with ?id=123",
    "/api/stats": "Server statistics",
}


def get_proxy(request: Request) -> ProxyService:
    return request.app.state.proxy


@router.get("/")
@router.get("/api")
async def index(response: Response) -> dict:
    """Static capability listing, no upstream or cache access."""
    response.headers["Cache-Control"] = PUBLIC_CACHE_CONTROL
    return {
        "message": "Jikan API Proxy with High Performance Caching",
        "version": VERSION,
        "endpoints": ENDPOINT_DOCS,
        "documentation": "See /api/stats for server performance",
    }


@router.get("/api/{endpoint}")
@router.get("/api/{endpoint}/{rest:path}")
async def proxy_endpoint(
    endpoint: str,
    request: Request,
    response: Response,
    proxy: ProxyService = Depends(get_proxy),
) -> dict:
    """Serve a Jikan endpoint from the cache, or fetch it under the rate limit."""
    name = endpoint.lower()
    if name == STATS_ENDPOINT:
        return proxy.stats_snapshot()

    params = request.query_params.multi_items()
    payload, cached = await proxy.fetch(name, params)
    if proxy.resolver.resolve(name, params).cacheable:
        response.headers["Cache-Control"] = PUBLIC_CACHE_CONTROL

    body = {
        "source": SOURCE,
        "cached": cached,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoint": name,
    }
    if isinstance(payload, dict):
        body.update(payload)
    else:
        body["data"] = payload
    return body


@router.get("/{path:path}", include_in_schema=False)
async def fallback(response: Response) -> dict:
    """Anything outside ``/api/...`` gets the capability listing."""
    return await index(response)

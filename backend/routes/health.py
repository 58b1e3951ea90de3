"""Health and readiness check routes."""

import logging

from fastapi import APIRouter, Depends, Request

from routes.api import get_proxy
from services.proxy import ProxyService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/ready")
async def ready(request: Request) -> dict:
    """Lightweight readiness check — no external calls."""
    return {"status": "ok", "service": "jikan-proxy", "commit": request.app.state.settings.git_sha}


@router.get("/health")
async def health(request: Request, proxy: ProxyService = Depends(get_proxy)) -> dict:
    """Cache and dispatcher state. Never calls Jikan, so it costs no rate budget."""
    return {
        "status": "ok",
        "service": "jikan-proxy",
        "commit": request.app.state.settings.git_sha,
        "upstream": proxy.client.base_url,
        "cache_size": len(proxy.cache),
        "dispatcher": {
            "state": proxy.dispatcher.state.value,
            "queue_length": proxy.dispatcher.pending,
            "running": proxy.dispatcher.running,
        },
    }

"""Custom exceptions and centralized FastAPI error handlers."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ProxyError(Exception):
    """Base exception with HTTP status code."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class UpstreamError(ProxyError):
    """Jikan answered with a non-2xx status or could not be reached."""

    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(message, status_code=500)
        self.upstream_status = upstream_status


class NotFoundError(ProxyError):
    def __init__(self, endpoint: str, available: list[str]):
        super().__init__(f"Unknown endpoint: {endpoint}", status_code=404)
        self.endpoint = endpoint
        self.available = available


class PersistenceError(ProxyError):
    """Disk read/write failure for the cache image. Never reaches a client."""


class DispatcherStoppedError(ProxyError):
    def __init__(self):
        super().__init__("Dispatcher stopped before the request was sent upstream", status_code=503)


def _error_body(request: Request, message: str) -> dict:
    return {
        "error": "Failed to fetch data",
        "message": message,
        "endpoint": request.path_params.get("endpoint", request.url.path),
    }


def register_error_handlers(app: FastAPI) -> None:
    """Register centralized exception handlers on the FastAPI app."""

    @app.exception_handler(NotFoundError)
    async def handle_not_found(_request: Request, exc: NotFoundError):
        logger.warning("404 - Endpoint not found: %s", exc.endpoint)
        return JSONResponse(
            {"error": "Endpoint not found", "available_endpoints": exc.available},
            status_code=404,
        )

    @app.exception_handler(ProxyError)
    async def handle_proxy_error(request: Request, exc: ProxyError):
        logger.error("Error handling %s: %s", request.url.path, exc)
        return JSONResponse(_error_body(request, str(exc)), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(_error_body(request, str(exc) or "Unknown error"), status_code=500)

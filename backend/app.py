"""FastAPI application entry point for the Jikan caching proxy."""

import logging
import sys
import time
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, settings as default_settings
from errors import register_error_handlers
from services.proxy import ProxyService

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    """Structured logging: JSON for production, human-readable for local.

    Everything also lands in ``logs_dir/jikan-proxy.log``, rotated daily.
    """
    if settings.is_production:
        fmt = '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
    else:
        fmt = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.logs_dir:
        try:
            Path(settings.logs_dir).mkdir(parents=True, exist_ok=True)
            handlers.append(
                TimedRotatingFileHandler(
                    Path(settings.logs_dir) / "jikan-proxy.log",
                    when="midnight",
                    backupCount=30,
                    encoding="utf-8",
                    delay=True,
                )
            )
        except OSError as e:
            print(f"Error creating log directory {settings.logs_dir}: {e}", file=sys.stderr)

    logging.basicConfig(level=settings.log_level, format=fmt, handlers=handlers)


def create_app(
    settings: Settings | None = None,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or default_settings
    app = FastAPI(title="Jikan API Proxy", version="1.1.0")
    app.state.settings = settings
    app.state.proxy = ProxyService.from_settings(settings, transport=upstream_transport)

    # CORS: read-only API, any configured origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    # Security and caching headers; routes opt in to public caching
    @app.middleware("http")
    async def add_response_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers.setdefault("Cache-Control", "no-store")
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        client_ip = request.headers.get("x-forwarded-for", "unknown")
        path = request.url.path
        if request.url.query:
            path += f"?{request.url.query}"
        logger.info("%s - %s %s", client_ip, request.method, path)
        start = time.perf_counter()
        response: Response = await call_next(request)
        logger.info(
            "Request completed in %.2fms: %s (%d)",
            (time.perf_counter() - start) * 1000,
            request.url.path,
            response.status_code,
        )
        return response

    # Centralized error handlers
    register_error_handlers(app)

    from routes.api import router as api_router
    from routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(api_router)

    @app.on_event("startup")
    async def _startup() -> None:
        configure_logging(settings)
        problems = settings.validate()
        if problems:
            logger.warning("Configuration problems: %s", "; ".join(problems))
        await app.state.proxy.start()
        logger.info("Jikan API Proxy running at http://localhost:%d", settings.port)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.proxy.stop()

    return app


app = create_app()


def main() -> None:
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    main()

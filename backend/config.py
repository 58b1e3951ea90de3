"""Centralized configuration — all env vars in one place."""

import logging
import os

logger = logging.getLogger(__name__)


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self):
        self.port: int = int(os.getenv("PORT", "3000"))
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
        self.git_sha: str = os.getenv("GIT_SHA", "unknown")
        self.environment: str = os.getenv("ENVIRONMENT", "local")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

        # Upstream (Jikan v4)
        self.upstream_base_url: str = os.getenv("JIKAN_BASE_URL", "https://api.jikan.moe/v4")
        self.upstream_timeout: float = float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "30"))

        # Cache
        self.default_ttl: float = float(os.getenv("CACHE_DEFAULT_TTL_SECONDS", "3600"))
        self.cache_dir: str = os.getenv("CACHE_DIR", "./cache")
        self.logs_dir: str = os.getenv("LOGS_DIR", "./logs")
        self.sweep_interval: float = float(os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", "3600"))
        self.flush_interval: float = float(os.getenv("CACHE_FLUSH_INTERVAL_SECONDS", "1800"))
        self.flush_every: int = int(os.getenv("CACHE_FLUSH_EVERY_WRITES", "100"))

        # Jikan allows a handful of requests per second
        self.max_requests_per_window: int = int(os.getenv("RATE_LIMIT_PER_WINDOW", "4"))
        self.window_seconds: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "1.0"))

        self._endpoint_ttls_raw: str = os.getenv("ENDPOINT_TTLS", "")
        self.endpoint_ttls: dict[str, float] = _parse_ttls(self._endpoint_ttls_raw)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self) -> list[str]:
        """Return a list of human-readable problems with the current settings."""
        problems = []
        for attr in (
            "max_requests_per_window", "window_seconds", "default_ttl",
            "flush_every", "sweep_interval", "flush_interval",
        ):
            if getattr(self, attr) <= 0:
                problems.append(f"{attr} must be positive")
        declared = [part for part in self._endpoint_ttls_raw.split(",") if part.strip()]
        if len(declared) != len(self.endpoint_ttls):
            problems.append(f"ENDPOINT_TTLS has malformed entries: {self._endpoint_ttls_raw!r}")
        return problems


def _parse_ttls(raw: str) -> dict[str, float]:
    """Parse ``name=seconds,name=seconds`` into a dict, skipping bad entries."""
    ttls: dict[str, float] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, value = part.partition("=")
        try:
            seconds = float(value)
        except ValueError:
            continue
        if sep and name.strip() and seconds > 0:
            ttls[name.strip().lower()] = seconds
    return ttls


settings = Settings()

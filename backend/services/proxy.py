"""The proxy itself: resolve, consult the cache, rate-limit the misses.

One ``ProxyService`` owns the cache, dispatcher, stats and upstream client
and is attached to ``app.state`` at startup. Nothing here is a module-level
singleton, so tests can build as many isolated instances as they like.
"""

import asyncio
import logging
from typing import Any, Iterable

from config import Settings
from services.cache import PersistentTTLCache
from services.dispatcher import RateLimitedDispatcher
from services.jikan_client import JikanClient
from services.resolver import EndpointResolver, Resolution
from services.stats import StatsAggregator

logger = logging.getLogger(__name__)

STATS_ENDPOINT = "stats"


class ProxyService:
    def __init__(
        self,
        cache: PersistentTTLCache,
        dispatcher: RateLimitedDispatcher,
        client: JikanClient,
        resolver: EndpointResolver | None = None,
        stats: StatsAggregator | None = None,
        sweep_interval: float = 3600,
        flush_interval: float = 1800,
    ):
        self.cache = cache
        self.dispatcher = dispatcher
        self.client = client
        self.resolver = resolver or EndpointResolver(
            default_ttl=cache.default_ttl, also_served=(STATS_ENDPOINT,)
        )
        self.stats = stats or StatsAggregator()
        self.sweep_interval = sweep_interval
        self.flush_interval = flush_interval
        self._timers: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings, transport=None) -> "ProxyService":
        cache = PersistentTTLCache(
            cache_dir=settings.cache_dir,
            default_ttl=settings.default_ttl,
            flush_every=settings.flush_every,
        )
        return cls(
            cache=cache,
            dispatcher=RateLimitedDispatcher(
                max_per_window=settings.max_requests_per_window,
                window_seconds=settings.window_seconds,
            ),
            client=JikanClient(
                base_url=settings.upstream_base_url,
                timeout=settings.upstream_timeout,
                transport=transport,
            ),
            resolver=EndpointResolver(
                default_ttl=settings.default_ttl,
                ttl_overrides=settings.endpoint_ttls,
                also_served=(STATS_ENDPOINT,),
            ),
            sweep_interval=settings.sweep_interval,
            flush_interval=settings.flush_interval,
        )

    async def fetch(self, endpoint: str, params: Iterable[tuple[str, str]] = ()) -> tuple[Any, bool]:
        """Return ``(payload, served_from_cache)`` for a logical request.

        Unknown endpoints raise ``NotFoundError`` before the cache or the
        dispatcher are touched.
        """
        resolution = self.resolver.resolve(endpoint, params)

        async with self.stats.track(resolution.endpoint):
            if not resolution.cacheable:
                payload = await self.dispatcher.submit(lambda: self._upstream(resolution))
                return payload, False

            cached = self.cache.get(resolution.cache_key)
            if cached is not None:
                self.stats.record_hit()
                logger.info("Cache hit: %s", resolution.cache_key)
                return cached, True

            self.stats.record_miss()
            logger.info("Cache miss: %s", resolution.cache_key)
            payload = await self.dispatcher.submit(lambda: self._fetch_and_store(resolution))
            return payload, False

    async def _upstream(self, resolution: Resolution) -> Any:
        return await self.client.get_json(resolution.path, resolution.query)

    async def _fetch_and_store(self, resolution: Resolution) -> Any:
        payload = await self._upstream(resolution)
        self.cache.put(resolution.cache_key, payload, resolution.ttl)
        return payload

    def stats_snapshot(self) -> dict:
        return self.stats.snapshot(
            cache_size=len(self.cache),
            queue_length=self.dispatcher.pending,
            dispatcher_state=self.dispatcher.state.value,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the disk image and start the sweep/flush timers."""
        loaded = await asyncio.to_thread(self.cache.load_from_disk)
        logger.info("Cache active with %d entries, default TTL %.0fs", loaded, self.cache.default_ttl)
        self._timers = [
            asyncio.create_task(self._every(self.sweep_interval, self._sweep), name="cache-sweep"),
            asyncio.create_task(self._every(self.flush_interval, self.flush), name="cache-flush"),
        ]

    async def stop(self) -> None:
        """Cancel timers and the dispatcher, then write a final snapshot."""
        for timer in self._timers:
            timer.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []

        await self.dispatcher.stop()
        logger.info("Shutting down, saving cache...")
        await self.flush()
        await self.client.aclose()

    async def flush(self) -> int:
        return await asyncio.to_thread(self.cache.snapshot_to_disk)

    async def _sweep(self) -> int:
        return self.cache.sweep()

    @staticmethod
    async def _every(interval: float, job) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("Background job %s failed", getattr(job, "__name__", job))

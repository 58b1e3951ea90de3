"""End-to-end tests for the proxy service against a fake Jikan."""

import asyncio
import logging
from unittest.mock import patch

import pytest
import pytest_asyncio

from errors import NotFoundError, UpstreamError
from services.cache import INDEX_FILE, PersistentTTLCache
from services.dispatcher import RateLimitedDispatcher
from services.jikan_client import JikanClient
from services.proxy import ProxyService


@pytest_asyncio.fixture
async def proxy(tmp_path, clock, fake_jikan):
    service = ProxyService(
        cache=PersistentTTLCache(cache_dir=tmp_path, default_ttl=3600, clock=clock),
        dispatcher=RateLimitedDispatcher(max_per_window=4, window_seconds=0.01),
        client=JikanClient("https://jikan.test/v4", transport=fake_jikan.transport()),
        sweep_interval=3600,
        flush_interval=3600,
    )
    yield service
    await service.dispatcher.stop()
    await service.client.aclose()


class TestFetch:
    @pytest.mark.asyncio
    async def test_second_request_is_a_hit(self, proxy, fake_jikan):
        """anime?id=5 twice: one miss, one hit, one dispatch."""
        first, first_cached = await proxy.fetch("anime", [("id", "5")])
        assert proxy.stats.cache_misses == 1
        assert proxy.dispatcher.tasks_dispatched == 1

        second, second_cached = await proxy.fetch("anime", [("id", "5")])
        assert proxy.stats.cache_hits == 1
        assert proxy.dispatcher.tasks_dispatched == 1

        assert (first_cached, second_cached) == (False, True)
        assert first == second
        assert fake_jikan.paths == ["/v4/anime/5"]

    @pytest.mark.asyncio
    async def test_reordered_query_hits_the_same_entry(self, proxy, fake_jikan):
        """Reordered parameters hit the entry stored by the first call."""
        await proxy.fetch("anime", [("q", "naruto"), ("page", "1")])
        _, cached = await proxy.fetch("anime", [("page", "1"), ("q", "naruto")])
        assert cached is True
        assert len(fake_jikan.requests) == 1

    @pytest.mark.asyncio
    async def test_random_bypasses_cache_but_uses_dispatcher(self, proxy, fake_jikan):
        """Random never touches the cache but is still rate-limited."""
        with patch.object(proxy.cache, "get", wraps=proxy.cache.get) as cache_get, \
                patch.object(proxy.cache, "put", wraps=proxy.cache.put) as cache_put:
            first, _ = await proxy.fetch("random", [("type", "anime")])
            second, cached = await proxy.fetch("random", [("type", "anime")])

        assert cached is False
        assert first != second
        assert proxy.dispatcher.tasks_dispatched == 2
        assert fake_jikan.paths == ["/v4/random/anime", "/v4/random/anime"]
        cache_get.assert_not_called()
        cache_put.assert_not_called()
        assert proxy.stats.cache_hits == 0
        assert proxy.stats.cache_misses == 0

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, proxy, fake_jikan, clock):
        await proxy.fetch("top", [])
        clock.advance(3 * 3600)
        _, cached = await proxy.fetch("top", [])
        assert cached is False
        assert len(fake_jikan.requests) == 2

    @pytest.mark.asyncio
    async def test_upstream_failure_propagates_and_is_not_cached(self, proxy, fake_jikan):
        """Failures reach the caller and leave no cache entry."""
        fake_jikan.failures["/v4/anime/9"] = 500
        with pytest.raises(UpstreamError):
            await proxy.fetch("anime", [("id", "9")])

        assert proxy.stats.errors == 1
        assert proxy.stats.endpoints["anime"].errors == 1
        assert "anime_9" not in proxy.cache.keys()

    @pytest.mark.asyncio
    async def test_unknown_endpoint_never_reaches_cache_or_dispatcher(self, proxy, fake_jikan):
        """Unknown endpoints fail before any tracking or dispatch."""
        with pytest.raises(NotFoundError):
            await proxy.fetch("pokemon", [])
        assert proxy.stats.requests == 0
        assert proxy.dispatcher.tasks_dispatched == 0
        assert fake_jikan.requests == []

    @pytest.mark.asyncio
    async def test_burst_is_rate_limited(self, tmp_path, clock, fake_jikan):
        """Five concurrent misses with N=2 take three windows."""
        service = ProxyService(
            cache=PersistentTTLCache(cache_dir=None, clock=clock),
            dispatcher=RateLimitedDispatcher(max_per_window=2, window_seconds=0.1),
            client=JikanClient("https://jikan.test/v4", transport=fake_jikan.transport()),
        )
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        await asyncio.gather(*[service.fetch("anime", [("id", str(n))]) for n in range(5)])
        elapsed = loop.time() - t0

        assert len(fake_jikan.requests) == 5
        assert service.dispatcher.batches_dispatched == 3
        assert elapsed >= 0.19
        await service.dispatcher.stop()
        await service.client.aclose()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_flushes_and_start_reloads(self, proxy, tmp_path, clock, fake_jikan):
        """Entries survive a stop and start cycle."""
        await proxy.start()
        await proxy.fetch("genres", [("type", "anime")])
        await proxy.stop()

        revived = ProxyService(
            cache=PersistentTTLCache(cache_dir=tmp_path, clock=clock),
            dispatcher=RateLimitedDispatcher(window_seconds=0.01),
            client=JikanClient("https://jikan.test/v4", transport=fake_jikan.transport()),
        )
        await revived.start()
        _, cached = await revived.fetch("genres", [("type", "anime")])
        await revived.stop()

        assert cached is True
        assert len(fake_jikan.requests) == 1

    @pytest.mark.asyncio
    async def test_stats_snapshot_reports_queue_and_cache(self, proxy):
        await proxy.fetch("studios", [])
        snap = proxy.stats_snapshot()
        assert snap["cacheSize"] == 1
        assert snap["queueLength"] == 0
        assert snap["requests"] == 1
        assert snap["dispatcherState"] in ("idle", "draining")


async def _wait_for(condition, attempts: int = 300) -> bool:
    for _ in range(attempts):
        if condition():
            return True
        await asyncio.sleep(0.01)
    return condition()


class TestBackgroundTimers:
    @pytest_asyncio.fixture
    async def fast_proxy(self, tmp_path, clock, fake_jikan):
        service = ProxyService(
            cache=PersistentTTLCache(cache_dir=tmp_path, default_ttl=3600, clock=clock),
            dispatcher=RateLimitedDispatcher(window_seconds=0.01),
            client=JikanClient("https://jikan.test/v4", transport=fake_jikan.transport()),
            sweep_interval=0.01,
            flush_interval=0.01,
        )
        yield service
        await service.stop()

    @pytest.mark.asyncio
    async def test_sweep_removes_expired_entries_without_a_lookup(self, fast_proxy, clock):
        """The sweep timer drops expired entries on its own."""
        fast_proxy.cache.put("short", 1, ttl=5)
        fast_proxy.cache.put("long", 2, ttl=500)
        await fast_proxy.start()
        clock.advance(10)

        assert await _wait_for(lambda: fast_proxy.cache.keys() == ["long"])

    @pytest.mark.asyncio
    async def test_flush_timer_writes_the_index(self, fast_proxy, tmp_path):
        """The flush timer writes the disk image without a shutdown."""
        await fast_proxy.start()
        fast_proxy.cache.put("genres_anime", {"data": []}, ttl=100)

        assert await _wait_for(lambda: (tmp_path / INDEX_FILE).exists())
        assert await _wait_for(lambda: "genres_anime" in (tmp_path / INDEX_FILE).read_text())

    @pytest.mark.asyncio
    async def test_failing_job_is_logged_and_timer_keeps_running(self, fast_proxy, caplog):
        """A job that raises is logged and the timer keeps going."""
        calls = []

        def flaky_sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("sweep exploded")
            return 0

        with caplog.at_level(logging.ERROR, logger="services.proxy"), \
                patch.object(fast_proxy.cache, "sweep", side_effect=flaky_sweep):
            await fast_proxy.start()
            assert await _wait_for(lambda: len(calls) >= 2)

        assert "Background job _sweep failed" in caplog.text
        assert all(not timer.done() for timer in fast_proxy._timers)

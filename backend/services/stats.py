"""Request statistics for the /api/stats endpoint."""

import threading
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass

SAMPLE_CAPACITY = 1000


@dataclass
class EndpointStats:
    calls: int = 0
    errors: int = 0
    total_response_time: float = 0.0


def _percent(part: int, whole: int) -> str:
    return f"{part / whole * 100:.2f}%" if whole > 0 else "0%"


def _format_uptime(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}h {minutes}m {secs}s"


class StatsAggregator:
    """Counters, a bounded latency ring and per-endpoint totals.

    Response times are recorded in milliseconds. ``requests`` and the
    per-endpoint ``calls`` count every attempt, so error rates are
    ``errors / calls``.
    """

    def __init__(self, sample_capacity: int = SAMPLE_CAPACITY):
        self._lock = threading.Lock()
        self.started_at = time.time()
        self.requests = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.errors = 0
        self.response_times: deque[float] = deque(maxlen=sample_capacity)
        self.endpoints: dict[str, EndpointStats] = {}

    def record_hit(self) -> None:
        with self._lock:
            self.cache_hits += 1

    def record_miss(self) -> None:
        with self._lock:
            self.cache_misses += 1

    def _begin(self, endpoint: str) -> None:
        with self._lock:
            self.requests += 1
            self.endpoints.setdefault(endpoint, EndpointStats()).calls += 1

    def record_success(self, endpoint: str, elapsed_ms: float) -> None:
        with self._lock:
            self.endpoints.setdefault(endpoint, EndpointStats()).total_response_time += elapsed_ms
            self.response_times.append(elapsed_ms)

    def record_error(self, endpoint: str) -> None:
        with self._lock:
            self.endpoints.setdefault(endpoint, EndpointStats()).errors += 1
            self.errors += 1

    @asynccontextmanager
    async def track(self, endpoint: str):
        """Time the wrapped block; errors are counted and re-raised."""
        self._begin(endpoint)
        start = time.perf_counter()
        try:
            yield
        except Exception:
            self.record_error(endpoint)
            raise
        self.record_success(endpoint, (time.perf_counter() - start) * 1000)

    def snapshot(self, cache_size: int = 0, queue_length: int = 0, dispatcher_state: str = "idle") -> dict:
        with self._lock:
            samples = list(self.response_times)
            endpoints = {
                name: EndpointStats(data.calls, data.errors, data.total_response_time)
                for name, data in self.endpoints.items()
            }
            requests, hits, misses, errors = self.requests, self.cache_hits, self.cache_misses, self.errors

        average = sum(samples) / len(samples) if samples else 0.0
        return {
            "uptime": _format_uptime(int(time.time() - self.started_at)),
            "requests": requests,
            "cacheHits": hits,
            "cacheMisses": misses,
            "cacheRatio": _percent(hits, requests),
            "errors": errors,
            "cacheSize": cache_size,
            "averageResponseTime": f"{average:.2f}ms",
            "endpoints": [
                {
                    "name": name,
                    "calls": data.calls,
                    "errors": data.errors,
                    "averageResponseTime": (
                        f"{data.total_response_time / data.calls:.2f}ms" if data.calls > 0 else "0ms"
                    ),
                    "errorRate": _percent(data.errors, data.calls),
                }
                for name, data in endpoints.items()
            ],
            "queueLength": queue_length,
            "dispatcherState": dispatcher_state,
        }

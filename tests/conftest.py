"""Shared fixtures: a controllable clock, a fake Jikan and isolated settings."""

import httpx
import pytest

from config import Settings


class FakeClock:
    """Callable clock for TTL tests; starts at an arbitrary epoch."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeJikan:
    """Stands in for api.jikan.moe behind an ``httpx.MockTransport``.

    Paths listed in ``failures`` answer with that status code; everything
    else echoes the request path and a running call counter.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.failures: dict[str, int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.failures.get(request.url.path)
        if status is not None:
            return httpx.Response(status, text="upstream says no")
        return httpx.Response(
            200,
            json={
                "data": {"path": request.url.path, "query": str(request.url.query, "ascii")},
                "call": len(self.requests),
            },
        )

    @property
    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_jikan():
    return FakeJikan()


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings pointing at temp dirs with a near-zero rate-limit window."""
    monkeypatch.setenv("CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("LOGS_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("RATE_LIMIT_WINDOW_SECONDS", "0.01")
    monkeypatch.setenv("JIKAN_BASE_URL", "https://jikan.test/v4")
    monkeypatch.setenv("GIT_SHA", "abc123")
    return Settings()

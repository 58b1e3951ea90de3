"""Thin async client for the Jikan v4 REST API.

Free API, no key required, but rate limited per second — every call goes
through the dispatcher, never straight from a route.
"""

import logging
from typing import Any

import httpx

from errors import UpstreamError

logger = logging.getLogger(__name__)


class JikanClient:
    def __init__(
        self,
        base_url: str = "https://api.jikan.moe/v4",
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def get_json(self, path: str, params: tuple[tuple[str, str], ...] = ()) -> Any:
        """GET ``path`` and return the decoded JSON body.

        Raises:
            UpstreamError: transport failure, non-2xx status or a body that
                is not JSON. No retry is attempted.
        """
        try:
            resp = await self._client.get(path, params=list(params))
        except httpx.HTTPError as e:
            logger.error("Jikan request failed for %s: %s", path, e)
            raise UpstreamError(f"Upstream request failed: {e}") from e

        if not resp.is_success:
            logger.error("API error (%d): %s", resp.status_code, resp.text)
            raise UpstreamError(
                f"API responded with status: {resp.status_code} - {resp.text}",
                upstream_status=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(f"Upstream returned invalid JSON: {e}", upstream_status=resp.status_code) from e

    async def aclose(self) -> None:
        await self._client.aclose()

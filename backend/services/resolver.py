"""Maps a logical proxy request to a Jikan path, a cache key and a TTL.

Cache keys are built from the parameters sorted by name then value, so
``?q=naruto&page=1`` and ``?page=1&q=naruto`` share one cache entry.
"""

from dataclasses import dataclass
from typing import Callable, Iterable
from urllib.parse import quote, urlencode

from errors import NotFoundError

HOUR = 60 * 60
DAY = 24 * HOUR


@dataclass(frozen=True)
class Resolution:
    endpoint: str
    path: str
    query: tuple[tuple[str, str], ...] = ()
    cache_key: str | None = None
    ttl: float | None = None

    @property
    def cacheable(self) -> bool:
        return self.cache_key is not None


class Params:
    """Query parameters.

    ``get`` sees the first value in arrival order; ``items`` and
    ``canonical`` use the sorted view that cache keys are built from.
    """

    def __init__(self, items: Iterable[tuple[str, str]] = ()):
        self._arrival = [(str(k), str(v)) for k, v in items]
        self._items = sorted(self._arrival)

    def get(self, name: str, default: str = "") -> str:
        for key, value in self._arrival:
            if key == name:
                return value
        return default

    def items(self, exclude: tuple[str, ...] = ()) -> tuple[tuple[str, str], ...]:
        return tuple((k, v) for k, v in self._items if k not in exclude)

    def canonical(self, exclude: tuple[str, ...] = ()) -> str:
        return urlencode(self.items(exclude))


def _seg(value: str) -> str:
    return quote(value, safe="")


def _lookup_or_search(
    resource: str,
    id_prefix: str,
    search_prefix: str,
    params: Params,
    id_ttl: float | None = None,
    exclude_id: bool = False,
) -> dict:
    item_id = params.get("id")
    if item_id:
        return {"path": f"/{resource}/{_seg(item_id)}", "cache_key": f"{id_prefix}_{item_id}", "ttl": id_ttl}
    exclude = ("id",) if exclude_id else ()
    return {
        "path": f"/{resource}",
        "query": params.items(exclude),
        "cache_key": f"{search_prefix}_{params.canonical(exclude)}",
    }


def _anime(params: Params) -> dict:
    return _lookup_or_search("anime", "anime", "anime_search", params)


def _manga(params: Params) -> dict:
    return _lookup_or_search("manga", "manga", "manga_search", params)


def _characters(params: Params) -> dict:
    return _lookup_or_search(
        "characters", "character", "characters_search", params, id_ttl=7 * DAY, exclude_id=True
    )


def _people(params: Params) -> dict:
    return _lookup_or_search(
        "people", "person", "people_search", params, id_ttl=7 * DAY, exclude_id=True
    )


def _seasons(params: Params) -> dict:
    year, season = params.get("year"), params.get("season")
    if year and season:
        return {
            "path": f"/seasons/{_seg(year)}/{_seg(season)}",
            "cache_key": f"season_{year}_{season}",
            "ttl": 12 * HOUR,
        }
    if params.get("now") == "true":
        return {"path": "/seasons/now", "cache_key": "season_now", "ttl": 6 * HOUR}
    return {"path": "/seasons", "cache_key": "seasons_list", "ttl": DAY}


def _top(params: Params) -> dict:
    kind = params.get("type") or "anime"
    top_filter = params.get("filter")
    page = params.get("page") or "1"
    path = f"/top/{_seg(kind)}"
    if top_filter:
        path += f"/{_seg(top_filter)}"
    return {
        "path": path,
        "query": (("page", page),),
        "cache_key": f"top_{kind}_{top_filter}_{page}",
        "ttl": 3 * HOUR,
    }


def _schedule(params: Params) -> dict:
    day = params.get("day")
    return {
        "path": f"/schedules/{_seg(day)}" if day else "/schedules",
        "cache_key": f"schedule_{day or 'all'}",
        "ttl": 12 * HOUR,
    }


def _genres(params: Params) -> dict:
    kind = params.get("type") or "anime"
    return {"path": f"/genres/{_seg(kind)}", "cache_key": f"genres_{kind}", "ttl": 7 * DAY}


def _random(params: Params) -> dict:
    # Always fresh: never read from or written to the cache
    kind = params.get("type") or "anime"
    return {"path": f"/random/{_seg(kind)}"}


def _paged(resource: str, ttl: float) -> Callable[[Params], dict]:
    def build(params: Params) -> dict:
        kind = params.get("type") or "anime"
        page = params.get("page") or "1"
        return {
            "path": f"/{resource}/{_seg(kind)}",
            "query": (("page", page),),
            "cache_key": f"{resource}_{kind}_{page}",
            "ttl": ttl,
        }

    return build


def _studios(params: Params) -> dict:
    studio_id = params.get("id")
    if studio_id:
        return {"path": f"/studios/{_seg(studio_id)}", "cache_key": f"studio_{studio_id}", "ttl": 7 * DAY}
    return {"path": "/studios", "cache_key": "studios_list", "ttl": 7 * DAY}


ENDPOINTS: dict[str, Callable[[Params], dict]] = {
    "anime": _anime,
    "manga": _manga,
    "seasons": _seasons,
    "top": _top,
    "schedule": _schedule,
    "genres": _genres,
    "characters": _characters,
    "people": _people,
    "random": _random,
    "reviews": _paged("reviews", 6 * HOUR),
    "recommendations": _paged("recommendations", 12 * HOUR),
    "studios": _studios,
}


class EndpointResolver:
    def __init__(
        self,
        default_ttl: float = HOUR,
        ttl_overrides: dict[str, float] | None = None,
        also_served: Iterable[str] = (),
    ):
        self.default_ttl = default_ttl
        self.ttl_overrides = dict(ttl_overrides or {})
        self._also_served = list(also_served)

    @property
    def endpoints(self) -> list[str]:
        return list(ENDPOINTS)

    @property
    def available(self) -> list[str]:
        """Every endpoint name the proxy answers to, for 404 listings."""
        return self.endpoints + [name for name in self._also_served if name not in ENDPOINTS]

    def resolve(self, endpoint: str, params: Iterable[tuple[str, str]] = ()) -> Resolution:
        builder = ENDPOINTS.get(endpoint)
        if builder is None:
            raise NotFoundError(endpoint, self.available)

        spec = builder(Params(params))
        cache_key = spec.get("cache_key")
        ttl = None
        if cache_key is not None:
            ttl = self.ttl_overrides.get(endpoint) or spec.get("ttl") or self.default_ttl
        return Resolution(
            endpoint=endpoint,
            path=spec["path"],
            query=tuple(spec.get("query", ())),
            cache_key=cache_key,
            ttl=ttl,
        )

"""Route topology from the trip-planning service.

Builds, once per cache lifetime, a map from route short name to the headsigns
known for that route, indexed by direction. The map is only used to backfill
vehicles that carry no destination of their own, so every failure here is
absorbed: the resolver logs and hands back the last good map (or an empty one).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ValidationError

from caches import TTLCache
from feed_config import FeedConfig
from upstream_client import RetryingClient, RetryPolicy

logger = logging.getLogger(__name__)

ROUTES_QUERY = "query { routes { gtfsId shortName longName patterns { headsign directionId } } }"


class PatternBrief(BaseModel):
    headsign: Optional[str] = None
    directionId: int


class RouteBrief(BaseModel):
    gtfsId: str
    shortName: str
    longName: str
    patterns: List[PatternBrief]


class _RoutesData(BaseModel):
    routes: List[RouteBrief]


class RoutesResponse(BaseModel):
    data: _RoutesData


@dataclass(frozen=True)
class RouteDirections:
    destinations: Tuple[str, ...]
    direction_headsigns: Mapping[int, Tuple[str, ...]]

    def first_headsign(self, direction: Optional[int]) -> str:
        """Headsign for ``direction``, else direction 0, else any known destination."""
        if direction is not None and self.direction_headsigns.get(direction):
            return self.direction_headsigns[direction][0]
        if self.direction_headsigns.get(0):
            return self.direction_headsigns[0][0]
        return self.destinations[0] if self.destinations else ""


RouteDestinationMap = Mapping[str, RouteDirections]

EMPTY_MAP: RouteDestinationMap = MappingProxyType({})


def build_route_destination_map(routes: Iterable[RouteBrief]) -> RouteDestinationMap:
    route_map: Dict[str, RouteDirections] = {}
    for route in routes:
        destinations: List[str] = []
        by_direction: Dict[int, List[str]] = {}
        for pattern in route.patterns:
            headsign = (pattern.headsign or "").strip()
            if not headsign:
                continue
            if headsign not in destinations:
                destinations.append(headsign)
            seen = by_direction.setdefault(pattern.directionId, [])
            if headsign not in seen:
                seen.append(headsign)
        if not destinations:
            continue
        route_map[route.shortName] = RouteDirections(
            destinations=tuple(destinations),
            direction_headsigns=MappingProxyType(
                {direction: tuple(names) for direction, names in by_direction.items()}
            ),
        )
    return MappingProxyType(route_map)


def parse_routes_response(payload: Any) -> RouteDestinationMap:
    """Validate a topology response body; raises ``ValidationError`` on a bad shape."""
    parsed = RoutesResponse.model_validate(payload)
    return build_route_destination_map(parsed.data.routes)


class RouteTopologyResolver:
    def __init__(
        self,
        client: RetryingClient,
        cache: TTLCache[RouteDestinationMap],
        *,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._client = client
        self.cache = cache
        self._url = url
        self._headers = dict(headers or {})
        self._policy = policy or RetryPolicy(timeout_s=15.0)

    @classmethod
    def from_config(cls, client: RetryingClient, config: FeedConfig) -> "RouteTopologyResolver":
        return cls(
            client,
            TTLCache(config.topology_ttl_s),
            url=config.topology_url,
            headers=config.topology_headers(),
            policy=RetryPolicy(
                max_attempts=config.max_attempts,
                timeout_s=config.topology_timeout_s,
                backoff_base_s=config.backoff_base_s,
                backoff_cap_s=config.backoff_cap_s,
            ),
        )

    async def _fallback(self) -> RouteDestinationMap:
        previous = await self.cache.last_known()
        return previous if previous is not None else EMPTY_MAP

    async def resolve(self) -> RouteDestinationMap:
        cached = await self.cache.fresh()
        if cached is not None:
            return cached

        try:
            response = await self._client.post(
                self._url, self._policy, headers=self._headers, json={"query": ROUTES_QUERY}
            )
            route_map = parse_routes_response(response.json())
        except ValidationError as exc:
            logger.warning(
                "[topology] routes response validation failed (%d issues)", exc.error_count()
            )
            return await self._fallback()
        except Exception as exc:
            logger.warning("[topology] error fetching route destinations: %s", exc)
            return await self._fallback()

        await self.cache.replace(route_map)
        logger.info("[topology] cached destinations for %d routes", len(route_map))
        return route_map

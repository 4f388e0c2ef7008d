"""Synthetic vehicles for development.

``GET /api/buses?simulate=205,701`` adds one virtual vehicle per pattern of
each named route, driving its real polyline at a constant 20 km/h. Positions
are a pure function of wall-clock time, so repeated requests show movement.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from geometry import LatLon, cumulative_distance, decode_polyline, position_at_distance
from normalize import Bus
from upstream_client import RetryingClient, RetryPolicy

logger = logging.getLogger(__name__)

SIM_SPEED_KMH = 20.0
SIM_SPEED_MPS = SIM_SPEED_KMH * 1000.0 / 3600.0
DIRECTION_OFFSET = 0.4
MAX_CACHED_ROUTES = 64

ROUTE_GEOMETRY_QUERY = (
    "query($name: String) { routes(name: $name) { shortName longName "
    "patterns { headsign directionId patternGeometry { points } } } }"
)


class _Geometry(BaseModel):
    points: Optional[str] = None


class _Pattern(BaseModel):
    headsign: Optional[str] = None
    directionId: Optional[int] = None
    patternGeometry: Optional[_Geometry] = None


class _Route(BaseModel):
    shortName: str
    longName: Optional[str] = None
    patterns: Optional[List[_Pattern]] = None


class _Data(BaseModel):
    routes: Optional[List[_Route]] = None


class _Response(BaseModel):
    data: Optional[_Data] = None


@dataclass(frozen=True)
class SimPath:
    poly: Tuple[LatLon, ...]
    cum: Tuple[float, ...]
    length_m: float
    headsign: str


def paths_from_response(payload: object, route_short_name: str) -> List[SimPath]:
    parsed = _Response.model_validate(payload)
    routes = parsed.data.routes if parsed.data and parsed.data.routes else []
    paths: List[SimPath] = []
    for route in routes:
        if route.shortName != route_short_name:
            continue
        for pattern in route.patterns or []:
            encoded = pattern.patternGeometry.points if pattern.patternGeometry else None
            if not encoded:
                continue
            poly = decode_polyline(encoded)
            if len(poly) < 2:
                continue
            cum, total = cumulative_distance(poly)
            if total <= 0:
                continue
            paths.append(
                SimPath(
                    poly=tuple(poly),
                    cum=tuple(cum),
                    length_m=total,
                    headsign=pattern.headsign or route.longName or "",
                )
            )
    return paths


def simulated_bus(route_short_name: str, index: int, path: SimPath, now_s: float, stamp: str) -> Bus:
    loop_s = path.length_m / SIM_SPEED_MPS
    elapsed = (now_s + index * loop_s * DIRECTION_OFFSET) % loop_s
    lat, lon, heading = position_at_distance(path.poly, path.cum, elapsed * SIM_SPEED_MPS)
    sim_id = f"sim-{route_short_name}-{index}"
    return Bus(
        id=sim_id,
        lat=lat,
        lon=lon,
        routeShortName=route_short_name,
        routeLongName=path.headsign,
        heading=heading,
        speed=SIM_SPEED_KMH,
        lastUpdated=stamp,
        vehicleNumber=f"SIM{index}",
        tripId=sim_id,
    )


class SimulatedBusSource:
    """Walks virtual vehicles along route geometry fetched from the topology service.

    Geometry is kept for at most ``max_routes`` routes, least recently used
    first out. Routes that come back without any usable pattern are not kept.
    """

    def __init__(
        self,
        client: RetryingClient,
        *,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
        max_routes: int = MAX_CACHED_ROUTES,
    ) -> None:
        self._client = client
        self._url = url
        self._headers = dict(headers or {})
        self._policy = policy or RetryPolicy(timeout_s=15.0)
        self._clock = clock
        self.max_routes = max_routes
        self._paths: Dict[str, Tuple[SimPath, ...]] = {}
        self._access_order: List[str] = []

    def _remember(self, route_short_name: str, paths: Tuple[SimPath, ...]) -> None:
        if route_short_name in self._access_order:
            self._access_order.remove(route_short_name)
        while len(self._paths) >= self.max_routes and self._access_order:
            oldest = self._access_order.pop(0)
            self._paths.pop(oldest, None)
        self._paths[route_short_name] = paths
        self._access_order.append(route_short_name)

    async def _paths_for(self, route_short_name: str) -> Tuple[SimPath, ...]:
        cached = self._paths.get(route_short_name)
        if cached is not None:
            self._access_order.remove(route_short_name)
            self._access_order.append(route_short_name)
            return cached
        response = await self._client.post(
            self._url,
            self._policy,
            headers=self._headers,
            json={"query": ROUTE_GEOMETRY_QUERY, "variables": {"name": route_short_name}},
        )
        paths = tuple(paths_from_response(response.json(), route_short_name))
        if paths:
            self._remember(route_short_name, paths)
        return paths

    async def buses(self, route_names: Iterable[str]) -> List[Bus]:
        names = [name.strip() for name in route_names if name and name.strip()]
        now_s = self._clock()
        stamp = datetime.fromtimestamp(now_s, timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        results = await asyncio.gather(
            *(self._paths_for(name) for name in names), return_exceptions=True
        )
        out: List[Bus] = []
        for name, paths in zip(names, results):
            if isinstance(paths, BaseException):
                logger.warning("[simulate] route %s geometry unavailable: %s", name, paths)
                continue
            out.extend(
                simulated_bus(name, index, path, now_s, stamp) for index, path in enumerate(paths)
            )
        return out

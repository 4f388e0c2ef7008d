import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geometry import bearing, cumulative_distance, decode_polyline, haversine, position_at_distance  # noqa: E402
from simulate import (  # noqa: E402
    ROUTE_GEOMETRY_QUERY,
    SIM_SPEED_KMH,
    SimulatedBusSource,
    paths_from_response,
    simulated_bus,
)
from upstream_client import RetryingClient, RetryPolicy  # noqa: E402

# Reference string from the encoded polyline format documentation.
ENCODED = "_p~iF~ps|U_ulLnnqC_mqNvxq`@"


def _geometry_payload(short_name: str = "205") -> dict:
    return {
        "data": {
            "routes": [
                {
                    "shortName": short_name,
                    "longName": "Campanhã - Castelo do Queijo",
                    "patterns": [
                        {"headsign": "Castelo do Queijo", "directionId": 1, "patternGeometry": {"points": ENCODED}},
                        {"headsign": None, "directionId": 0, "patternGeometry": {"points": ENCODED}},
                        {"headsign": "Depot", "directionId": 0, "patternGeometry": None},
                    ],
                },
                {
                    "shortName": "2050",
                    "patterns": [{"headsign": "Elsewhere", "patternGeometry": {"points": ENCODED}}],
                },
            ]
        }
    }


def test_decode_polyline_reference_points():
    points = decode_polyline(ENCODED)
    expected = [(38.5, -120.2), (40.7, -120.95), (43.252, -126.453)]
    assert len(points) == len(expected)
    for point, ref in zip(points, expected):
        assert point == pytest.approx(ref)


def test_decode_empty_polyline():
    assert decode_polyline("") == []


def test_haversine_one_degree_of_latitude():
    assert haversine((0.0, 0.0), (1.0, 0.0)) == pytest.approx(111_195, rel=1e-3)
    assert haversine((41.15, -8.61), (41.15, -8.61)) == 0.0


@pytest.mark.parametrize(
    "target, expected",
    [((1.0, 0.0), 0.0), ((0.0, 1.0), 90.0), ((-1.0, 0.0), 180.0), ((0.0, -1.0), 270.0)],
)
def test_bearing_cardinal_directions(target, expected):
    assert bearing((0.0, 0.0), target) == pytest.approx(expected)


def test_position_at_distance_interpolates_and_clamps():
    poly = [(0.0, 0.0), (0.0, 1.0), (1.0, 1.0)]
    cum, total = cumulative_distance(poly)
    assert len(cum) == 3
    assert total == pytest.approx(cum[1] * 2, rel=1e-3)

    lat, lon, heading = position_at_distance(poly, cum, cum[1] / 2)
    assert (lat, lon) == pytest.approx((0.0, 0.5))
    assert heading == pytest.approx(90.0)

    lat, lon, heading = position_at_distance(poly, cum, cum[1] + (cum[2] - cum[1]) / 2)
    assert (lat, lon) == pytest.approx((0.5, 1.0))
    assert heading == pytest.approx(0.0)

    assert position_at_distance(poly, cum, -5)[:2] == (0.0, 0.0)
    assert position_at_distance(poly, cum, total * 2)[:2] == (1.0, 1.0)

    with pytest.raises(ValueError):
        position_at_distance([(0.0, 0.0)], [0.0], 1.0)


def test_paths_from_response_filters_route_and_missing_geometry():
    paths = paths_from_response(_geometry_payload(), "205")

    assert len(paths) == 2
    assert [p.headsign for p in paths] == ["Castelo do Queijo", "Campanhã - Castelo do Queijo"]
    assert paths[0].length_m > 0
    assert paths[0].cum[-1] == paths[0].length_m

    assert paths_from_response({"data": {"routes": []}}, "205") == []
    assert paths_from_response({"data": None}, "205") == []


def test_simulated_bus_fields_and_offsets():
    path = paths_from_response(_geometry_payload(), "205")[0]

    first = simulated_bus("205", 0, path, 0.0, "2025-03-01T12:00:00.000Z")
    second = simulated_bus("205", 1, path, 0.0, "2025-03-01T12:00:00.000Z")

    assert first.id == "sim-205-0"
    assert first.tripId == "sim-205-0"
    assert first.vehicleNumber == "SIM0"
    assert first.speed == SIM_SPEED_KMH
    assert first.routeLongName == "Castelo do Queijo"
    assert (first.lat, first.lon) == pytest.approx((38.5, -120.2))
    assert (second.lat, second.lon) != (first.lat, first.lon)

    later = simulated_bus("205", 0, path, 60.0, "2025-03-01T12:01:00.000Z")
    assert (later.lat, later.lon) != (first.lat, first.lon)


async def _no_sleep(delay: float) -> None:
    return None


def test_simulated_source_caches_geometry_and_skips_failed_routes(caplog):
    calls: List[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body)
        if body["variables"]["name"] == "BAD":
            return httpx.Response(500)
        return httpx.Response(200, json=_geometry_payload(body["variables"]["name"]))

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            source = SimulatedBusSource(
                RetryingClient(http, sleep=_no_sleep),
                url="https://otp.example.com/graphql",
                policy=RetryPolicy(max_attempts=2, timeout_s=1.0),
                clock=lambda: 0.0,
            )
            with caplog.at_level(logging.WARNING, logger="simulate"):
                first = await source.buses(["205", "BAD", " "])
            second = await source.buses(["205"])
        return first, second

    first, second = asyncio.run(_run())

    assert [bus.id for bus in first] == ["sim-205-0", "sim-205-1"]
    assert [bus.id for bus in second] == ["sim-205-0", "sim-205-1"]
    assert first[0].lastUpdated == "1970-01-01T00:00:00.000Z"
    assert "route BAD geometry unavailable" in caplog.text
    # 205 once, BAD twice (retried), nothing for the cached second call
    assert len(calls) == 3
    assert calls[0]["query"] == ROUTE_GEOMETRY_QUERY


def _geometry_source(handler, **kwargs) -> tuple:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    source = SimulatedBusSource(
        RetryingClient(http, sleep=_no_sleep),
        url="https://otp.example.com/graphql",
        policy=RetryPolicy(max_attempts=1, timeout_s=1.0),
        clock=lambda: 0.0,
        **kwargs,
    )
    return http, source


def test_routes_without_geometry_are_not_remembered():
    names: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        names.append(json.loads(request.content)["variables"]["name"])
        return httpx.Response(200, json={"data": {"routes": []}})

    async def _run():
        http, source = _geometry_source(handler)
        async with http:
            first = await source.buses(["NOPE"])
            second = await source.buses(["NOPE"])
        return first, second, source

    first, second, source = asyncio.run(_run())

    assert first == second == []
    assert names == ["NOPE", "NOPE"]
    assert "NOPE" not in source._paths


def test_geometry_cache_evicts_least_recently_used_route():
    names: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        name = json.loads(request.content)["variables"]["name"]
        names.append(name)
        return httpx.Response(200, json=_geometry_payload(name))

    async def _run():
        http, source = _geometry_source(handler, max_routes=2)
        async with http:
            await source.buses(["205"])
            await source.buses(["701"])
            await source.buses(["205"])  # 701 is now the oldest
            await source.buses(["500"])
            await source.buses(["205"])
            await source.buses(["701"])
        return source

    source = asyncio.run(_run())

    assert names == ["205", "701", "500", "701"]
    assert len(source._paths) == 2
    assert set(source._paths) == {"205", "701"}

from __future__ import annotations

import bisect
import math
from typing import List, Sequence, Tuple

R_EARTH = 6371000.0

LatLon = Tuple[float, float]


def to_rad(d: float) -> float: return d * math.pi / 180.0


def haversine(a: LatLon, b: LatLon) -> float:
    lat1, lon1 = a; lat2, lon2 = b
    dlat = to_rad(lat2 - lat1); dlon = to_rad(lon2 - lon1)
    s = math.sin(dlat / 2) ** 2 + math.cos(to_rad(lat1)) * math.cos(to_rad(lat2)) * math.sin(dlon / 2) ** 2
    return 2 * R_EARTH * math.asin(math.sqrt(s))


def _decode_value(enc: str, index: int) -> Tuple[int, int]:
    result = shift = 0
    while True:
        b = ord(enc[index]) - 63; index += 1
        result |= (b & 0x1f) << shift; shift += 5
        if b < 0x20:
            break
    return (~(result >> 1) if (result & 1) else (result >> 1)), index


def decode_polyline(enc: str) -> List[LatLon]:
    # Google Encoded Polyline, 1e5 precision
    points: List[LatLon] = []
    index = lat = lng = 0
    while index < len(enc):
        dlat, index = _decode_value(enc, index)
        dlng, index = _decode_value(enc, index)
        lat += dlat; lng += dlng
        points.append((lat / 1e5, lng / 1e5))
    return points


def bearing(a: LatLon, b: LatLon) -> float:
    """Initial great-circle bearing from ``a`` to ``b``; 0 is north, 90 east."""
    lat1, lat2 = to_rad(a[0]), to_rad(b[0])
    dlon = to_rad(b[1] - a[1])
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def cumulative_distance(poly: Sequence[LatLon]) -> Tuple[List[float], float]:
    cum = [0.0]
    for i in range(1, len(poly)):
        cum.append(cum[-1] + haversine(poly[i - 1], poly[i]))
    return cum, cum[-1] if cum else 0.0


def position_at_distance(
    poly: Sequence[LatLon], cum: Sequence[float], dist: float
) -> Tuple[float, float, float]:
    """Interpolate ``(lat, lon, heading)`` at ``dist`` metres along ``poly``."""
    if len(poly) < 2:
        raise ValueError("polyline needs at least two points")
    hi = min(max(bisect.bisect_right(cum, dist), 1), len(cum) - 1)
    lo = hi - 1
    seg_len = cum[hi] - cum[lo]
    t = (dist - cum[lo]) / seg_len if seg_len > 0 else 0.0
    t = min(max(t, 0.0), 1.0)
    a, b = poly[lo], poly[hi]
    return (
        a[0] + (b[0] - a[0]) * t,
        a[1] + (b[1] - a[1]) * t,
        bearing(a, b),
    )

"""
Field normalization for broker vehicle entities.

Every output field is resolved by an ordered tuple of extractor functions.
Each extractor takes the entity (plus whatever context the field needs) and
returns a value or ``None``; the first non-empty result wins.

Nothing here performs I/O or touches shared state: the same entity and
topology map always produce the same ``Bus``.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from broker_entities import unwrap, unwrap_annotations, unwrap_location
from route_topology import RouteDestinationMap

UNKNOWN_ROUTE = "Unknown"

Entity = Mapping[str, Any]

STCP_VEHICLE_RE = re.compile(r"STCP\s+(\d+)", re.IGNORECASE)
ROUTE_TOKEN_RE = re.compile(r"^[A-Z0-9]{1,4}$", re.IGNORECASE)
DIRECTION_PREFIX = "stcp:sentido:"
TRIP_PREFIX = "stcp:nr_viagem:"
DIRECTION_RE = re.compile(r"stcp:sentido:(\d+)")

# Segments of entity ids that never name a route.
ID_BOILERPLATE = {"Vehicle", "porto", "stcp"}
# The fixed-position fallback only rules out the entity type and the operator.
POSITION_BOILERPLATE = {"Vehicle", "stcp"}


@dataclass(frozen=True)
class Bus:
    id: str
    lat: float
    lon: float
    routeShortName: str
    routeLongName: str
    heading: float = 0.0
    speed: float = 0.0
    lastUpdated: str = ""
    vehicleNumber: str = ""
    tripId: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Annotations:
    direction: Optional[int] = None
    trip_id: str = ""


def _text(value: Any) -> Optional[str]:
    """Unwrapped scalar as a non-empty string, or ``None``."""
    value = unwrap(value)
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _field(name: str) -> Callable[[Entity], Optional[str]]:
    def extract(entity: Entity) -> Optional[str]:
        return _text(entity.get(name))

    extract.__name__ = f"field_{name}"
    return extract


def first_of(extractors: Sequence[Callable[..., Optional[Any]]], *args: Any) -> Optional[Any]:
    for extractor in extractors:
        value = extractor(*args)
        if value not in (None, ""):
            return value
    return None


def _id_parts(entity: Entity) -> List[str]:
    return str(entity.get("id") or "").split(":")


# ---------------------------
# Vehicle identifier / number
# ---------------------------
VEHICLE_ID_EXTRACTORS: Tuple[Callable[[Entity], Optional[str]], ...] = (
    _field("vehiclePlateIdentifier"),
    _field("vehicleNumber"),
    _field("license_plate"),
    _field("name"),
)


def vehicle_number_from_id(entity: Entity) -> Optional[str]:
    return _id_parts(entity)[-1] or None


VEHICLE_NUMBER_EXTRACTORS = VEHICLE_ID_EXTRACTORS + (vehicle_number_from_id,)


def clean_vehicle_number(value: str) -> str:
    """Prefer a purely numeric trailing token ("STCP 3245" -> "3245")."""
    tokens = value.split()
    if tokens and tokens[-1].isascii() and tokens[-1].isdigit():
        return tokens[-1]
    return value


def resolve_vehicle_number(entity: Entity) -> str:
    return clean_vehicle_number(first_of(VEHICLE_NUMBER_EXTRACTORS, entity) or "")


# ---------------------------
# Route short name
# ---------------------------
def route_from_vehicle_id(entity: Entity) -> Optional[str]:
    vehicle_id = first_of(VEHICLE_ID_EXTRACTORS, entity)
    if not vehicle_id:
        return None
    match = STCP_VEHICLE_RE.search(vehicle_id)
    return match.group(1) if match else None


def route_from_id_segments(entity: Entity) -> Optional[str]:
    parts = _id_parts(entity)
    # skip the urn prefix and the trailing vehicle number
    for part in parts[2:-1]:
        if part and part not in ID_BOILERPLATE and ROUTE_TOKEN_RE.match(part):
            return part
    return None


def route_from_id_position(entity: Entity) -> Optional[str]:
    parts = _id_parts(entity)
    if len(parts) < 4:
        return None
    candidate = parts[-2]
    if candidate and candidate not in POSITION_BOILERPLATE:
        return candidate
    return None


ROUTE_SHORT_NAME_EXTRACTORS: Tuple[Callable[[Entity], Optional[str]], ...] = (
    _field("routeShortName"),
    _field("route"),
    _field("lineId"),
    _field("line"),
    route_from_vehicle_id,
    route_from_id_segments,
    route_from_id_position,
)


def resolve_route_short_name(entity: Entity) -> str:
    return first_of(ROUTE_SHORT_NAME_EXTRACTORS, entity) or UNKNOWN_ROUTE


# ---------------------------
# Annotations: direction and trip
# ---------------------------
def parse_annotations(annotations: Optional[Sequence[Any]]) -> Annotations:
    direction: Optional[int] = None
    trip_id = ""
    notes = [a for a in (annotations or []) if isinstance(a, str)]

    sentido = next((a for a in notes if a.startswith(DIRECTION_PREFIX)), None)
    if sentido is not None:
        match = DIRECTION_RE.match(sentido)
        if match:
            direction = int(match.group(1))

    viagem = next((a for a in notes if a.startswith(TRIP_PREFIX)), None)
    if viagem is not None:
        trip_id = viagem[len(TRIP_PREFIX):]

    return Annotations(direction=direction, trip_id=trip_id)


# ---------------------------
# Destination
# ---------------------------
DESTINATION_EXTRACTORS: Tuple[Callable[[Entity], Optional[str]], ...] = (
    _field("routeLongName"),
    _field("destination"),
    _field("tripHeadsign"),
    _field("headsign"),
    _field("direction"),
    _field("directionId"),
)


def resolve_destination(
    entity: Entity,
    route_short_name: str,
    direction: Optional[int],
    topology: RouteDestinationMap,
) -> str:
    explicit = first_of(DESTINATION_EXTRACTORS, entity)
    if explicit:
        return explicit
    route = topology.get(route_short_name)
    if route is None:
        return ""
    return route.first_headsign(direction)


# ---------------------------
# Heading, speed, timestamp
# ---------------------------
def _number(value: Any) -> Optional[float]:
    value = unwrap(value)
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number == 0:
        return None
    return number


def resolve_heading(entity: Entity) -> float:
    heading = _number(entity.get("heading"))
    if heading is None:
        heading = _number(entity.get("bearing"))
    return heading or 0.0


def resolve_speed(entity: Entity) -> float:
    return max(_number(entity.get("speed")) or 0.0, 0.0)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


TIMESTAMP_EXTRACTORS: Tuple[Callable[[Entity], Optional[str]], ...] = (
    _field("dateModified"),
    _field("timestamp"),
)


def resolve_last_updated(entity: Entity, now: Optional[str] = None) -> str:
    return first_of(TIMESTAMP_EXTRACTORS, entity) or now or utc_now_iso()


# ---------------------------
# Entity -> Bus
# ---------------------------
def normalize_entity(
    entity: Entity,
    topology: RouteDestinationMap,
    *,
    now: Optional[str] = None,
) -> Bus:
    """Build a ``Bus`` from one validated entity.

    Raises ``ValueError`` if the entity has no usable coordinate pair; the
    reader filters those out beforehand.
    """
    lon, lat = unwrap_location(entity.get("location"))
    route_short_name = resolve_route_short_name(entity)
    notes = parse_annotations(unwrap_annotations(entity.get("annotations")))

    return Bus(
        id=str(entity.get("id") or ""),
        lat=lat,
        lon=lon,
        routeShortName=route_short_name,
        routeLongName=resolve_destination(entity, route_short_name, notes.direction, topology),
        heading=resolve_heading(entity),
        speed=resolve_speed(entity),
        lastUpdated=resolve_last_updated(entity, now),
        vehicleNumber=resolve_vehicle_number(entity),
        tripId=notes.trip_id,
    )


def normalize_entities(
    entities: Sequence[Entity],
    topology: RouteDestinationMap,
    *,
    now: Optional[str] = None,
) -> List[Bus]:
    stamp = now or utc_now_iso()
    return [normalize_entity(entity, topology, now=stamp) for entity in entities]

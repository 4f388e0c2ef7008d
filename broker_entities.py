"""
Broker entity reader

The urban-data broker publishes vehicles as loosely typed NGSI entities. Any
attribute may arrive flat (``"speed": 4.2``) or wrapped
(``"speed": {"type": "Number", "value": 4.2}``), and the location may be either
``{"value": {"coordinates": [lon, lat]}}`` or ``{"coordinates": [lon, lat]}``.

Reading happens in two tiers:
1. Strict: the whole batch is validated against ``BrokerVehicleEntity``.
2. Permissive: if any entity breaks the schema, the raw list is filtered down to
   entities with a non-empty ``id`` and a ``location`` whose nested ``value``
   is present.

Either way, entities whose coordinate pair cannot be unwrapped are dropped.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from pydantic import BaseModel, ConfigDict, StrictFloat, StrictInt, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Number = Union[StrictInt, StrictFloat]


class Wrapped(BaseModel, Generic[T]):
    """An attribute delivered as ``{"value": ...}`` (other keys such as ``type`` are kept)."""

    model_config = ConfigDict(extra="allow")

    value: T


class Point(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    coordinates: Tuple[Number, Number]


class WrappedLocation(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    value: Point


class BrokerVehicleEntity(BaseModel):
    """Strict shape of a broker vehicle entity. Unknown attributes pass through."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    location: Union[WrappedLocation, Point]
    routeShortName: Optional[Union[Wrapped[str], str]] = None
    route: Optional[Union[Wrapped[str], str]] = None
    lineId: Optional[Union[Wrapped[str], str]] = None
    line: Optional[Union[Wrapped[str], str]] = None
    routeLongName: Optional[Union[Wrapped[str], str]] = None
    destination: Optional[Union[Wrapped[str], str]] = None
    tripHeadsign: Optional[Union[Wrapped[str], str]] = None
    headsign: Optional[Union[Wrapped[str], str]] = None
    direction: Optional[Union[Wrapped[str], str]] = None
    directionId: Optional[Union[Wrapped[str], str]] = None
    vehiclePlateIdentifier: Optional[Union[Wrapped[str], str]] = None
    vehicleNumber: Optional[Union[Wrapped[str], str]] = None
    license_plate: Optional[Union[Wrapped[str], str]] = None
    name: Optional[Union[Wrapped[str], str]] = None
    heading: Optional[Union[Wrapped[Number], Number]] = None
    bearing: Optional[Union[Wrapped[Number], Number]] = None
    speed: Optional[Union[Wrapped[Number], Number]] = None
    dateModified: Optional[Union[Wrapped[str], str]] = None
    timestamp: Optional[Union[Wrapped[str], str]] = None
    annotations: Optional[Union[Wrapped[List[str]], List[str]]] = None


_BATCH_ADAPTER = TypeAdapter(List[BrokerVehicleEntity])


def unwrap(value: Any) -> Any:
    """Return the scalar inside ``{"value": x}``, the value itself if flat, ``None`` if absent."""
    if value is None:
        return None
    if isinstance(value, Mapping) and "value" in value:
        return value["value"]
    return value


def unwrap_annotations(value: Any) -> Optional[List[str]]:
    if not value:
        return None
    if isinstance(value, list):
        return value
    if isinstance(value, Mapping) and isinstance(value.get("value"), list):
        return value["value"]
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def unwrap_location(location: Any) -> Tuple[float, float]:
    """Extract ``(longitude, latitude)`` from either location shape.

    Raises ``ValueError`` when no numeric coordinate pair can be found.
    """
    if not isinstance(location, Mapping):
        raise ValueError("location is not an object")
    inner = location.get("value") if "value" in location else location
    if not isinstance(inner, Mapping):
        raise ValueError("location value is not an object")
    coords = inner.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) != 2:
        raise ValueError("coordinates must be a two-element array")
    lon, lat = coords
    if not (_is_number(lon) and _is_number(lat)):
        raise ValueError("coordinates must be numeric")
    return float(lon), float(lat)


@dataclass
class EntityBatch:
    """Entities that survived validation, plus how they got there."""

    entities: List[Dict[str, Any]] = field(default_factory=list)
    strict: bool = True
    violations: int = 0
    dropped: int = 0


def _count_violating_entities(exc: ValidationError) -> int:
    indices = set()
    for error in exc.errors():
        loc = error.get("loc") or ()
        indices.add(loc[0] if loc and isinstance(loc[0], int) else None)
    return len(indices)


def _passes_heuristic(entity: Any) -> bool:
    if not isinstance(entity, Mapping):
        return False
    location = entity.get("location")
    return bool(entity.get("id")) and isinstance(location, Mapping) and bool(location.get("value"))


def read_entities(raw: Any) -> EntityBatch:
    """Validate a raw broker response body and return the usable entities."""
    try:
        validated = _BATCH_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        violations = _count_violating_entities(exc)
        logger.warning(
            "[broker] response validation failed (%d entities violate the schema), "
            "falling back to raw data",
            violations,
        )
        candidates: Sequence[Any] = raw if isinstance(raw, list) else []
        entities = [dict(e) for e in candidates if _passes_heuristic(e)]
        batch = EntityBatch(strict=False, violations=violations)
    else:
        entities = [e.model_dump(exclude_unset=True) for e in validated]
        batch = EntityBatch(strict=True)

    for entity in entities:
        try:
            unwrap_location(entity.get("location"))
        except ValueError:
            batch.dropped += 1
            continue
        batch.entities.append(entity)
    return batch


__all__ = [
    "BrokerVehicleEntity",
    "EntityBatch",
    "read_entities",
    "unwrap",
    "unwrap_annotations",
    "unwrap_location",
]

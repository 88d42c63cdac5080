"""
Tolerant normalization of XContest flight objects.

XContest pages embed flight data as loosely structured JavaScript objects whose
key names drift between page versions. Every semantic field is therefore
resolved from an explicit, ordered alias table of ``(scope, key, coercer)``
entries; the first alias whose coercer yields a usable value wins. Nothing in
this module raises on malformed input: a record that cannot be normalized is
simply dropped.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

from src.services.parsing import parse_date, parse_duration_seconds

LOGGER = logging.getLogger(__name__)

# Keys that usually hold the flight list, checked before any other list value.
FLIGHT_LIST_KEYS = ("flights", "list", "items", "data", "rows")

EMBEDDED_RUN_PATTERN = re.compile(r"""XContest\.run\(\s*["']flights["']\s*,\s*""")


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _as_date(value: Any) -> str | None:
    return parse_date(value) if isinstance(value, (str, int)) and not isinstance(value, bool) else None


def _as_duration(value: Any) -> int | None:
    return parse_duration_seconds(value)


def _as_mapping(value: Any) -> Mapping[str, Any] | None:
    return value if isinstance(value, Mapping) else None


Coercer = Callable[[Any], Any]
Alias = tuple[str, str, Coercer]

# Sub-objects looked up on the flight item; "stats" falls back to the item itself.
SCOPE_ALIASES: dict[str, tuple[str, ...]] = {
    "pilot": ("pilot",),
    "launch": ("launch", "takeoff", "start"),
    "landing": ("landing", "end"),
    "stats": ("stats", "statistics"),
}

FIELD_ALIASES: dict[str, tuple[Alias, ...]] = {
    "external_id": (
        ("item", "id", _as_text),
        ("item", "flightId", _as_text),
        ("item", "flight_id", _as_text),
    ),
    "flight_date": (
        ("item", "date", _as_date),
        ("item", "dateOfFlight", _as_date),
        ("item", "startTime", _as_date),
    ),
    "pilot_name": (("pilot", "name", _as_text),),
    "pilot_country": (
        ("pilot", "country", _as_text),
        ("pilot", "nationality", _as_text),
    ),
    "launch_lat": (
        ("launch", "lat", _as_number),
        ("launch", "latitude", _as_number),
    ),
    "launch_lng": (
        ("launch", "lng", _as_number),
        ("launch", "lon", _as_number),
        ("launch", "longitude", _as_number),
    ),
    "launch_alt": (("launch", "alt", _as_number),),
    "landing_lat": (
        ("landing", "lat", _as_number),
        ("landing", "latitude", _as_number),
    ),
    "landing_lng": (
        ("landing", "lng", _as_number),
        ("landing", "lon", _as_number),
        ("landing", "longitude", _as_number),
    ),
    "landing_alt": (("landing", "alt", _as_number),),
    "max_alt": (
        ("stats", "maxAlt", _as_number),
        ("stats", "max_alt", _as_number),
        ("stats", "maxAltitude", _as_number),
        ("item", "maxAlt", _as_number),
    ),
    "total_alt_gain": (
        ("stats", "totalAltGain", _as_number),
        ("stats", "total_alt_gain", _as_number),
        ("stats", "altitudeGain", _as_number),
        ("item", "totalAltGain", _as_number),
    ),
    "distance_km": (
        ("stats", "distance", _as_number),
        ("item", "distance", _as_number),
        ("item", "dist", _as_number),
    ),
    "five_point_distance_km": (
        ("stats", "fivePointDistance", _as_number),
        ("item", "fivePointDistance", _as_number),
        ("item", "pointsDistance", _as_number),
    ),
    "points": (
        ("stats", "points", _as_number),
        ("item", "points", _as_number),
        ("item", "score", _as_number),
    ),
    "duration_seconds": (
        ("stats", "duration", _as_duration),
        ("item", "duration", _as_duration),
        ("item", "time", _as_duration),
    ),
    "avg_speed_kmh": (
        ("stats", "avgSpeed", _as_number),
        ("item", "avgSpeed", _as_number),
        ("item", "speed", _as_number),
    ),
    "glider_category": (
        ("item", "gliderCategory", _as_text),
        ("item", "glider_category", _as_text),
        ("item", "wingCategory", _as_text),
        ("stats", "gliderCategory", _as_text),
    ),
    "route_type": (
        ("item", "routeType", _as_text),
        ("item", "route_type", _as_text),
        ("item", "type", _as_text),
        ("stats", "routeType", _as_text),
    ),
    "url": (("item", "url", _as_text),),
}


@dataclass
class NormalizedFlight:
    external_id: str
    flight_date: str
    pilot_name: str | None = None
    pilot_country: str | None = None
    launch_lat: float | None = None
    launch_lng: float | None = None
    launch_alt: float | None = None
    landing_lat: float | None = None
    landing_lng: float | None = None
    landing_alt: float | None = None
    max_alt: float | None = None
    total_alt_gain: float | None = None
    distance_km: float | None = None
    five_point_distance_km: float | None = None
    points: float | None = None
    duration_seconds: int | None = None
    avg_speed_kmh: float | None = None
    glider_category: str | None = None
    route_type: str | None = None
    url: str | None = None

    @property
    def duration_min(self) -> int | None:
        if self.duration_seconds is None:
            return None
        return (self.duration_seconds + 30) // 60


def find_flight_list(container: Any) -> list[Any] | None:
    """Locate the flight list inside an arbitrarily shaped container."""
    if isinstance(container, list):
        return container
    if not isinstance(container, Mapping):
        return None
    for key in FLIGHT_LIST_KEYS:
        value = container.get(key)
        if isinstance(value, list):
            return value
    for value in container.values():
        if isinstance(value, list) and value:
            return value
    return None


def _build_scopes(item: Mapping[str, Any]) -> dict[str, Mapping[str, Any]]:
    scopes: dict[str, Mapping[str, Any]] = {"item": item}
    for scope, keys in SCOPE_ALIASES.items():
        for key in keys:
            mapping = _as_mapping(item.get(key))
            if mapping is not None:
                scopes[scope] = mapping
                break
    scopes.setdefault("stats", item)
    return scopes


def _resolve(scopes: Mapping[str, Mapping[str, Any]], aliases: Iterable[Alias]) -> Any:
    for scope, key, coerce in aliases:
        source = scopes.get(scope)
        if source is None or key not in source:
            continue
        value = coerce(source[key])
        if value is not None:
            return value
    return None


def normalize_record(raw: Any) -> NormalizedFlight | None:
    """Return a canonical flight, or ``None`` when id or date cannot be resolved."""
    if not isinstance(raw, Mapping):
        return None
    try:
        scopes = _build_scopes(raw)
        values = {field: _resolve(scopes, aliases) for field, aliases in FIELD_ALIASES.items()}
    except (TypeError, ValueError, AttributeError, OverflowError):
        LOGGER.debug("Dropping malformed flight object: %r", raw, exc_info=True)
        return None
    if not values["external_id"] or not values["flight_date"]:
        return None
    return NormalizedFlight(**values)


def normalize_flights(container: Any) -> list[NormalizedFlight]:
    items = find_flight_list(container)
    if not items:
        return []
    flights = []
    for item in items:
        flight = normalize_record(item)
        if flight is not None:
            flights.append(flight)
    dropped = len(items) - len(flights)
    if dropped:
        LOGGER.debug("Dropped %s of %s flight objects during normalization", dropped, len(items))
    return flights


def parse_embedded_flights(script_text: str) -> list[NormalizedFlight]:
    """Best-effort parse of an inline ``XContest.run("flights", {...})`` call.

    This is a lossy scan of page scripts rather than a stable contract;
    anything that does not decode as JSON yields an empty list.
    """
    if not script_text:
        return []
    match = EMBEDDED_RUN_PATTERN.search(script_text)
    if not match:
        return []
    try:
        payload, _ = json.JSONDecoder().raw_decode(script_text, match.end())
    except json.JSONDecodeError:
        LOGGER.debug("Embedded flights payload is not valid JSON.")
        return []
    return normalize_flights(payload)


def load_flight_dump(texts: Sequence[str]) -> list[NormalizedFlight]:
    """Normalize saved XContest payloads, either JSON documents or page scripts."""
    flights: list[NormalizedFlight] = []
    for text in texts:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            flights.extend(parse_embedded_flights(text))
            continue
        flights.extend(normalize_flights(payload))
    return flights

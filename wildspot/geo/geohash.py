"""
Geohash encoding, range bounds for radius queries, and great-circle distance.

The bounds follow the construction used by Firebase GeoFire, so sighting
records written by the mobile client (``geohash`` at precision 10) and the
range queries built here agree on every boundary:

* nine probe points (the center, the radius box corners and edge midpoints)
  are encoded at just enough precision to cover the radius,
* each probe becomes a ``[start, end]`` string range that spans its cell,
* overlapping or nested ranges are joined.

Every point within ``radius`` of the center falls inside one of the ranges.
The reverse does not hold: ranges cover whole cells, so callers must filter
candidates by :func:`distance_m` afterwards.

Near the poles the probe box is clamped at latitude +/-90 and never wraps
across the pole, so a circle that contains a pole misses points on the far
side of it (center ``(89.99, 10)``, point ``(89.995, -170)``, about 1.1 km
apart). Longitudes do wrap at the antimeridian.

Usage::

    from wildspot.geo import geohash

    h = geohash.encode(45.07, 7.68)
    for r in geohash.query_bounds((45.07, 7.68), 2_000):
        ...  # order_by("geohash").start_at(r.start).end_at(r.end)
"""

from __future__ import annotations

import math
from typing import NamedTuple

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
BITS_PER_CHAR = 5
DEFAULT_PRECISION = 10
MAX_PRECISION = 22
MAX_PRECISION_BITS = MAX_PRECISION * BITS_PER_CHAR

EARTH_MERIDIONAL_CIRCUMFERENCE = 40007860.0  # metres
METERS_PER_DEGREE_LATITUDE = 110574.0
EARTH_EQ_RADIUS = 6378137.0
EARTH_POLAR_RADIUS = 6357852.3
EARTH_E2 = 0.00669447819799  # eccentricity squared
EPSILON = 1e-12

#: Sorts after every base-32 character: "abc~" closes the "abc" prefix.
RANGE_END_SENTINEL = "~"


class GeoPoint(NamedTuple):
    latitude: float
    longitude: float


class GeohashRange(NamedTuple):
    start: str
    end: str

    def contains(self, geohash: str) -> bool:
        """Same inclusive semantics as ``start_at(start).end_at(end)``"""
        return self.start <= geohash <= self.end


def validate_point(latitude: float, longitude: float) -> None:
    if not -90.0 <= latitude <= 90.0:
        raise ValueError(f"Latitude out of range: {latitude}")
    if not -180.0 <= longitude <= 180.0:
        raise ValueError(f"Longitude out of range: {longitude}")


def encode(latitude: float, longitude: float, precision: int = DEFAULT_PRECISION) -> str:
    """Standard base-32 geohash; even bits carry longitude"""
    validate_point(latitude, longitude)
    if not 1 <= precision <= MAX_PRECISION:
        raise ValueError(f"Precision must be between 1 and {MAX_PRECISION}, got {precision}")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    chars = []
    value = 0
    bits = 0
    even = True

    while len(chars) < precision:
        if even:
            bounds, coordinate = lng_range, longitude
        else:
            bounds, coordinate = lat_range, latitude
        mid = (bounds[0] + bounds[1]) / 2
        if coordinate > mid:
            value = (value << 1) | 1
            bounds[0] = mid
        else:
            value <<= 1
            bounds[1] = mid
        even = not even

        bits += 1
        if bits == BITS_PER_CHAR:
            chars.append(BASE32[value])
            value = 0
            bits = 0

    return "".join(chars)


def decode_bounds(geohash: str) -> tuple[float, float, float, float]:
    """Cell of ``geohash`` as (lat_min, lat_max, lng_min, lng_max)"""
    if not geohash:
        raise ValueError("Empty geohash")

    lat_range = [-90.0, 90.0]
    lng_range = [-180.0, 180.0]
    even = True
    for char in geohash.lower():
        try:
            value = BASE32.index(char)
        except ValueError:
            raise ValueError(f"Invalid geohash character {char!r} in {geohash!r}") from None
        for shift in range(BITS_PER_CHAR - 1, -1, -1):
            bounds = lng_range if even else lat_range
            mid = (bounds[0] + bounds[1]) / 2
            if (value >> shift) & 1:
                bounds[0] = mid
            else:
                bounds[1] = mid
            even = not even

    return lat_range[0], lat_range[1], lng_range[0], lng_range[1]


def decode(geohash: str) -> GeoPoint:
    """Center of the geohash cell"""
    lat_min, lat_max, lng_min, lng_max = decode_bounds(geohash)
    return GeoPoint((lat_min + lat_max) / 2, (lng_min + lng_max) / 2)


def distance_m(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Haversine great-circle distance in metres between two (lat, lng) points"""
    radius = (EARTH_EQ_RADIUS + EARTH_POLAR_RADIUS) / 2
    lat_delta = math.radians(a[0] - b[0])
    lng_delta = math.radians(a[1] - b[1])
    h = (
        math.sin(lat_delta / 2) ** 2
        + math.cos(math.radians(a[0])) * math.cos(math.radians(b[0])) * math.sin(lng_delta / 2) ** 2
    )
    return radius * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def wrap_longitude(longitude: float) -> float:
    if -180.0 <= longitude <= 180.0:
        return longitude
    adjusted = longitude + 180.0
    if adjusted > 0:
        return (adjusted % 360.0) - 180.0
    return 180.0 - (-adjusted % 360.0)


def distance_to_longitude_degrees(distance: float, latitude: float) -> float:
    """Degrees of longitude spanned by ``distance`` metres at ``latitude`` (WGS84)"""
    radians = math.radians(latitude)
    numerator = math.cos(radians) * EARTH_EQ_RADIUS * math.pi / 180
    denominator = 1 / math.sqrt(1 - EARTH_E2 * math.sin(radians) * math.sin(radians))
    delta_degrees = numerator * denominator
    if delta_degrees < EPSILON:
        return 360.0 if distance > 0 else 0.0
    return min(360.0, distance / delta_degrees)


def _latitude_bits_for_resolution(resolution: float) -> float:
    return min(math.log2(EARTH_MERIDIONAL_CIRCUMFERENCE / 2 / resolution), MAX_PRECISION_BITS)


def _longitude_bits_for_resolution(resolution: float, latitude: float) -> float:
    degrees = distance_to_longitude_degrees(resolution, latitude)
    return max(1.0, math.log2(360 / degrees)) if abs(degrees) > 0.000001 else 1.0


def bits_for_bounding_box(center: tuple[float, float], size: float) -> int:
    """Geohash bits whose cells are at least ``size`` metres on every side"""
    latitude_delta = size / METERS_PER_DEGREE_LATITUDE
    latitude_north = min(90.0, center[0] + latitude_delta)
    latitude_south = max(-90.0, center[0] - latitude_delta)
    bits_latitude = max(0, math.floor(_latitude_bits_for_resolution(size))) * 2
    bits_longitude_north = max(1, math.floor(_longitude_bits_for_resolution(size, latitude_north))) * 2 - 1
    bits_longitude_south = max(1, math.floor(_longitude_bits_for_resolution(size, latitude_south))) * 2 - 1
    return min(bits_latitude, bits_longitude_north, bits_longitude_south, MAX_PRECISION_BITS)


def _range_for_geohash(geohash: str, bits: int) -> GeohashRange:
    """Range of all hashes sharing the first ``bits`` bits of ``geohash``"""
    precision = math.ceil(bits / BITS_PER_CHAR)
    if len(geohash) < precision:
        return GeohashRange(geohash, geohash + RANGE_END_SENTINEL)

    geohash = geohash[:precision]
    base = geohash[:-1]
    last_value = BASE32.index(geohash[-1])
    significant_bits = bits - len(base) * BITS_PER_CHAR
    unused_bits = BITS_PER_CHAR - significant_bits
    start_value = (last_value >> unused_bits) << unused_bits
    end_value = start_value + (1 << unused_bits)

    start = base + BASE32[start_value]
    end = base + (RANGE_END_SENTINEL if end_value > 31 else BASE32[end_value])
    return GeohashRange(start, end)


def _runs_into(a: GeohashRange, b: GeohashRange) -> bool:
    """``a`` starts before ``b`` and ends inside it"""
    return a.end >= b.start and a.start < b.start and a.end < b.end


def _covers(a: GeohashRange, b: GeohashRange) -> bool:
    return a.start <= b.start and a.end >= b.end


def _can_join(a: GeohashRange, b: GeohashRange) -> bool:
    return _runs_into(a, b) or _runs_into(b, a) or _covers(a, b) or _covers(b, a)


def _join(a: GeohashRange, b: GeohashRange) -> GeohashRange:
    if _runs_into(a, b):
        return GeohashRange(a.start, b.end)
    if _runs_into(b, a):
        return GeohashRange(b.start, a.end)
    if _covers(a, b):
        return a
    return b


def query_bounds(center: tuple[float, float], radius_m: float) -> list[GeohashRange]:
    """Geohash ranges that together contain every point within ``radius_m``"""
    latitude, longitude = center
    validate_point(latitude, longitude)
    if radius_m <= 0:
        raise ValueError(f"Radius must be positive, got {radius_m}")

    query_bits = max(1, bits_for_bounding_box(center, radius_m))
    precision = math.ceil(query_bits / BITS_PER_CHAR)

    latitude_degrees = radius_m / METERS_PER_DEGREE_LATITUDE
    latitude_north = min(90.0, latitude + latitude_degrees)
    latitude_south = max(-90.0, latitude - latitude_degrees)
    longitude_delta = max(
        distance_to_longitude_degrees(radius_m, latitude_north),
        distance_to_longitude_degrees(radius_m, latitude_south),
    )
    west = wrap_longitude(longitude - longitude_delta)
    east = wrap_longitude(longitude + longitude_delta)

    probes = [
        (latitude, longitude), (latitude, west), (latitude, east),
        (latitude_north, longitude), (latitude_north, west), (latitude_north, east),
        (latitude_south, longitude), (latitude_south, west), (latitude_south, east),
    ]
    ranges = {_range_for_geohash(encode(lat, lng, precision), query_bits) for lat, lng in probes}

    joined = True
    while joined:
        joined = False
        for a in ranges:
            other = next((b for b in ranges if b != a and _can_join(a, b)), None)
            if other is not None:
                ranges.discard(a)
                ranges.discard(other)
                ranges.add(_join(a, other))
                joined = True
                break

    return sorted(ranges)

"""Great-circle distance helpers."""

import math

EARTH_RADIUS_M = 6_371_000.0


def validate_coordinates(latitude: float, longitude: float) -> None:
    """Raise ValueError for coordinates outside the WGS84 ranges."""
    if not -90.0 <= latitude <= 90.0:
        raise ValueError(f"latitude must be between -90 and 90, got {latitude}")
    if not -180.0 <= longitude <= 180.0:
        raise ValueError(f"longitude must be between -180 and 180, got {longitude}")


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance in meters between two points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def offset_position(
    latitude: float, longitude: float, north_m: float, east_m: float
) -> tuple[float, float]:
    """Move a point by a small north/east offset in meters.

    Flat-earth approximation, good enough for the few hundred meters an
    anchored boat swings around.
    """
    dlat = north_m / EARTH_RADIUS_M
    dlon = east_m / (EARTH_RADIUS_M * math.cos(math.radians(latitude)))
    return latitude + math.degrees(dlat), longitude + math.degrees(dlon)

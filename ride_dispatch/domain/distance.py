"""
Distance calculation using the Haversine formula.

Assumption
----------
Great-circle distance stands in for road distance when ranking drivers by
proximity to a pickup point.  Fares use the client's route estimate, not
this module.

Drivers that have just (re)connected report ``(0, 0)`` until their first
GPS fix; that point is treated as *unknown*, never as a real position.

Complexity: O(1) per call.
"""

import math

EARTH_RADIUS_KM = 6_371.0

UNKNOWN_LAT = 0.0
UNKNOWN_LNG = 0.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def is_unknown(lat: float, lng: float) -> bool:
    return lat == UNKNOWN_LAT and lng == UNKNOWN_LNG


def valid_coordinates(lat: float, lng: float) -> bool:
    return (
        math.isfinite(lat)
        and math.isfinite(lng)
        and -90.0 <= lat <= 90.0
        and -180.0 <= lng <= 180.0
    )

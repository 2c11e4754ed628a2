"""geo_utils.py

Geographic helpers for signal lookups and image-derived coordinates.
Haversine distance, coordinate validation, nearest rule-table location.
"""

import math
from typing import Optional, Tuple

from keywords_loader import LOCATIONS

EARTH_RADIUS_KM = 6371.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points in kilometers.
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2) - math.radians(lon1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.asin(math.sqrt(a))


def validate_coordinates(lat: Optional[float], lon: Optional[float]) -> bool:
    """
    Validate that coordinates are within valid ranges.

    Args:
        lat: Latitude (-90 to 90)
        lon: Longitude (-180 to 180)
    """
    if lat is None or lon is None:
        return False
    try:
        lat = float(lat)
        lon = float(lon)
    except (ValueError, TypeError):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def nearest_known_location(lat: float, lon: float, max_km: float = 50.0) -> Optional[Tuple[str, float]]:
    """(canonical name, distance km) of the closest rule-table location within max_km."""
    best = None
    for loc in LOCATIONS:
        if "lat" not in loc or "lon" not in loc:
            continue
        distance = haversine_distance(lat, lon, float(loc["lat"]), float(loc["lon"]))
        if distance <= max_km and (best is None or distance < best[1]):
            best = (loc["name"], distance)
    return best

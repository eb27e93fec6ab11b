import math
from typing import Iterable, Optional, Tuple

from .models import Zone

EARTH_RADIUS_MI = 3959


class InvalidCoordinates(ValueError):
    pass


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in miles between two lat/lng pairs."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    # float rounding can leave a just above 1 for antipodal pairs
    if a > 1.0:
        a = 1.0
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_MI * c


def validate_coordinates(lat, lng) -> Tuple[float, float]:
    """Reject missing, non-finite or out-of-range coordinates.

    Clustering and the route optimizer do no checking of their own, so
    handlers call this before building points.
    """
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidCoordinates(f"Coordinates are not numeric: ({lat!r}, {lng!r})")
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinates(f"Coordinates are not finite: ({lat_f}, {lng_f})")
    if not -90 <= lat_f <= 90 or not -180 <= lng_f <= 180:
        raise InvalidCoordinates(f"Coordinates out of range: ({lat_f}, {lng_f})")
    return lat_f, lng_f


def find_nearest_zone(zones: Iterable[Zone], lat: float, lng: float) -> Optional[Tuple[Zone, float]]:
    """Nearest active zone whose radius covers the point, with its distance."""
    nearest = None
    nearest_distance = math.inf

    for zone in zones:
        if not zone.is_active:
            continue
        dist = haversine_distance(lat, lng, zone.center_lat, zone.center_lng)
        if dist <= zone.radius_mi and dist < nearest_distance:
            nearest = zone
            nearest_distance = dist

    return (nearest, nearest_distance) if nearest else None

"""Great-circle distance filtering for search results."""
import math
from typing import List, Sequence

from listing_search.models import Coordinates, GeoLocation, SearchResultItem

# WGS-84 mean radius
EARTH_RADIUS_KM = 6371.0088


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance in kilometres between two lat/lng points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def round_distance(km: float) -> float:
    return round(km * 10) / 10


def is_within_radius(point: Coordinates, center: GeoLocation) -> bool:
    return haversine_km(center.lat, center.lng, point.lat, point.lng) <= center.radius_km


def filter_by_distance(
    results: Sequence[SearchResultItem], location: GeoLocation
) -> List[SearchResultItem]:
    """Keep results within the radius, attach distance, sort nearest first.

    Results without coordinates are dropped. The sort is stable so equal
    distances keep their incoming rank order.
    """
    kept = []
    for item in results:
        if item.location is None:
            continue
        distance = haversine_km(location.lat, location.lng, item.location.lat, item.location.lng)
        if distance > location.radius_km:
            continue
        kept.append(item.model_copy(update={"distance_km": round_distance(distance)}))
    kept.sort(key=lambda r: r.distance_km or 0.0)
    return kept
